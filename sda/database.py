from __future__ import annotations

import logging
import os
import re
import threading
from collections.abc import Mapping
from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Any, Protocol

from sda.db.postgres import PostgresTxRunner
from sda.errors import ConfigError, DecryptError, PersistenceError, RecordNotFoundError

logger = logging.getLogger(__name__)


class FileStatus(IntEnum):
    REGISTERED = 1
    ARCHIVED = 2
    COMPLETED = 3
    READY = 4


@dataclass(frozen=True)
class FileInfo:
    archive_size: int
    archive_checksum: str
    decrypted_size: int
    decrypted_checksum: str


@dataclass(frozen=True)
class FileRecord:
    file_id: int
    user: str
    filepath: str
    status: FileStatus = FileStatus.REGISTERED
    archive_path: str | None = None
    archive_size: int | None = None
    archive_checksum: str | None = None
    decrypted_size: int | None = None
    decrypted_checksum: str | None = None
    header: bytes | None = None
    accession_id: str | None = None


class FileRepository(Protocol):
    def get_archived(self, *, user: str, filepath: str, checksum: str) -> tuple[str, int]: ...

    def get_header(self, *, file_id: int) -> bytes: ...

    def mark_completed(self, *, file_info: FileInfo, file_id: int) -> None: ...

    def mark_ready(self, *, accession_id: str, user: str, filepath: str, checksum: str) -> None: ...


class InMemoryFileRepository:
    def __init__(self, rows: dict[int, FileRecord] | None = None) -> None:
        self._rows = rows if rows is not None else {}
        self._lock = threading.RLock()

    def add(self, record: FileRecord) -> FileRecord:
        with self._lock:
            self._rows[record.file_id] = record
            return record

    def get(self, file_id: int) -> FileRecord | None:
        with self._lock:
            return self._rows.get(file_id)

    def get_archived(self, *, user: str, filepath: str, checksum: str) -> tuple[str, int]:
        with self._lock:
            for row in self._rows.values():
                if row.user != user or row.filepath != filepath or row.decrypted_checksum != checksum:
                    continue
                if row.status < FileStatus.COMPLETED or row.archive_path is None:
                    continue
                return row.archive_path, int(row.archive_size or 0)
        raise RecordNotFoundError(f"no archived file for user={user} filepath={filepath}")

    def get_header(self, *, file_id: int) -> bytes:
        with self._lock:
            row = self._rows.get(file_id)
        if row is None or row.header is None:
            raise RecordNotFoundError(f"no header stored for file_id={file_id}")
        return row.header

    def mark_completed(self, *, file_info: FileInfo, file_id: int) -> None:
        with self._lock:
            row = self._rows.get(file_id)
            if row is None:
                raise PersistenceError(f"mark completed: no file with id {file_id}")
            if row.status > FileStatus.COMPLETED:
                logger.info("file %s already %s, not marking completed", file_id, row.status.name)
                return
            self._rows[file_id] = replace(
                row,
                status=FileStatus.COMPLETED,
                archive_size=file_info.archive_size,
                archive_checksum=file_info.archive_checksum,
                decrypted_size=file_info.decrypted_size,
                decrypted_checksum=file_info.decrypted_checksum,
            )

    def mark_ready(self, *, accession_id: str, user: str, filepath: str, checksum: str) -> None:
        with self._lock:
            for file_id, row in self._rows.items():
                if row.user != user or row.filepath != filepath or row.decrypted_checksum != checksum:
                    continue
                if row.status < FileStatus.COMPLETED:
                    continue
                self._rows[file_id] = replace(row, status=FileStatus.READY, accession_id=accession_id)
                return
        raise PersistenceError(f"mark ready: no completed file for user={user} filepath={filepath}")


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class PostgresFileRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "local_ega.files") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def get_archived(self, *, user: str, filepath: str, checksum: str) -> tuple[str, int]:
        sql = f"""
            SELECT archive_path, archive_filesize
            FROM {self._table_name}
            WHERE elixir_id = %s AND inbox_path = %s AND decrypted_file_checksum = %s
              AND status IN ('COMPLETED', 'READY')
            LIMIT 1
        """

        def _op(conn: Any) -> tuple[Any, ...] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (user, filepath, checksum))
                return cur.fetchone()

        row = self._tx_runner.run_in_tx(fn=_op)
        if row is None:
            raise RecordNotFoundError(f"no archived file for user={user} filepath={filepath}")
        return str(row[0]), int(row[1])

    def get_header(self, *, file_id: int) -> bytes:
        sql = f"""
            SELECT header
            FROM {self._table_name}
            WHERE id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> tuple[Any, ...] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (file_id,))
                return cur.fetchone()

        row = self._tx_runner.run_in_tx(fn=_op)
        if row is None or row[0] is None:
            raise RecordNotFoundError(f"no header stored for file_id={file_id}")
        try:
            return bytes.fromhex(str(row[0]))
        except ValueError as exc:
            raise DecryptError(f"stored header for file_id={file_id} is not hex encoded") from exc

    def mark_completed(self, *, file_info: FileInfo, file_id: int) -> None:
        update = f"""
            UPDATE {self._table_name}
            SET status = 'COMPLETED',
                archive_filesize = %s,
                archive_file_checksum = %s,
                archive_file_checksum_type = 'SHA256',
                decrypted_file_size = %s,
                decrypted_file_checksum = %s,
                decrypted_file_checksum_type = 'SHA256'
            WHERE id = %s AND status IN ('REGISTERED', 'ARCHIVED', 'COMPLETED')
        """
        lookup = f"SELECT status FROM {self._table_name} WHERE id = %s"

        def _op(conn: Any) -> str | None:
            with conn.cursor() as cur:
                cur.execute(
                    update,
                    (
                        file_info.archive_size,
                        file_info.archive_checksum,
                        file_info.decrypted_size,
                        file_info.decrypted_checksum,
                        file_id,
                    ),
                )
                if cur.rowcount:
                    return "COMPLETED"
                cur.execute(lookup, (file_id,))
                row = cur.fetchone()
            return None if row is None else str(row[0])

        status = self._tx_runner.run_in_tx(fn=_op)
        if status is None:
            raise PersistenceError(f"mark completed: no file with id {file_id}")
        if status != "COMPLETED":
            logger.info("file %s already %s, not marking completed", file_id, status)

    def mark_ready(self, *, accession_id: str, user: str, filepath: str, checksum: str) -> None:
        sql = f"""
            UPDATE {self._table_name}
            SET status = 'READY', stable_id = %s
            WHERE elixir_id = %s AND inbox_path = %s AND decrypted_file_checksum = %s
              AND status IN ('COMPLETED', 'READY')
        """

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, (accession_id, user, filepath, checksum))
                return int(cur.rowcount or 0)

        changed = self._tx_runner.run_in_tx(fn=_op)
        if changed == 0:
            raise PersistenceError(f"mark ready: no completed file for user={user} filepath={filepath}")


def create_repository_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryFileRepository | PostgresFileRepository:
    env = os.environ if environ is None else environ
    backend = env.get("DB_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemoryFileRepository()
    if backend == "postgres":
        dsn = env.get("DB_DSN", "").strip()
        if not dsn:
            raise ConfigError("DB_DSN must be set when DB_BACKEND=postgres")
        table = env.get("DB_TABLE", "local_ega.files").strip() or "local_ega.files"
        return PostgresFileRepository(tx_runner=PostgresTxRunner(dsn), table_name=table)
    raise ConfigError(f"unsupported database backend: {backend}")
