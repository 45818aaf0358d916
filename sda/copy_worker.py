from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sda.broker import Broker
from sda.config import BrokerConfig, WorkerConfig
from sda.database import FileRepository
from sda.errors import ConfigError, MessageValidationError, RecordNotFoundError, TransientIOError
from sda.messages import ACCESSION_SCHEMA, COMPLETION_SCHEMA, CompletionMessage, CopyWorkMessage, checksum_of
from sda.storage import StorageBackend, StorageError, create_backend
from sda.streams import copy_stream
from sda.worker import WorkerLoop

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CopyResult:
    archive_path: str
    size: int
    checksum: str


class CopyWorker(WorkerLoop):
    """Copy accessioned files from archive storage to backup storage."""

    service_name = "sync"
    schema_name = ACCESSION_SCHEMA
    completion_schema = COMPLETION_SCHEMA

    def __init__(
        self,
        *,
        broker: Broker,
        config: BrokerConfig,
        repository: FileRepository,
        archive: StorageBackend,
        backup: StorageBackend,
    ) -> None:
        super().__init__(broker=broker, config=config)
        self.repository = repository
        self.archive = archive
        self.backup = backup

    def parse(self, payload: dict[str, Any]) -> CopyWorkMessage:
        return CopyWorkMessage.from_payload(payload)

    def process(self, message: CopyWorkMessage) -> CopyResult:
        checksum = checksum_of(message.decrypted_checksums, "sha256")
        if checksum is None:
            raise MessageValidationError("decrypted_checksums has no sha256 entry", schema_name=self.schema_name)

        try:
            archive_path, expected_size = self.repository.get_archived(
                user=message.user,
                filepath=message.filepath,
                checksum=checksum,
            )
        except RecordNotFoundError as exc:
            # The archive row may not be visible yet; retry through the queue.
            raise TransientIOError(f"archived file lookup failed: {exc}", code="ARCHIVE_LOOKUP_FAILED") from exc

        logger.info("sync initiated for %s (%d bytes)", archive_path, expected_size)
        try:
            source = self.archive.open_reader(archive_path)
        except StorageError as exc:
            raise TransientIOError(f"failed to open archived file {archive_path}: {exc}") from exc
        try:
            try:
                dest = self.backup.open_writer(archive_path)
            except StorageError as exc:
                raise TransientIOError(f"failed to open backup file {archive_path}: {exc}") from exc
            try:
                copied = copy_stream(source, dest)
            except (StorageError, OSError) as exc:
                dest.abort()
                raise TransientIOError(f"failed to copy {archive_path}: {exc}") from exc
            except BaseException:
                dest.abort()
                raise
            if copied != expected_size:
                dest.abort()
                raise TransientIOError(
                    f"copied {copied} bytes of {archive_path}, expected {expected_size}",
                    code="SIZE_MISMATCH",
                )
            try:
                dest.close()
            except StorageError as exc:
                raise TransientIOError(f"failed to finalize backup of {archive_path}: {exc}") from exc
        finally:
            source.close()

        return CopyResult(archive_path=archive_path, size=copied, checksum=checksum)

    def completion(self, message: CopyWorkMessage, result: CopyResult) -> dict[str, Any]:
        return CompletionMessage(
            user=message.user,
            filepath=message.filepath,
            accession_id=message.accession_id,
            decrypted_checksums=message.decrypted_checksums,
        ).to_payload()

    def persist(self, message: CopyWorkMessage, result: CopyResult) -> None:
        self.repository.mark_ready(
            accession_id=message.accession_id,
            user=message.user,
            filepath=message.filepath,
            checksum=result.checksum,
        )


def create_copy_worker(*, config: WorkerConfig, broker: Broker, repository: FileRepository) -> CopyWorker:
    if config.backup is None:
        raise ConfigError("sync service requires backup storage")
    return CopyWorker(
        broker=broker,
        config=config.broker,
        repository=repository,
        archive=create_backend(config.archive),
        backup=create_backend(config.backup),
    )
