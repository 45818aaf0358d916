from __future__ import annotations

import logging
from typing import Any

from sda.broker import Broker
from sda.config import BrokerConfig, WorkerConfig
from sda.database import FileInfo, FileRepository
from sda.errors import ConfigError, DecryptError, TransientIOError
from sda.messages import (
    ACCESSION_REQUEST_SCHEMA,
    VERIFICATION_SCHEMA,
    AccessionRequest,
    ChecksumEntry,
    VerifyWorkMessage,
    checksum_of,
)
from sda.storage import StorageBackend, StorageError, create_backend
from sda.verification import VerificationResult, load_private_key, verify_archived_file
from sda.worker import WorkerLoop

logger = logging.getLogger(__name__)


class VerifyWorker(WorkerLoop):
    """Decrypt archived files, record their checksums and request accession ids."""

    service_name = "verify"
    schema_name = VERIFICATION_SCHEMA
    completion_schema = ACCESSION_REQUEST_SCHEMA

    def __init__(
        self,
        *,
        broker: Broker,
        config: BrokerConfig,
        repository: FileRepository,
        archive: StorageBackend,
        private_key: bytes,
    ) -> None:
        super().__init__(broker=broker, config=config)
        self.repository = repository
        self.archive = archive
        self._private_key = private_key

    def parse(self, payload: dict[str, Any]) -> VerifyWorkMessage:
        return VerifyWorkMessage.from_payload(payload)

    def process(self, message: VerifyWorkMessage) -> VerificationResult:
        header = self.repository.get_header(file_id=message.file_id)

        try:
            stored_size = self.archive.size(message.archive_path)
            body = self.archive.open_reader(message.archive_path)
        except StorageError as exc:
            raise TransientIOError(f"failed to open archived file {message.archive_path}: {exc}") from exc

        try:
            result = verify_archived_file(header=header, body=body, private_key=self._private_key)
        except (StorageError, OSError) as exc:
            raise TransientIOError(f"failed to read archived file {message.archive_path}: {exc}") from exc
        finally:
            body.close()

        if result.archive_size != stored_size:
            raise TransientIOError(
                f"read {result.archive_size} bytes of {message.archive_path}, storage reports {stored_size}",
                code="SIZE_MISMATCH",
            )
        logger.debug(
            "verified file_id %s: %d bytes decrypted, sha256 %s",
            message.file_id,
            result.decrypted_size,
            result.decrypted_sha256,
        )

        if message.re_verify:
            expected = checksum_of(message.encrypted_checksums, "sha256")
            if expected is not None and expected != result.archive_checksum:
                raise DecryptError(
                    f"archive checksum {result.archive_checksum} does not match recorded {expected}",
                    code="ARCHIVE_CHECKSUM_MISMATCH",
                )
        return result

    def completion(self, message: VerifyWorkMessage, result: VerificationResult) -> dict[str, Any] | None:
        if message.re_verify:
            return None
        return AccessionRequest(
            user=message.user,
            filepath=message.filepath,
            decrypted_checksums=[ChecksumEntry.from_dict(x) for x in result.decrypted_checksums()],
        ).to_payload()

    def persist(self, message: VerifyWorkMessage, result: VerificationResult) -> None:
        if message.re_verify:
            return
        self.repository.mark_completed(
            file_info=FileInfo(
                archive_size=result.archive_size,
                archive_checksum=result.archive_checksum,
                decrypted_size=result.decrypted_size,
                decrypted_checksum=result.decrypted_sha256,
            ),
            file_id=message.file_id,
        )
        logger.debug("marked file_id %s completed", message.file_id)


def create_verify_worker(*, config: WorkerConfig, broker: Broker, repository: FileRepository) -> VerifyWorker:
    if config.c4gh is None:
        raise ConfigError("verify service requires a crypt4gh key")
    return VerifyWorker(
        broker=broker,
        config=config.broker,
        repository=repository,
        archive=create_backend(config.archive),
        private_key=load_private_key(config.c4gh.key_path, config.c4gh.passphrase),
    )
