from __future__ import annotations

import hashlib
import io
import logging
from dataclasses import dataclass
from typing import Any

from sda.errors import ConfigError, DecryptError
from sda.streams import ByteCounter, ChainedReader, DiscardSink, ObservingReader, ObservingWriter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationResult:
    archive_size: int
    archive_checksum: str
    decrypted_size: int
    decrypted_sha256: str
    decrypted_md5: str

    def decrypted_checksums(self) -> list[dict[str, str]]:
        return [
            {"type": "sha256", "value": self.decrypted_sha256},
            {"type": "md5", "value": self.decrypted_md5},
        ]


def _import_crypt4gh() -> tuple[Any, Any]:
    try:
        from crypt4gh import lib as c4gh_lib  # type: ignore
        from nacl.exceptions import CryptoError  # type: ignore
    except ImportError as exc:
        raise RuntimeError("crypt4gh is required for verification; install crypt4gh") from exc
    return c4gh_lib, CryptoError


def load_private_key(path: str, passphrase: str) -> bytes:
    try:
        from crypt4gh.keys import get_private_key  # type: ignore
    except ImportError as exc:
        raise RuntimeError("crypt4gh is required for verification; install crypt4gh") from exc
    try:
        return get_private_key(path, lambda: passphrase)
    except (OSError, ValueError) as exc:
        raise ConfigError(f"failed to load crypt4gh key {path}: {exc}") from exc


def verify_archived_file(*, header: bytes, body: Any, private_key: bytes) -> VerificationResult:
    """Decrypt ``header`` + ``body`` once, hashing both sides of the cipher.

    The archive checksum covers the body exactly as read from storage; the
    stored header is not part of it. The plaintext is only hashed and
    counted, never kept.
    """
    c4gh_lib, crypto_error = _import_crypt4gh()

    archive_hash = hashlib.sha256()
    archive_count = ByteCounter()
    archive_stream = ObservingReader(body, [archive_hash, archive_count])
    source = io.BufferedReader(ChainedReader(io.BytesIO(header), archive_stream))

    sha256_hash = hashlib.sha256()
    md5_hash = hashlib.md5(usedforsecurity=False)
    plain_count = ByteCounter()
    sink = ObservingWriter(DiscardSink(), [md5_hash, sha256_hash, plain_count])

    try:
        c4gh_lib.decrypt([(0, private_key, None)], source, sink)
    except (ValueError, AssertionError, crypto_error) as exc:
        raise DecryptError(f"could not decrypt archived file: {exc}") from exc

    # The decoder stops after the final segment; drain anything left so the
    # archive checksum covers the full object.
    while source.read(io.DEFAULT_BUFFER_SIZE):
        pass

    return VerificationResult(
        archive_size=archive_count.count,
        archive_checksum=archive_hash.hexdigest(),
        decrypted_size=plain_count.count,
        decrypted_sha256=sha256_hash.hexdigest(),
        decrypted_md5=md5_hash.hexdigest(),
    )
