from __future__ import annotations

import hashlib
import io

import pytest

from sda.errors import ConfigError, DecryptError
from sda.verification import load_private_key, verify_archived_file


def test_verify_reports_checksums_of_both_sides(keypair, encrypt):
    plaintext = b"genome data " * 10_000
    header, body = encrypt(plaintext, recipient=keypair)

    result = verify_archived_file(header=header, body=io.BytesIO(body), private_key=keypair.private)

    assert result.archive_size == len(body)
    assert result.archive_checksum == hashlib.sha256(body).hexdigest()
    assert result.decrypted_size == len(plaintext)
    assert result.decrypted_sha256 == hashlib.sha256(plaintext).hexdigest()
    assert result.decrypted_md5 == hashlib.md5(plaintext).hexdigest()
    assert result.decrypted_checksums() == [
        {"type": "sha256", "value": hashlib.sha256(plaintext).hexdigest()},
        {"type": "md5", "value": hashlib.md5(plaintext).hexdigest()},
    ]


def test_verify_handles_empty_plaintext(keypair, encrypt):
    header, body = encrypt(b"", recipient=keypair)
    result = verify_archived_file(header=header, body=io.BytesIO(body), private_key=keypair.private)
    assert result.decrypted_size == 0
    assert result.decrypted_sha256 == hashlib.sha256(b"").hexdigest()


def test_verify_with_wrong_key_raises_decrypt_error(keypair, other_keypair, encrypt):
    header, body = encrypt(b"secret", recipient=keypair)
    with pytest.raises(DecryptError):
        verify_archived_file(header=header, body=io.BytesIO(body), private_key=other_keypair.private)


def test_verify_with_tampered_body_raises_decrypt_error(keypair, encrypt):
    header, body = encrypt(b"secret" * 100, recipient=keypair)
    tampered = bytearray(body)
    tampered[20] ^= 0xFF
    with pytest.raises(DecryptError):
        verify_archived_file(header=header, body=io.BytesIO(bytes(tampered)), private_key=keypair.private)


def test_verify_with_garbage_header_raises_decrypt_error(keypair, encrypt):
    _, body = encrypt(b"secret", recipient=keypair)
    with pytest.raises(DecryptError):
        verify_archived_file(header=b"not a crypt4gh header", body=io.BytesIO(body), private_key=keypair.private)


def test_load_private_key_reports_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="crypt4gh key"):
        load_private_key(str(tmp_path / "missing.sec.pem"), "passphrase")
