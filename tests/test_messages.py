from __future__ import annotations

import json

import pytest

from sda.errors import MessageValidationError
from sda.messages import (
    ACCESSION_REQUEST_SCHEMA,
    ACCESSION_SCHEMA,
    COMPLETION_SCHEMA,
    VERIFICATION_SCHEMA,
    ChecksumEntry,
    CompletionMessage,
    CopyWorkMessage,
    VerifyWorkMessage,
    checksum_of,
    decode_body,
    encode_message,
    error_event,
    validate_payload,
)

SHA = "a" * 64


def _accession_body(**overrides) -> bytes:
    payload = {
        "type": "accession",
        "user": "alice",
        "filepath": "f.txt",
        "accession_id": "EGAF001",
        "decrypted_checksums": [{"type": "sha256", "value": SHA}],
    }
    payload.update(overrides)
    return json.dumps(payload).encode("utf-8")


def test_decode_accession_message():
    payload = decode_body(ACCESSION_SCHEMA, _accession_body())
    message = CopyWorkMessage.from_payload(payload)
    assert message.user == "alice"
    assert message.accession_id == "EGAF001"
    assert message.decrypted_checksums == [ChecksumEntry(type="sha256", value=SHA)]


def test_decode_rejects_non_json_body():
    with pytest.raises(MessageValidationError, match="not valid JSON"):
        decode_body(ACCESSION_SCHEMA, b"\xff{not json")


def test_decode_rejects_missing_field():
    body = json.dumps({"type": "accession", "user": "alice", "filepath": "f.txt"}).encode("utf-8")
    with pytest.raises(MessageValidationError) as excinfo:
        decode_body(ACCESSION_SCHEMA, body)
    assert excinfo.value.schema_name == ACCESSION_SCHEMA
    assert excinfo.value.requeue is False


def test_decode_rejects_unknown_checksum_type():
    body = _accession_body(decrypted_checksums=[{"type": "crc32", "value": "abcd"}])
    with pytest.raises(MessageValidationError, match="decrypted_checksums"):
        decode_body(ACCESSION_SCHEMA, body)


def test_decode_verification_message_with_re_verify_flag():
    body = json.dumps(
        {
            "user": "alice",
            "filepath": "f.txt",
            "file_id": 7,
            "archive_path": "7.c4gh",
            "encrypted_checksums": [{"type": "sha256", "value": SHA}],
            "re_verify": True,
        }
    ).encode("utf-8")
    message = VerifyWorkMessage.from_payload(decode_body(VERIFICATION_SCHEMA, body))
    assert message.file_id == 7
    assert message.re_verify is True
    assert message.accession_id is None


def test_verification_message_requires_integer_file_id():
    body = json.dumps(
        {
            "user": "alice",
            "filepath": "f.txt",
            "file_id": "7",
            "archive_path": "7.c4gh",
            "encrypted_checksums": [{"type": "sha256", "value": SHA}],
        }
    ).encode("utf-8")
    with pytest.raises(MessageValidationError, match="file_id"):
        decode_body(VERIFICATION_SCHEMA, body)


def test_outbound_schemas_reject_extra_fields():
    payload = CompletionMessage(
        user="alice",
        filepath="f.txt",
        accession_id="EGAF001",
        decrypted_checksums=[ChecksumEntry(type="sha256", value=SHA)],
    ).to_payload()
    assert validate_payload(COMPLETION_SCHEMA, payload) is payload

    with pytest.raises(MessageValidationError):
        validate_payload(COMPLETION_SCHEMA, {**payload, "extra": 1})
    with pytest.raises(MessageValidationError):
        validate_payload(ACCESSION_REQUEST_SCHEMA, {"user": "alice", "filepath": "f.txt", "decrypted_checksums": []})


def test_unknown_schema_is_a_validation_error():
    with pytest.raises(MessageValidationError, match="unknown schema"):
        validate_payload("no-such-schema", {})


def test_checksum_of_prefers_last_entry():
    entries = [
        ChecksumEntry(type="sha256", value="1" * 64),
        ChecksumEntry(type="md5", value="2" * 32),
        ChecksumEntry(type="sha256", value="3" * 64),
    ]
    assert checksum_of(entries, "sha256") == "3" * 64
    assert checksum_of(entries, "sha1") is None


def test_error_event_keeps_original_message():
    event = error_event(reason="boom", body=_accession_body(), user="alice", filepath="f.txt")
    assert event["reason"] == "boom"
    assert event["original_message"]["accession_id"] == "EGAF001"

    raw = error_event(reason="bad", body=b"\xffnot json")
    assert raw["user"] is None
    assert isinstance(raw["original_message"], str)


def test_encode_message_is_compact_json():
    assert encode_message({"a": 1, "b": "x"}) == b'{"a":1,"b":"x"}'
