from __future__ import annotations

import json
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

from jsonschema import ValidationError, validate

from sda.errors import MessageValidationError

SCHEMA_DIR = Path(__file__).resolve().parent / "schemas"

ACCESSION_SCHEMA = "ingestion-accession"
VERIFICATION_SCHEMA = "ingestion-verification"
ACCESSION_REQUEST_SCHEMA = "ingestion-accession-request"
COMPLETION_SCHEMA = "ingestion-completion"


@lru_cache(maxsize=None)
def load_schema(name: str) -> dict[str, Any]:
    path = SCHEMA_DIR / f"{name}.json"
    if not path.is_file():
        raise MessageValidationError(f"unknown schema: {name}", schema_name=name)
    return json.loads(path.read_text(encoding="utf-8"))


def validate_payload(schema_name: str, payload: Any) -> dict[str, Any]:
    schema = load_schema(schema_name)
    try:
        validate(instance=payload, schema=schema)
    except ValidationError as exc:
        location = "/".join(str(x) for x in exc.absolute_path) or "<root>"
        raise MessageValidationError(
            f"message does not match {schema_name}: {location}: {exc.message}",
            schema_name=schema_name,
            errors=[f"{location}: {exc.message}"],
        ) from exc
    return payload


def decode_body(schema_name: str, body: bytes) -> dict[str, Any]:
    """Deserialize a delivery body and validate it; nothing in it is trusted before this."""
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MessageValidationError(
            f"message body is not valid JSON: {exc}",
            schema_name=schema_name,
            errors=[str(exc)],
        ) from exc
    return validate_payload(schema_name, payload)


def encode_message(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")


@dataclass(frozen=True)
class ChecksumEntry:
    type: str
    value: str

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ChecksumEntry:
        return cls(type=str(raw["type"]), value=str(raw["value"]))

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "value": self.value}


def checksum_of(entries: list[ChecksumEntry], algorithm: str) -> str | None:
    found = None
    for entry in entries:
        if entry.type == algorithm:
            found = entry.value
    return found


@dataclass(frozen=True)
class CopyWorkMessage:
    type: str
    user: str
    filepath: str
    accession_id: str
    decrypted_checksums: list[ChecksumEntry] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> CopyWorkMessage:
        return cls(
            type=str(payload["type"]),
            user=str(payload["user"]),
            filepath=str(payload["filepath"]),
            accession_id=str(payload["accession_id"]),
            decrypted_checksums=[ChecksumEntry.from_dict(x) for x in payload["decrypted_checksums"]],
        )


@dataclass(frozen=True)
class VerifyWorkMessage:
    user: str
    filepath: str
    file_id: int
    archive_path: str
    encrypted_checksums: list[ChecksumEntry] = field(default_factory=list)
    re_verify: bool = False

    @property
    def accession_id(self) -> None:
        return None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> VerifyWorkMessage:
        return cls(
            user=str(payload["user"]),
            filepath=str(payload["filepath"]),
            file_id=int(payload["file_id"]),
            archive_path=str(payload["archive_path"]),
            encrypted_checksums=[ChecksumEntry.from_dict(x) for x in payload["encrypted_checksums"]],
            re_verify=bool(payload.get("re_verify", False)),
        )


@dataclass(frozen=True)
class AccessionRequest:
    user: str
    filepath: str
    decrypted_checksums: list[ChecksumEntry]

    def to_payload(self) -> dict[str, Any]:
        return {
            "user": self.user,
            "filepath": self.filepath,
            "decrypted_checksums": [x.to_dict() for x in self.decrypted_checksums],
        }


@dataclass(frozen=True)
class CompletionMessage:
    user: str
    filepath: str
    accession_id: str
    decrypted_checksums: list[ChecksumEntry]

    def to_payload(self) -> dict[str, Any]:
        return {
            "user": self.user,
            "filepath": self.filepath,
            "accession_id": self.accession_id,
            "decrypted_checksums": [x.to_dict() for x in self.decrypted_checksums],
        }


def error_event(*, reason: str, body: bytes, user: str | None = None, filepath: str | None = None) -> dict[str, Any]:
    """Diagnostic event for the error channel; keeps the original body for manual replay."""
    try:
        original: Any = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        original = body.decode("utf-8", errors="replace")
    return {
        "user": user,
        "filepath": filepath,
        "reason": reason,
        "original_message": original,
    }
