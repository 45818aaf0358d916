import io
import pathlib
import sys

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sda.broker import InMemoryBroker
from sda.config import BrokerConfig
from sda.database import InMemoryFileRepository


class KeyPair:
    def __init__(self) -> None:
        key = X25519PrivateKey.generate()
        self.private = key.private_bytes(
            serialization.Encoding.Raw,
            serialization.PrivateFormat.Raw,
            serialization.NoEncryption(),
        )
        self.public = key.public_key().public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)


def encrypt_c4gh(plaintext: bytes, *, recipient: KeyPair) -> tuple[bytes, bytes]:
    """Encrypt ``plaintext`` and split the result into (header, body) as ingestion stores them."""
    from crypt4gh import lib

    sender = KeyPair()
    out = io.BytesIO()
    lib.encrypt([(0, sender.private, recipient.public)], io.BytesIO(plaintext), out)
    data = out.getvalue()

    packets = int.from_bytes(data[12:16], "little")
    offset = 16
    for _ in range(packets):
        offset += int.from_bytes(data[offset : offset + 4], "little")
    return data[:offset], data[offset:]


@pytest.fixture
def keypair() -> KeyPair:
    return KeyPair()


@pytest.fixture
def other_keypair() -> KeyPair:
    return KeyPair()


@pytest.fixture
def encrypt():
    return encrypt_c4gh


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def repository() -> InMemoryFileRepository:
    return InMemoryFileRepository()


@pytest.fixture
def broker_config() -> BrokerConfig:
    return BrokerConfig(
        queue="work",
        exchange="sda",
        routing_key="done",
        routing_error="error",
        durable=True,
        poll_interval_s=0.01,
        watch_interval_s=0.05,
    )
