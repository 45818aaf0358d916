from __future__ import annotations

import atexit
import io
import logging
import os
import posixpath
import queue
import ssl
import tempfile
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

MIB = 1024 * 1024

_EOF = object()
_ABORT = object()


class StorageError(Exception):
    pass


class StorageNotFoundError(StorageError):
    pass


class StorageIOError(StorageError):
    pass


class StorageConfigError(StorageError):
    pass


@dataclass(frozen=True)
class StorageConfig:
    backend: str
    location: str = ""
    url: str = ""
    port: int = 443
    region: str = "us-east-1"
    access_key: str = ""
    secret_key: str = ""
    bucket: str = ""
    upload_concurrency: int = 2
    chunk_size: int = 15 * MIB
    cacert: str = ""


class FileWriter(Protocol):
    def write(self, data: bytes, /) -> int: ...

    def close(self) -> None: ...

    def abort(self) -> None: ...


class StorageBackend(Protocol):
    def size(self, path: str) -> int: ...

    def open_reader(self, path: str) -> Any: ...

    def open_writer(self, path: str) -> FileWriter: ...


def _confined_path(root: Path, path: str) -> Path:
    # Clean as a rooted path first so leading ".." segments collapse at "/".
    cleaned = posixpath.normpath("/" + path.replace(os.sep, "/")).lstrip("/")
    return root / cleaned if cleaned else root


class PosixFileWriter:
    def __init__(self, path: Path) -> None:
        self._path = path
        fd = os.open(path, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, 0o640)
        self._file = os.fdopen(fd, "wb")

    def write(self, data: bytes) -> int:
        try:
            return self._file.write(data)
        except OSError as exc:
            raise StorageIOError(f"write to {self._path} failed: {exc}") from exc

    def close(self) -> None:
        if self._file.closed:
            return
        try:
            self._file.close()
        except OSError as exc:
            raise StorageIOError(f"close of {self._path} failed: {exc}") from exc

    def abort(self) -> None:
        if not self._file.closed:
            self._file.close()
        self._path.unlink(missing_ok=True)

    def __enter__(self) -> PosixFileWriter:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is None:
            self.close()
        else:
            self.abort()


class PosixBackend:
    def __init__(self, *, config: StorageConfig) -> None:
        if not config.location.strip():
            raise StorageConfigError("posix storage requires a location")
        self._root = Path(config.location).expanduser()

    def resolve(self, path: str) -> Path:
        return _confined_path(self._root, path)

    def size(self, path: str) -> int:
        target = self.resolve(path)
        try:
            return target.stat().st_size
        except FileNotFoundError as exc:
            raise StorageNotFoundError(str(target)) from exc
        except OSError as exc:
            logger.error("stat of %s failed: %s", target, exc)
            raise StorageIOError(f"stat of {target} failed: {exc}") from exc

    def open_reader(self, path: str) -> Any:
        target = self.resolve(path)
        try:
            return target.open("rb")
        except FileNotFoundError as exc:
            raise StorageNotFoundError(str(target)) from exc
        except OSError as exc:
            logger.error("open of %s failed: %s", target, exc)
            raise StorageIOError(f"open of {target} failed: {exc}") from exc

    def open_writer(self, path: str) -> PosixFileWriter:
        target = self.resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            return PosixFileWriter(target)
        except OSError as exc:
            logger.error("open for write of %s failed: %s", target, exc)
            raise StorageIOError(f"open for write of {target} failed: {exc}") from exc


class _ChunkPipe(io.RawIOBase):
    """Read side of the in-process pipe consumed by the multipart uploader."""

    def __init__(self, channel: queue.Queue) -> None:
        super().__init__()
        self._channel = channel
        self._pending = b""
        self._done = False

    def readable(self) -> bool:
        return True

    def readinto(self, buffer: Any) -> int:
        view = memoryview(buffer).cast("B")
        filled = 0
        while filled < len(view):
            if not self._pending:
                if self._done:
                    break
                item = self._channel.get()
                if item is _EOF:
                    self._done = True
                    break
                if item is _ABORT:
                    raise StorageIOError("upload aborted by writer")
                self._pending = item
            take = min(len(view) - filled, len(self._pending))
            view[filled : filled + take] = self._pending[:take]
            self._pending = self._pending[take:]
            filled += take
        return filled


class S3FileWriter:
    """Stream bytes into a managed multipart upload running on a background thread.

    Writes go through a bounded channel so at most ``max_buffered_chunks``
    chunks are held in memory. A failure of the upload is raised from the
    next ``write`` or from ``close``; ``close`` returns only once the upload
    has completed.
    """

    def __init__(
        self,
        *,
        client: Any,
        bucket: str,
        key: str,
        transfer_config: Any,
        max_buffered_chunks: int = 4,
        poll_interval_s: float = 0.1,
    ) -> None:
        self._bucket = bucket
        self._key = key
        self._channel: queue.Queue = queue.Queue(maxsize=max(1, max_buffered_chunks))
        self._poll_interval_s = poll_interval_s
        self._error: BaseException | None = None
        self._closed = False
        self._pipe = _ChunkPipe(self._channel)
        self._thread = threading.Thread(
            target=self._upload,
            args=(client, transfer_config),
            name=f"s3-upload:{key}",
            daemon=True,
        )
        self._thread.start()

    def _upload(self, client: Any, transfer_config: Any) -> None:
        try:
            client.upload_fileobj(
                Fileobj=self._pipe,
                Bucket=self._bucket,
                Key=self._key,
                ExtraArgs={"ContentType": "application/octet-stream"},
                Config=transfer_config,
            )
        except Exception as exc:
            self._error = exc

    def _raise_upload_error(self) -> None:
        if self._error is not None:
            raise StorageIOError(f"upload of s3://{self._bucket}/{self._key} failed: {self._error}") from self._error

    def _put(self, item: Any) -> None:
        while True:
            self._raise_upload_error()
            if not self._thread.is_alive():
                raise StorageIOError(f"upload of s3://{self._bucket}/{self._key} stopped early")
            try:
                self._channel.put(item, timeout=self._poll_interval_s)
                return
            except queue.Full:
                continue

    def write(self, data: bytes) -> int:
        if self._closed:
            raise StorageIOError("write to closed writer")
        if data:
            self._put(bytes(data))
        return len(data)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._put(_EOF)
        self._thread.join()
        self._raise_upload_error()

    def abort(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._error is None and self._thread.is_alive():
            try:
                self._put(_ABORT)
            except StorageIOError:
                pass
        self._thread.join()
        logger.info("aborted upload of s3://%s/%s", self._bucket, self._key)

    def __enter__(self) -> S3FileWriter:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is None:
            self.close()
        else:
            self.abort()


class S3ObjectReader(io.RawIOBase):
    """Streaming body of one object; transport errors surface as StorageIOError."""

    def __init__(self, body: Any, *, key: str) -> None:
        super().__init__()
        self._body = body
        self._key = key

    def readable(self) -> bool:
        return True

    def readinto(self, buffer: Any) -> int:
        view = memoryview(buffer).cast("B")
        try:
            chunk = self._body.read(len(view))
        except Exception as exc:
            raise StorageIOError(f"read of {self._key} failed: {exc}") from exc
        view[: len(chunk)] = chunk
        return len(chunk)

    def close(self) -> None:
        if not self.closed:
            self._body.close()
        super().close()


def _import_boto3() -> Any:
    try:
        import boto3  # type: ignore
        import boto3.s3.transfer  # type: ignore
    except ImportError as exc:
        raise RuntimeError("boto3 is required for the s3 storage backend; install boto3") from exc
    return boto3


def _tls_floor_ok() -> bool:
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    return context.minimum_version >= ssl.TLSVersion.TLSv1_2


def _default_ca_file() -> str | None:
    paths = ssl.get_default_verify_paths()
    for candidate in (paths.cafile, paths.openssl_cafile):
        if candidate and os.path.isfile(candidate):
            return candidate
    return None


_ca_bundles: dict[str, str] = {}
_ca_bundles_lock = threading.Lock()


def remove_ca_bundles() -> None:
    with _ca_bundles_lock:
        for path in _ca_bundles.values():
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass
        _ca_bundles.clear()


atexit.register(remove_ca_bundles)


def build_ca_bundle(cacert: str) -> str | bool:
    """Return the ``verify`` argument for the S3 client.

    Without a configured CA file the default trust store is used. With one,
    its certificates are appended to the platform bundle. The combined file
    is written once per CA file and process and removed at exit.
    """
    if not cacert:
        return True
    with _ca_bundles_lock:
        cached = _ca_bundles.get(cacert)
        if cached is not None and os.path.isfile(cached):
            return cached
        try:
            extra = Path(cacert).read_bytes()
        except OSError as exc:
            raise StorageConfigError(f"failed to read CA certificate {cacert}: {exc}") from exc

        from cryptography import x509

        try:
            certs = x509.load_pem_x509_certificates(extra)
        except ValueError:
            certs = []
        if not certs:
            logger.debug("no certs appended from %s, using system certs only", cacert)
            return True

        base = _default_ca_file()
        bundle = tempfile.NamedTemporaryFile(prefix="sda-ca-", suffix=".pem", delete=False)
        with bundle:
            if base is not None:
                bundle.write(Path(base).read_bytes().rstrip(b"\n") + b"\n")
            else:
                logger.warning("no platform CA bundle found; trusting %s only", cacert)
            bundle.write(extra)
        _ca_bundles[cacert] = bundle.name
    logger.debug("appended %d certs from %s to CA bundle %s", len(certs), cacert, bundle.name)
    return bundle.name


def _error_code(exc: Exception) -> str:
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        return str(response.get("Error", {}).get("Code", ""))
    return ""


class S3Backend:
    def __init__(self, *, config: StorageConfig, client: Any | None = None) -> None:
        if not config.bucket.strip():
            raise StorageConfigError("s3 storage requires a bucket")
        self._bucket = config.bucket
        self._chunk_size = max(5 * MIB, int(config.chunk_size))
        self._concurrency = max(1, int(config.upload_concurrency))
        boto3 = _import_boto3()
        self._transfer_config = boto3.s3.transfer.TransferConfig(
            multipart_threshold=self._chunk_size,
            multipart_chunksize=self._chunk_size,
            max_concurrency=self._concurrency,
        )
        if client is not None:
            self._client = client
            return

        insecure = config.url.startswith("http:")
        if insecure:
            logger.warning("s3 endpoint %s is not using TLS", config.url)
            verify: str | bool = False
        else:
            if not _tls_floor_ok():
                raise StorageConfigError("TLS 1.2 or newer cannot be enforced by this interpreter")
            verify = build_ca_bundle(config.cacert)
        session = boto3.session.Session(
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
            region_name=config.region or None,
        )
        self._client = session.client(
            "s3",
            endpoint_url=f"{config.url}:{config.port}" if config.url else None,
            use_ssl=not insecure,
            verify=verify,
            config=boto3.session.Config(s3={"addressing_style": "path"}),
        )

    def size(self, path: str) -> int:
        try:
            response = self._client.head_object(Bucket=self._bucket, Key=path)
        except Exception as exc:
            if _error_code(exc) in {"404", "NoSuchKey", "NotFound"}:
                raise StorageNotFoundError(f"s3://{self._bucket}/{path}") from exc
            logger.error("head_object for %s failed: %s", path, exc)
            raise StorageIOError(f"head_object for {path} failed: {exc}") from exc
        return int(response["ContentLength"])

    def open_reader(self, path: str) -> Any:
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=path)
        except Exception as exc:
            if _error_code(exc) in {"404", "NoSuchKey", "NotFound"}:
                raise StorageNotFoundError(f"s3://{self._bucket}/{path}") from exc
            logger.error("get_object for %s failed: %s", path, exc)
            raise StorageIOError(f"get_object for {path} failed: {exc}") from exc
        return S3ObjectReader(response["Body"], key=path)

    def open_writer(self, path: str) -> S3FileWriter:
        return S3FileWriter(
            client=self._client,
            bucket=self._bucket,
            key=path,
            transfer_config=self._transfer_config,
            max_buffered_chunks=self._concurrency * 2,
        )


def create_backend(config: StorageConfig) -> PosixBackend | S3Backend:
    if config.backend == "posix":
        return PosixBackend(config=config)
    if config.backend == "s3":
        return S3Backend(config=config)
    raise StorageConfigError(f"unsupported storage backend: {config.backend}")


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise StorageConfigError(f"{name} must be an integer") from exc
    return max(minimum, value)


def storage_config_from_env(prefix: str, environ: Mapping[str, str] | None = None) -> StorageConfig:
    env = os.environ if environ is None else environ
    key = f"{prefix.strip().upper()}_"
    backend = env.get(f"{key}TYPE", "posix").strip().lower() or "posix"
    return StorageConfig(
        backend=backend,
        location=env.get(f"{key}LOCATION", "").strip(),
        url=env.get(f"{key}URL", "").strip().rstrip("/"),
        port=_env_int(env, f"{key}PORT", default=443, minimum=1),
        region=env.get(f"{key}REGION", "us-east-1").strip() or "us-east-1",
        access_key=env.get(f"{key}ACCESSKEY", "").strip(),
        secret_key=env.get(f"{key}SECRETKEY", "").strip(),
        bucket=env.get(f"{key}BUCKET", "").strip(),
        upload_concurrency=_env_int(env, f"{key}UPLOADCONCURRENCY", default=2, minimum=1),
        chunk_size=_env_int(env, f"{key}CHUNKSIZE", default=15, minimum=5) * MIB,
        cacert=env.get(f"{key}CACERT", "").strip(),
    )


def create_backend_from_env(prefix: str, environ: Mapping[str, str] | None = None) -> PosixBackend | S3Backend:
    return create_backend(storage_config_from_env(prefix, environ))
