from __future__ import annotations


class WorkerError(Exception):
    """Failure of one message's processing, carrying the delivery policy for it."""

    default_code = "WORKER_ERROR"
    default_error_class = "internal"
    default_requeue = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        error_class: str | None = None,
        requeue: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.error_class = error_class or self.default_error_class
        self.requeue = self.default_requeue if requeue is None else bool(requeue)


class MessageValidationError(WorkerError):
    default_code = "MESSAGE_INVALID"
    default_error_class = "validation"

    def __init__(self, message: str, *, schema_name: str = "", errors: list[str] | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.schema_name = schema_name
        self.errors = list(errors or [])


class RecordNotFoundError(WorkerError):
    default_code = "RECORD_NOT_FOUND"
    default_error_class = "lookup"


class TransientIOError(WorkerError):
    default_code = "TRANSIENT_IO"
    default_error_class = "transient"
    default_requeue = True


class PersistenceError(TransientIOError):
    default_code = "PERSISTENCE_FAILED"


class DecryptError(WorkerError):
    default_code = "DECRYPT_FAILED"
    default_error_class = "decrypt"


class PublishError(WorkerError):
    default_code = "PUBLISH_FAILED"
    default_error_class = "publish"
    default_requeue = True


class ConnectionLossError(WorkerError):
    default_code = "BROKER_CONNECTION_LOST"
    default_error_class = "fatal"


class ConfigError(ValueError):
    pass
