"""Error taxonomy shared by the orchestrator, workspace adapter and session store."""

from __future__ import annotations

from typing import Any

from pentest_pipeline.orchestrator.models import FailureClass


class PipelineError(RuntimeError):
    """Generic wrapper carrying error kind, retryability and diagnostic context."""

    kind = "pipeline"
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        retryable: bool | None = None,
        context: dict[str, Any] | None = None,
        kind: str | None = None,
    ) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.retryable = self.default_retryable if retryable is None else retryable
        self.context = dict(context or {})

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for audit log events."""

        return {
            "kind": self.kind,
            "error_type": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
            "context": {key: _jsonable(value) for key, value in self.context.items()},
        }


class ValidationError(PipelineError):
    """Missing or malformed deliverable."""

    kind = "validation"
    default_retryable = True


class UnitNotFoundError(PipelineError):
    kind = "validation"


class PrerequisitesNotMetError(PipelineError):
    kind = "prerequisites"


class FileSystemError(PipelineError):
    kind = "filesystem"


class SecurityError(PipelineError):
    """Sandbox or path violation."""

    kind = "security"


class LockContentionError(PipelineError):
    """Version-control lock contention that outlived the retry budget."""

    kind = "lock_contention"
    default_retryable = True


class LockTimeoutError(PipelineError):
    kind = "lock_timeout"


class SessionNotFoundError(PipelineError):
    kind = "validation"


class CheckpointNotFoundError(PipelineError):
    kind = "validation"


class StaleSessionWriteError(PipelineError):
    """Session write whose base version no longer matches the stored document."""

    kind = "stale_write"
    default_retryable = True


class RegistryCycleError(PipelineError):
    kind = "registry"


class TaskRuntimeError(PipelineError):
    """Failure reported by the external task runtime.

    Retryable unless the runtime classified it as fatal (billing, session limit).
    """

    kind = "runtime"

    def __init__(
        self,
        message: str,
        *,
        failure_class: FailureClass,
        fatal: bool = False,
        retryable: bool | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message,
            retryable=(not fatal) if retryable is None else retryable and not fatal,
            context=context,
        )
        self.failure_class = failure_class
        self.fatal = fatal

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["failure_class"] = self.failure_class.value
        payload["fatal"] = self.fatal
        return payload


class UnitFailedError(PipelineError):
    """Unit exhausted its attempts or hit a non-retryable error."""

    kind = "unit_failed"

    def __init__(
        self,
        message: str,
        *,
        unit: str,
        attempts: int,
        checkpoint: str | None = None,
        cause: PipelineError | None = None,
    ) -> None:
        context: dict[str, Any] = {"unit": unit, "attempts": attempts}
        if checkpoint:
            context["resume_checkpoint"] = checkpoint
        if cause is not None:
            context["cause"] = cause.to_dict()
        super().__init__(message, retryable=False, context=context)
        self.unit = unit
        self.attempts = attempts
        self.checkpoint = checkpoint
        self.cause = cause


def wrap_error(error: BaseException, *, context: dict[str, Any] | None = None) -> PipelineError:
    """Normalize any exception into a `PipelineError` for uniform propagation."""

    if isinstance(error, PipelineError):
        if context:
            error.context.update(context)
        return error
    if isinstance(error, OSError):
        wrapped: PipelineError = FileSystemError(str(error) or type(error).__name__, context=context)
    else:
        wrapped = PipelineError(
            str(error) or type(error).__name__,
            kind="unexpected",
            context={"exception_type": type(error).__name__, **(context or {})},
        )
    wrapped.__cause__ = error
    return wrapped


def _jsonable(value: Any) -> Any:
    if isinstance(value, str | int | float | bool) or value is None:
        return value
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, list | tuple | set):
        return [_jsonable(item) for item in value]
    return str(value)
