"""Error taxonomy for the usage-pattern engine."""

from __future__ import annotations

from pydantic import ValidationError as PydanticValidationError


class EngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(EngineError, ValueError):
    """Malformed input: missing/invalid device fields, bad records or bundles."""

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = errors or []
        if self.errors:
            message = f"{message}: {'; '.join(self.errors)}"
        super().__init__(message)

    @classmethod
    def from_pydantic(cls, what: str, err: PydanticValidationError) -> ValidationError:
        """Translate a pydantic error into a list of ``location: message`` entries."""
        errors = []
        for item in err.errors():
            location = ".".join(str(part) for part in item.get("loc", ())) or what
            errors.append(f"{location}: {item.get('msg', 'invalid')}")
        return cls(f"Invalid {what}", errors)


class LockTimeoutError(EngineError, TimeoutError):
    """A named operation lock could not be acquired in time."""

    def __init__(self, lock_name: str, timeout: float):
        self.lock_name = lock_name
        self.timeout = timeout
        super().__init__(f"Could not acquire '{lock_name}' lock within {timeout:.1f}s")


class InsufficientDataError(EngineError):
    """Training was requested before enough day patterns were collected."""

    def __init__(self, current: int, required: int):
        self.current = current
        self.required = required
        super().__init__(
            f"Not enough data to train: have {current} day patterns, need {required}"
        )


class PersistenceError(EngineError):
    """A record store could not be read or rejected a write."""

    def __init__(self, message: str, kind: str | None = None):
        self.kind = kind
        super().__init__(message)


class ComputeError(EngineError):
    """Unexpected failure inside one analyzer during a training pass."""

    def __init__(self, analyzer: str, cause: BaseException):
        self.analyzer = analyzer
        super().__init__(f"{analyzer} failed: {cause}")


class NoActiveUserError(EngineError):
    """A mutating operation was called before ``set_current_user``."""

    def __init__(self):
        super().__init__("No user selected. Call set_current_user() first.")
