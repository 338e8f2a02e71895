"""Exception hierarchy for the flag/level engine."""

from __future__ import annotations


class EngineError(Exception):
    """Base class for failures that abort a processing cycle."""


class PersistenceError(EngineError):
    """A store write or read failed after its retry."""

    def __init__(self, store: str, operation: str, cause: BaseException | None = None) -> None:
        self.store = store
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{store}.{operation} failed{detail}")


class ConcurrentModificationError(PersistenceError):
    """An optimistic-concurrency write lost its race twice."""


class UpstreamError(EngineError):
    """Bar supplier or broker could not be reached or refused the call."""

    def __init__(self, source: str, cause: BaseException | None = None) -> None:
        self.source = source
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{source} unavailable{detail}")


class VersionConflictError(EngineError):
    """An optimistic-concurrency guard did not match the stored row."""

    def __init__(self, store: str, key: str) -> None:
        self.store = store
        self.key = key
        super().__init__(f"{store}: version conflict on {key}")
