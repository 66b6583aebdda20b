from __future__ import annotations

from typing import Optional


class TodoBoardError(Exception):
    """Base class for every error raised by the synchronizer and its stores."""


class NotFoundError(TodoBoardError):
    def __init__(self, kind: str, entity_id: Optional[str]) -> None:
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} {entity_id!r} not found")


class ValidationError(TodoBoardError):
    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class ConflictError(TodoBoardError):
    """A precondition on the current state did not hold (stale version, taken name)."""

    def __init__(self, kind: str, entity_id: Optional[str], message: str) -> None:
        self.kind = kind
        self.entity_id = entity_id
        self.message = message
        super().__init__(f"{kind} {entity_id!r}: {message}")


class InconsistentStateError(TodoBoardError):
    """The standalone document and the embedded copy disagree on existence.

    This only happens after an earlier mutation stopped halfway; the parent
    has been through read-repair by the time this is raised.
    """

    def __init__(self, kind: str, entity_id: str, parent_id: str, detail: str) -> None:
        self.kind = kind
        self.entity_id = entity_id
        self.parent_id = parent_id
        self.detail = detail
        super().__init__(f"{kind} {entity_id!r} under {parent_id!r}: {detail}")


class PartialWriteError(TodoBoardError):
    """The second half of a dual write failed after the first half landed.

    ``rolled_back`` tells whether the first half could be undone.
    """

    def __init__(
        self,
        kind: str,
        entity_id: str,
        step: str,
        cause: Optional[BaseException] = None,
        rolled_back: bool = False,
    ) -> None:
        self.kind = kind
        self.entity_id = entity_id
        self.step = step
        self.cause = cause
        self.rolled_back = rolled_back
        state = "rolled back" if rolled_back else "left orphaned"
        super().__init__(f"{kind} {entity_id!r}: {step} failed ({state})")


class IdentifierMismatchError(TodoBoardError):
    def __init__(self, kind: str, standalone_id: str, embedded_id: Optional[str]) -> None:
        self.kind = kind
        self.standalone_id = standalone_id
        self.embedded_id = embedded_id
        super().__init__(
            f"{kind}: standalone id {standalone_id!r} != embedded id {embedded_id!r}"
        )


class StoreError(TodoBoardError):
    """Wraps a failure reported by the underlying document store driver."""

    def __init__(self, operation: str, collection: str, cause: Optional[BaseException] = None) -> None:
        self.operation = operation
        self.collection = collection
        self.cause = cause
        super().__init__(f"{operation} on {collection} failed: {cause}")
