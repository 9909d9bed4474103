"""Error taxonomy for batch synchronization."""


class SyncError(Exception):
    """Base class for sync engine errors."""

    code: str = "SYNC_ERROR"


class CyclicDependencyError(SyncError):
    """Raised when a batch's dependency graph contains a cycle.

    Batch-fatal: no safe order exists and nothing in the batch is applied.
    """

    code = "CYCLIC_DEPENDENCY"

    def __init__(self, operation_id: str):
        self.operation_id = operation_id
        super().__init__(f"Cyclic dependency detected at operation {operation_id}")


class DependencyUnmetError(SyncError):
    """Raised when an operation's dependencies did not all succeed."""

    code = "DEPENDENCY_UNMET"

    def __init__(self, operation_id: str, missing: list[str]):
        self.operation_id = operation_id
        self.missing = missing
        super().__init__(
            f"Dependencies not met for operation {operation_id}: {', '.join(missing)}"
        )


class OperationValidationError(SyncError):
    """Raised when an operation or its payload is malformed."""

    code = "VALIDATION_ERROR"


class EntityNotFoundError(SyncError):
    """Raised when an UPDATE or DELETE target does not exist."""

    code = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"Entity {entity_type} with id {entity_id} not found")


class ConflictRejectedError(SyncError):
    """Raised when conflict resolution discards the incoming write."""

    code = "CONFLICT_REJECTED"

    def __init__(self, entity_type: str, entity_id: str, conflict_id: str, details: str = ""):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.conflict_id = conflict_id
        message = f"Write to {entity_type} {entity_id} rejected by conflict {conflict_id}"
        if details:
            message = f"{message}: {details}"
        super().__init__(message)


class OperationTimeoutError(SyncError, TimeoutError):
    """Raised when an operation exceeds its deadline."""

    code = "TIMEOUT"

    def __init__(self, operation_id: str, timeout_seconds: float):
        self.operation_id = operation_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Operation {operation_id} timed out after {timeout_seconds}s")


class StorageError(SyncError):
    """Raised when the persistence layer fails."""

    code = "STORAGE_ERROR"


class ConcurrentModificationError(StorageError):
    """Raised at commit when an entity read by the transaction changed underneath it."""

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        read_version: int | None,
        current_version: int | None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.read_version = read_version
        self.current_version = current_version
        super().__init__(
            f"Concurrent modification of {entity_type} {entity_id} "
            f"(read version {read_version}, now {current_version})"
        )
