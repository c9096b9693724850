"""
Typed errors for the workspace core.

Every error carries a machine-readable ``code`` so callers (the API layer,
tests) catch by type and report by code instead of parsing messages.

    WorkspaceError
    +-- ValidationError               VALIDATION_FAILED
    +-- NotAuthenticatedError         NOT_AUTHENTICATED
    +-- OwnershipError                OWNERSHIP_MISMATCH
    +-- RecordNotFoundError           RECORD_NOT_FOUND
    +-- RemoteOperationError          REMOTE_OPERATION_FAILED
    +-- InvalidStatusTransitionError  INVALID_STATUS_TRANSITION

Validation errors are raised before any remote call. Remote errors are
raised after the failed write, with the local snapshot left as it was.
"""
from typing import Optional


class WorkspaceError(Exception):
    code: str = "WORKSPACE_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(WorkspaceError):
    code = "VALIDATION_FAILED"

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class NotAuthenticatedError(WorkspaceError):
    """Raised while auth is still loading or the user is signed out."""

    code = "NOT_AUTHENTICATED"

    def __init__(self, state: str):
        self.state = state
        super().__init__(f"No operations permitted while auth is {state}")


class OwnershipError(WorkspaceError):
    code = "OWNERSHIP_MISMATCH"

    def __init__(self, owner_id: str, user_id: str):
        self.owner_id = owner_id
        self.user_id = user_id
        super().__init__(f"Store is bound to owner {owner_id}, not {user_id}")


class RecordNotFoundError(WorkspaceError):
    code = "RECORD_NOT_FOUND"

    def __init__(self, collection: str, record_id: str):
        self.collection = collection
        self.record_id = record_id
        super().__init__(f"{collection} record {record_id} not found")


class RemoteOperationError(WorkspaceError):
    code = "REMOTE_OPERATION_FAILED"

    def __init__(self, operation: str, collection: str, cause: BaseException):
        self.operation = operation
        self.collection = collection
        self.cause = cause
        super().__init__(f"{operation} on {collection} failed: {cause}")


class InvalidStatusTransitionError(WorkspaceError):
    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Invoice cannot move from {current} to {requested}")
