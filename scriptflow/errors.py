from __future__ import annotations

from enum import Enum
from typing import Any

from scriptflow.models import ConflictDetails, LockRecord


class ScriptFlowError(Exception):
    code = "SCRIPTFLOW_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(ScriptFlowError):
    code = "VALIDATION_ERROR"


class NotFoundError(ScriptFlowError):
    code = "NOT_FOUND"

    def __init__(self, path: str, *, message: str | None = None) -> None:
        super().__init__(message or f"File not found: {path}", details={"path": path})
        self.path = path


class MatchError(ScriptFlowError):
    code = "MATCH_ERROR"


class ConflictError(ScriptFlowError):
    code = "CONFLICT"

    def __init__(self, conflict: ConflictDetails) -> None:
        super().__init__(
            f"Remote file {conflict.path} changed since it was last read "
            f"(expected {conflict.expected_hash[:8]}, found {conflict.current_hash[:8]})",
            details={
                "path": conflict.path,
                "expected_hash": conflict.expected_hash,
                "current_hash": conflict.current_hash,
                "hash_source": conflict.hash_source,
            },
        )
        self.conflict = conflict


class LockTimeoutError(ScriptFlowError):
    code = "LOCK_TIMEOUT"

    def __init__(self, resource_id: str, timeout: float, holder: LockRecord | None) -> None:
        holder_text = holder.describe() if holder is not None else "unknown holder"
        super().__init__(
            f"Timed out after {timeout:.1f}s waiting for lock on {resource_id} held by {holder_text}",
            details={
                "resource_id": resource_id,
                "timeout": timeout,
                "holder": holder.to_json() if holder is not None else None,
            },
        )
        self.resource_id = resource_id
        self.timeout = timeout
        self.holder = holder


class OperationStateError(ScriptFlowError):
    code = "OPERATION_STATE"


class RemoteStoreError(ScriptFlowError):
    code = "REMOTE_STORE_ERROR"


class SyncPlanErrorCode(str, Enum):
    BREADCRUMB_MISSING = "BREADCRUMB_MISSING"
    LOCK_TIMEOUT = "LOCK_TIMEOUT"
    UNCOMMITTED_CHANGES = "UNCOMMITTED_CHANGES"
    GIT_NOT_FOUND = "GIT_NOT_FOUND"
    API_ERROR = "API_ERROR"
    LOCAL_READ_ERROR = "LOCAL_READ_ERROR"


class SyncPlanError(ScriptFlowError):
    def __init__(
        self,
        code: SyncPlanErrorCode,
        message: str,
        *,
        hint: str = "",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.code = code
        self.hint = hint

    def __str__(self) -> str:
        if self.hint:
            return f"[{self.code.value}] {self.message} ({self.hint})"
        return f"[{self.code.value}] {self.message}"


class SyncExecuteErrorCode(str, Enum):
    LOCK_TIMEOUT = "LOCK_TIMEOUT"
    PLAN_EXPIRED = "PLAN_EXPIRED"
    DELETION_REQUIRES_CONFIRMATION = "DELETION_REQUIRES_CONFIRMATION"
    BOOTSTRAP_DELETE_REFUSED = "BOOTSTRAP_DELETE_REFUSED"
    DRIFT_DETECTED = "DRIFT_DETECTED"
    API_ERROR = "API_ERROR"
    LOCAL_WRITE_ERROR = "LOCAL_WRITE_ERROR"
    MANIFEST_ERROR = "MANIFEST_ERROR"


class SyncExecuteError(ScriptFlowError):
    def __init__(
        self,
        code: SyncExecuteErrorCode,
        message: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.code = code

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"
