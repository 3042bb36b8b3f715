"""Two-phase remote mutations.

Every mutating operation computes a ChangeSet without side effects, lets an
optional validator rewrite it, applies it to the remote store and, when
anything fails, restores the content captured during compute.

    CREATED -> COMPUTED -> (VALIDATING) -> APPLIED
    CREATED | COMPUTED | VALIDATING -> FAILED -> ROLLED_BACK
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from scriptflow.errors import ConflictError, LockTimeoutError, OperationStateError
from scriptflow.lock_manager import LockManager
from scriptflow.models import ChangeSet, ConflictDetails, OperationResult
from scriptflow.remote import RemoteStore


class OperationState(str, Enum):
    CREATED = "created"
    COMPUTED = "computed"
    VALIDATING = "validating"
    APPLIED = "applied"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


_TRANSITIONS: dict[OperationState, set[OperationState]] = {
    OperationState.CREATED: {OperationState.COMPUTED, OperationState.FAILED},
    OperationState.COMPUTED: {
        OperationState.COMPUTED,
        OperationState.VALIDATING,
        OperationState.APPLIED,
        OperationState.FAILED,
    },
    OperationState.VALIDATING: {OperationState.APPLIED, OperationState.FAILED},
    OperationState.FAILED: {OperationState.ROLLED_BACK},
    OperationState.APPLIED: set(),
    OperationState.ROLLED_BACK: set(),
}


class RollbackStatus(str, Enum):
    NOT_NEEDED = "not_needed"
    RESTORED = "restored"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class RollbackReport:
    status: RollbackStatus
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status in {RollbackStatus.NOT_NEEDED, RollbackStatus.RESTORED}


Validator = Callable[[ChangeSet], Awaitable[ChangeSet]]
T = TypeVar("T")


class FileOperation(ABC):
    operation_type = "operation"

    def __init__(self, store: RemoteStore, resource_id: str) -> None:
        self.store = store
        self.resource_id = resource_id
        self.state = OperationState.CREATED
        self._mutated = False

    def _transition(self, target: OperationState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise OperationStateError(
                f"{self.describe()}: cannot move from {self.state.value} to {target.value}",
                details={"state": self.state.value, "target": target.value},
            )
        self.state = target

    def _fail(self) -> None:
        if OperationState.FAILED in _TRANSITIONS[self.state]:
            self.state = OperationState.FAILED

    def _computed(self, value: T | None) -> T:
        if value is None:
            raise OperationStateError(f"{self.describe()}: apply called before compute_changes")
        return value

    async def compute_changes(self) -> ChangeSet:
        if self.state not in {OperationState.CREATED, OperationState.COMPUTED}:
            raise OperationStateError(f"{self.describe()}: compute not allowed in state {self.state.value}")
        try:
            changes = await self._compute()
        except Exception:
            self._fail()
            raise
        self._transition(OperationState.COMPUTED)
        return changes

    def begin_validation(self) -> None:
        self._transition(OperationState.VALIDATING)

    async def apply_changes(self, validated: ChangeSet) -> OperationResult:
        if self.state not in {OperationState.COMPUTED, OperationState.VALIDATING}:
            raise OperationStateError(f"{self.describe()}: apply not allowed in state {self.state.value}")
        try:
            result = await self._apply(validated)
        except Exception:
            self._fail()
            raise
        self._transition(OperationState.APPLIED)
        return result

    async def rollback(self) -> RollbackReport:
        """Undo any remote mutation. Never raises; failures are logged and reported."""
        if self.state in {OperationState.APPLIED, OperationState.ROLLED_BACK}:
            return RollbackReport(RollbackStatus.SKIPPED, f"operation already {self.state.value}")
        self._fail()
        self.state = OperationState.ROLLED_BACK
        if not self._mutated:
            return RollbackReport(RollbackStatus.NOT_NEEDED)
        try:
            await self._restore()
        except Exception as exc:
            logger.error(f"rollback of {self.describe()} failed: {exc}")
            return RollbackReport(RollbackStatus.FAILED, str(exc))
        logger.info(f"rolled back {self.describe()}")
        return RollbackReport(RollbackStatus.RESTORED)

    def lock_resources(self) -> tuple[str, ...]:
        return (self.resource_id,)

    @abstractmethod
    async def _compute(self) -> ChangeSet: ...

    @abstractmethod
    async def _apply(self, validated: ChangeSet) -> OperationResult: ...

    @abstractmethod
    async def _restore(self) -> None: ...

    @abstractmethod
    def affected_paths(self) -> tuple[str, ...]: ...

    @abstractmethod
    def describe(self) -> str: ...


@dataclass(frozen=True, slots=True)
class OperationOutcome:
    """Result of running an operation end to end. The error, once set, is final."""

    state: OperationState
    result: OperationResult | None = None
    error: Exception | None = None
    rollback: RollbackReport | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def conflict(self) -> ConflictDetails | None:
        if isinstance(self.error, ConflictError):
            return self.error.conflict
        return None

    @property
    def lock_timeout(self) -> LockTimeoutError | None:
        if isinstance(self.error, LockTimeoutError):
            return self.error
        return None

    def unwrap(self) -> OperationResult:
        if self.error is not None:
            raise self.error
        if self.result is None:
            raise OperationStateError("operation finished without a result")
        return self.result


async def execute_operation(
    operation: FileOperation,
    *,
    lock_manager: LockManager | None = None,
    validator: Validator | None = None,
    lock_timeout: float | None = None,
) -> OperationOutcome:
    acquired: list[str] = []
    try:
        if lock_manager is not None:
            for resource_id in sorted(set(operation.lock_resources())):
                await lock_manager.acquire(resource_id, operation.describe(), lock_timeout)
                acquired.append(resource_id)

        changes = await operation.compute_changes()
        if validator is not None:
            operation.begin_validation()
            changes = await validator(changes.copy())
        result = await operation.apply_changes(changes)
        return OperationOutcome(state=operation.state, result=result)
    except Exception as exc:
        logger.warning(f"{operation.describe()} failed: {exc}")
        report = await operation.rollback()
        if not report.succeeded:
            logger.error(f"remote may be left modified after {operation.describe()}: {report.message}")
        return OperationOutcome(state=operation.state, error=exc, rollback=report)
    finally:
        if lock_manager is not None:
            for resource_id in reversed(acquired):
                await lock_manager.release(resource_id)
