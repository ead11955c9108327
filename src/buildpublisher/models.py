from __future__ import annotations

import time
import traceback
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Union


class StatusState(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    FAILURE_PENDING = "FAILURE_PENDING"
    INTERRUPTED = "INTERRUPTED"


@dataclass(slots=True, frozen=True)
class StatusRecord:
    state: StatusState
    message: str
    target_name: str
    error: str | None = None

    def with_state(self, state: StatusState) -> StatusRecord:
        return replace(self, state=state)


def pending(target_name: str) -> StatusRecord:
    return StatusRecord(StatusState.PENDING, "Waiting in queue", target_name)


def in_progress(target_name: str) -> StatusRecord:
    return StatusRecord(StatusState.IN_PROGRESS, "Build is being transmitted", target_name)


def succeeded(target_name: str) -> StatusRecord:
    return StatusRecord(
        StatusState.SUCCESS,
        "Build transmission was successfully completed",
        target_name,
    )


def failure_pending(target_name: str, exc: BaseException) -> StatusRecord:
    return StatusRecord(
        StatusState.FAILURE_PENDING,
        "Error during build publishing",
        target_name,
        error=format_exception(exc),
    )


def interrupted(target_name: str, message: str) -> StatusRecord:
    return StatusRecord(StatusState.INTERRUPTED, message, target_name)


def format_exception(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).rstrip()


# Worker state snapshots. Each value is immutable; the worker publishes a new
# one by rebinding a single attribute so readers never take a lock.


@dataclass(slots=True, frozen=True)
class Idle:
    name: str = "idle"


@dataclass(slots=True, frozen=True)
class Publishing:
    build: Any
    name: str = "publishing"


@dataclass(slots=True, frozen=True)
class ErrorRecoveryWait:
    deadline: float
    build: Any
    cause: BaseException
    failed_request: Any = None
    name: str = "error_recovery_wait"

    def remaining_seconds(self, now: float | None = None) -> float:
        current = time.time() if now is None else now
        return max(0.0, self.deadline - current)

    def stack_trace(self) -> str:
        return format_exception(self.cause)


@dataclass(slots=True, frozen=True)
class Dead:
    cause: BaseException
    name: str = "dead"

    def stack_trace(self) -> str:
        return format_exception(self.cause)


WorkerState = Union[Idle, Publishing, ErrorRecoveryWait, Dead]

IDLE = Idle()
