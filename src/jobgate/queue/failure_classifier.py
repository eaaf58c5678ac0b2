"""Deterministic mapping from handler outcomes to store transitions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from jobgate.queue.errors import (
    BudgetExceeded,
    HandlerTerminalFailure,
    HandlerTransientFailure,
    LeaseLost,
)
from jobgate.queue.handlers import HandlerResult, HandlerStatus
from jobgate.queue.models import FailureClass

OUTCOME_CLASSIFIER_VERSION = 1
_MAX_REASON_CHARS = 2000


class OutcomeKind(str, Enum):
    COMPLETE = "complete"
    FAIL = "fail"
    DEFER = "defer"


@dataclass(slots=True, frozen=True)
class OutcomeClassification:
    """Normalized handler outcome."""

    kind: OutcomeKind
    failure_class: FailureClass | None
    terminal: bool
    reason: str | None
    matched_rule: str
    defer_until: datetime | None = None

    def to_event_details(self) -> dict[str, object]:
        return {
            "classifier_version": OUTCOME_CLASSIFIER_VERSION,
            "matched_rule": self.matched_rule,
            "failure_class": self.failure_class.value if self.failure_class else None,
            "terminal": self.terminal,
        }


def classify_result(result: HandlerResult) -> OutcomeClassification:
    """Classify an explicit handler return value."""

    if result.status == HandlerStatus.SUCCEEDED:
        return OutcomeClassification(
            kind=OutcomeKind.COMPLETE,
            failure_class=None,
            terminal=False,
            reason=None,
            matched_rule="result_succeeded",
        )
    if result.status == HandlerStatus.DEFERRED:
        return OutcomeClassification(
            kind=OutcomeKind.DEFER,
            failure_class=FailureClass.BUDGET_DEFERRED,
            terminal=False,
            reason=result.reason,
            matched_rule="result_deferred",
            defer_until=result.run_at,
        )
    if result.terminal:
        return OutcomeClassification(
            kind=OutcomeKind.FAIL,
            failure_class=FailureClass.HANDLER_TERMINAL,
            terminal=True,
            reason=_truncate(result.reason or "terminal failure"),
            matched_rule="result_failed_terminal",
        )
    return OutcomeClassification(
        kind=OutcomeKind.FAIL,
        failure_class=FailureClass.HANDLER_TRANSIENT,
        terminal=False,
        reason=_truncate(result.reason or "transient failure"),
        matched_rule="result_failed",
    )


def classify_exception(error: BaseException) -> OutcomeClassification:
    """Translate a handler exception at the worker boundary."""

    if isinstance(error, BudgetExceeded):
        return OutcomeClassification(
            kind=OutcomeKind.DEFER,
            failure_class=FailureClass.BUDGET_DEFERRED,
            terminal=False,
            reason=str(error),
            matched_rule="budget_exceeded",
            defer_until=error.defer_until,
        )
    if isinstance(error, HandlerTerminalFailure):
        return OutcomeClassification(
            kind=OutcomeKind.FAIL,
            failure_class=FailureClass.HANDLER_TERMINAL,
            terminal=True,
            reason=_describe(error),
            matched_rule="terminal_failure",
        )
    if isinstance(error, HandlerTransientFailure):
        return OutcomeClassification(
            kind=OutcomeKind.FAIL,
            failure_class=FailureClass.HANDLER_TRANSIENT,
            terminal=False,
            reason=_describe(error),
            matched_rule="transient_failure",
        )
    if isinstance(error, LeaseLost):
        return OutcomeClassification(
            kind=OutcomeKind.FAIL,
            failure_class=FailureClass.LEASE_LOST,
            terminal=False,
            reason=_describe(error),
            matched_rule="lease_lost",
        )
    return OutcomeClassification(
        kind=OutcomeKind.FAIL,
        failure_class=FailureClass.HANDLER_CRASHED,
        terminal=False,
        reason=_describe(error),
        matched_rule="unexpected_exception",
    )


def classify_timeout(timeout_seconds: float) -> OutcomeClassification:
    return OutcomeClassification(
        kind=OutcomeKind.FAIL,
        failure_class=FailureClass.TIMEOUT,
        terminal=False,
        reason=f"Handler exceeded its {timeout_seconds:g}s deadline",
        matched_rule="deadline_exceeded",
    )


def classify_unknown_handler(handler_type: str) -> OutcomeClassification:
    return OutcomeClassification(
        kind=OutcomeKind.FAIL,
        failure_class=FailureClass.UNKNOWN_HANDLER,
        terminal=True,
        reason=f"No handler registered for type {handler_type!r}",
        matched_rule="unknown_handler",
    )


def _describe(error: BaseException) -> str:
    message = str(error).strip()
    text = f"{type(error).__name__}: {message}" if message else type(error).__name__
    return _truncate(text)


def _truncate(text: str) -> str:
    return text[:_MAX_REASON_CHARS]
