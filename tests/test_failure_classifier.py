from __future__ import annotations

from datetime import UTC, datetime

import allure

from jobgate.queue.errors import (
    BudgetExceeded,
    HandlerTerminalFailure,
    HandlerTransientFailure,
    LeaseLost,
)
from jobgate.queue.failure_classifier import (
    OUTCOME_CLASSIFIER_VERSION,
    OutcomeKind,
    classify_exception,
    classify_result,
    classify_timeout,
    classify_unknown_handler,
)
from jobgate.queue.handlers import HandlerResult
from jobgate.queue.models import FailureClass

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert OUTCOME_CLASSIFIER_VERSION == 1


def test_success_result_completes() -> None:
    classified = classify_result(HandlerResult.succeeded())

    assert classified.kind == OutcomeKind.COMPLETE
    assert classified.failure_class is None
    assert classified.matched_rule == "result_succeeded"


def test_failed_result_is_transient_unless_marked_terminal() -> None:
    transient = classify_result(HandlerResult.failed("timeout talking to feed"))
    terminal = classify_result(HandlerResult.failed("feed is gone", terminal=True))

    assert transient.kind == OutcomeKind.FAIL
    assert transient.failure_class == FailureClass.HANDLER_TRANSIENT
    assert transient.terminal is False
    assert terminal.failure_class == FailureClass.HANDLER_TERMINAL
    assert terminal.terminal is True
    assert terminal.reason == "feed is gone"


def test_deferred_result_carries_run_at() -> None:
    run_at = datetime(2026, 4, 1, tzinfo=UTC)

    classified = classify_result(HandlerResult.deferred(run_at, "wait for quota"))

    assert classified.kind == OutcomeKind.DEFER
    assert classified.defer_until == run_at
    assert classified.reason == "wait for quota"


def test_exceptions_map_to_failure_classes() -> None:
    assert classify_exception(HandlerTransientFailure("503")).failure_class == (
        FailureClass.HANDLER_TRANSIENT
    )
    terminal = classify_exception(HandlerTerminalFailure("bad payload"))
    assert terminal.terminal is True
    assert terminal.reason == "HandlerTerminalFailure: bad payload"
    assert classify_exception(LeaseLost("job-1", "w")).failure_class == FailureClass.LEASE_LOST
    crashed = classify_exception(ZeroDivisionError())
    assert crashed.failure_class == FailureClass.HANDLER_CRASHED
    assert crashed.reason == "ZeroDivisionError"
    assert crashed.matched_rule == "unexpected_exception"


def test_budget_exceeded_defers_instead_of_failing() -> None:
    resume_at = datetime(2026, 5, 1, tzinfo=UTC)

    classified = classify_exception(BudgetExceeded("anthropic", "HARD_STOP", resume_at))

    assert classified.kind == OutcomeKind.DEFER
    assert classified.failure_class == FailureClass.BUDGET_DEFERRED
    assert classified.defer_until == resume_at


def test_long_reasons_are_truncated() -> None:
    classified = classify_result(HandlerResult.failed("x" * 5000))

    assert classified.reason is not None
    assert len(classified.reason) == 2000


def test_timeout_and_unknown_handler() -> None:
    timeout = classify_timeout(180)
    unknown = classify_unknown_handler("legacy_job")

    assert timeout.failure_class == FailureClass.TIMEOUT
    assert timeout.reason == "Handler exceeded its 180s deadline"
    assert timeout.terminal is False
    assert unknown.failure_class == FailureClass.UNKNOWN_HANDLER
    assert unknown.terminal is True
    assert unknown.to_event_details() == {
        "classifier_version": 1,
        "matched_rule": "unknown_handler",
        "failure_class": "unknown_handler",
        "terminal": True,
    }
