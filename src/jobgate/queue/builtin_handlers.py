"""Small diagnostic handlers usable from the CLI worker."""

from __future__ import annotations

import json
import logging

from jobgate.queue.errors import HandlerTerminalFailure
from jobgate.queue.handlers import ExecutionContext, HandlerRegistry, HandlerResult

logger = logging.getLogger(__name__)

ECHO = "echo"
FAIL = "fail"
SLEEP = "sleep"


def echo_handler(payload: bytes, context: ExecutionContext) -> HandlerResult:
    logger.info(
        "echo job %s attempt %d: %s",
        context.job_id,
        context.attempt,
        payload.decode("utf-8", errors="replace"),
    )
    return HandlerResult.succeeded()


def fail_handler(payload: bytes, context: ExecutionContext) -> HandlerResult:
    """Fails every attempt; `{"terminal": true}` dead-letters immediately."""

    options = _options(payload)
    if options.get("terminal"):
        raise HandlerTerminalFailure(str(options.get("reason", "terminal failure requested")))
    return HandlerResult.failed(str(options.get("reason", f"attempt {context.attempt} failed")))


def sleep_handler(payload: bytes, context: ExecutionContext) -> HandlerResult:
    """Waits `{"seconds": n}` or until cancelled, renewing the lease as it goes."""

    seconds = float(_options(payload).get("seconds", 1.0))
    remaining = seconds
    step = max(0.01, min(1.0, context.lease_seconds / 3))
    while remaining > 0:
        if context.cancel_event.wait(min(step, remaining)):
            return HandlerResult.failed(f"cancelled: {context.cancel_reason}")
        remaining -= step
        if not context.heartbeat():
            return HandlerResult.failed("lease lost")
    return HandlerResult.succeeded()


def register_builtin_handlers(registry: HandlerRegistry) -> None:
    registry.register(ECHO, echo_handler)
    registry.register(FAIL, fail_handler)
    registry.register(SLEEP, sleep_handler)


def _options(payload: bytes) -> dict[str, object]:
    if not payload.strip():
        return {}
    try:
        decoded = json.loads(payload)
    except json.JSONDecodeError as error:
        raise HandlerTerminalFailure(f"payload is not JSON: {error}") from error
    if not isinstance(decoded, dict):
        raise HandlerTerminalFailure("payload must be a JSON object")
    return decoded
