"""
Structured events for the subtitle engine.

Everything the engine reports (discovery results, reconcile passes, exports)
goes out as a one-line JSON event through evt(). Multi-step work such as a
bulk pre-fetch or an export is wrapped in a StageTimer, which brackets it
with stage_start / stage_result and tags every log line emitted inside it
with the stage name.
"""

import logging
import time
from typing import Any, Dict, Optional

from logging_setup import enter_stage, exit_stage

# Events go through the root logger so the JSON handler sees them
logger = logging.getLogger()

NETWORK_TERMS = ("connection", "timeout", "timed out", "network", "dns", "ssl")


def evt(event: str, level: int = logging.INFO, **fields) -> None:
    """
    Emit a structured event.

    Example:
        evt("tracks_discovered", item_id="abc123", count=2)
    """
    logger.log(level, "", extra={"event": event, **fields})


class StageTimer:
    """
    Times one stage of a flow.

    Usable around awaits; the stage name stays in the flow context until the
    block exits. Extra result fields can be attached with note() and are
    reported on stage_result.

    Example:
        with StageTimer("bulk_prefetch", items=3) as stage:
            await prefetch()
            stage.note(failed=1)
    """

    def __init__(self, stage: str, **context_fields):
        self.stage = stage
        self.context_fields = context_fields
        self.result_fields: Dict[str, Any] = {}
        self.started: Optional[float] = None
        self.dur_ms: Optional[int] = None
        self._token = None

    def note(self, **fields) -> None:
        self.result_fields.update(fields)

    def __enter__(self):
        self.started = time.monotonic()
        self._token = enter_stage(self.stage)
        evt("stage_start", stage=self.stage, **self.context_fields)
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.dur_ms = int((time.monotonic() - self.started) * 1000) if self.started is not None else 0

        fields = {"stage": self.stage, "dur_ms": self.dur_ms, **self.context_fields, **self.result_fields}
        if exc_type is None:
            evt("stage_result", outcome="success", **fields)
        else:
            evt("stage_result", logging.WARNING, outcome="error",
                detail=f"{exc_type.__name__}: {exc_value}",
                error_type=classify_error_type(exc_value), **fields)

        if self._token is not None:
            exit_stage(self._token)
            self._token = None
        return False


def time_stage(stage: str, **context_fields) -> StageTimer:
    return StageTimer(stage, **context_fields)


def classify_error_type(exception: BaseException) -> str:
    """
    Map an exception to an error_type value for log queries.

    SubtitleErrors carry their own code; anything else is classified by what
    its message mentions.
    """
    code = getattr(exception, "code", None)
    if isinstance(code, str) and code:
        return code.lower()

    message = str(exception).lower()
    if any(term in message for term in NETWORK_TERMS):
        return "network_error"
    if "clipboard" in message or "permission" in message:
        return "clipboard_error"
    if "xml" in message or "parse" in message:
        return "conversion_error"

    return f"unknown_error_{type(exception).__name__.lower()}"
