"""
Core logging infrastructure for the subtitle extraction engine.

Provides minimal JSON logging with flow-scoped context management,
rate limiting, and third-party library noise suppression.
"""

import contextvars
import json
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Optional, Set
from collections import defaultdict, deque


# Context for the active flow; contextvars keeps it per asyncio task
_flow_ctx: contextvars.ContextVar = contextvars.ContextVar('flow_ctx', default=None)

CONTEXT_FIELDS = ('item_id', 'mode', 'epoch', 'stage')


def set_flow_ctx(item_id: str = None, mode: str = None, epoch: int = None):
    """
    Set context for flow correlation.

    Args:
        item_id: Item (video) identifier being processed
        mode: Name of the owning mode (single, bulk)
        epoch: Generation counter of the owning mode instance
    """
    context = dict(_flow_ctx.get() or {})

    if item_id is not None:
        context['item_id'] = item_id
    if mode is not None:
        context['mode'] = mode
    if epoch is not None:
        context['epoch'] = epoch

    _flow_ctx.set(context)


def clear_flow_ctx():
    """Clear flow context."""
    _flow_ctx.set({})


def get_flow_ctx() -> Dict[str, Any]:
    """Get current flow context."""
    return dict(_flow_ctx.get() or {})


def enter_stage(stage: str) -> contextvars.Token:
    """Mark `stage` as running in the current flow; undo with exit_stage."""
    context = dict(_flow_ctx.get() or {})
    context['stage'] = stage
    return _flow_ctx.set(context)


def exit_stage(token: contextvars.Token):
    _flow_ctx.reset(token)


class JsonFormatter(logging.Formatter):
    """
    JSON formatter with standardized field order and context injection.

    Produces single-line JSON with stable schema:
    ts, lvl, item_id, mode, epoch, stage, event, outcome, dur_ms, detail
    """

    STANDARD_FIELDS = {
        'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
        'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
        'thread', 'threadName', 'processName', 'process', 'getMessage', 'exc_info',
        'exc_text', 'stack_info', 'taskName', 'message', 'asctime', 'ts', 'lvl', 'item_id', 'mode', 'epoch',
        'stage', 'event', 'outcome', 'dur_ms', 'detail', 'error_type', 'format',
    }

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as single-line JSON."""
        try:
            dt = datetime.fromtimestamp(record.created, tz=timezone.utc)
            timestamp = dt.strftime('%Y-%m-%dT%H:%M:%S') + f'.{int(dt.microsecond / 1000):03d}Z'

            log_data = {
                'ts': timestamp,
                'lvl': record.levelname
            }

            context = get_flow_ctx()
            for field in CONTEXT_FIELDS:
                value = getattr(record, field, None)
                if value is None:
                    value = context.get(field)
                if value is not None:
                    log_data[field] = value

            for field in ['event', 'outcome', 'dur_ms', 'detail']:
                if hasattr(record, field) and getattr(record, field) is not None:
                    log_data[field] = getattr(record, field)

            for field in ['error_type', 'format']:
                if hasattr(record, field) and getattr(record, field) is not None:
                    log_data[field] = getattr(record, field)

            # Remaining extra=... fields
            for attr_name, attr_value in vars(record).items():
                if (not attr_name.startswith('_') and
                        attr_name not in self.STANDARD_FIELDS and
                        attr_value is not None and
                        not callable(attr_value)):
                    log_data[attr_name] = attr_value

            if 'detail' not in log_data and record.getMessage():
                log_data['detail'] = record.getMessage()

            if record.exc_info and record.exc_info[1] is not None:
                log_data['exc'] = f"{record.exc_info[0].__name__}: {record.exc_info[1]}"

            return json.dumps(log_data, separators=(',', ':'), ensure_ascii=False, default=str)

        except Exception:
            fallback = {
                'ts': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
                'lvl': record.levelname,
                'detail': str(record.msg),
            }
            return json.dumps(fallback, ensure_ascii=False)


class RateLimitFilter(logging.Filter):
    """
    Caps repetitive INFO/DEBUG lines such as reconcile passes on a busy page.

    At most `per_key` records per (level, event, message) key pass within a
    sliding `window_sec` window; the first record over the cap is let through
    with a "[suppressed]" marker, the rest are dropped until the window frees
    up. WARNING and above always pass.
    """

    def __init__(self, per_key: int = 5, window_sec: int = 60):
        super().__init__()
        self.per_key = per_key
        self.window_sec = window_sec
        self.counts: Dict[str, Deque[float]] = defaultdict(deque)
        self.suppressed: Set[str] = set()
        self._lock = threading.Lock()

    @staticmethod
    def _key(record: logging.LogRecord) -> str:
        event = getattr(record, 'event', None) or ''
        return f"{record.levelname}:{event}:{record.getMessage()[:100]}"

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True

        key = self._key(record)
        now = time.monotonic()

        with self._lock:
            window = self.counts[key]
            while window and window[0] <= now - self.window_sec:
                window.popleft()

            if len(window) < self.per_key:
                window.append(now)
                self.suppressed.discard(key)
                return True

            if key in self.suppressed:
                return False

            self.suppressed.add(key)
            record.msg = f"{record.getMessage()} [suppressed]"
            record.args = ()
            return True


def configure_logging(log_level: str = "INFO", use_json: bool = True) -> logging.Logger:
    """
    Configure application logging with JSON formatting and noise suppression.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        use_json: Whether to use JSON formatting (True) or basic formatting (False)

    Returns:
        Configured root logger
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    handler = logging.StreamHandler()

    if use_json:
        formatter = JsonFormatter()
        handler.addFilter(RateLimitFilter())
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    _suppress_library_noise()

    return root_logger


def _suppress_library_noise():
    """Suppress verbose logging from third-party libraries."""
    library_levels = {
        'asyncio': logging.WARNING,
        'httpx': logging.WARNING,
        'httpcore': logging.WARNING,
    }

    for library, level in library_levels.items():
        logging.getLogger(library).setLevel(level)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name (defaults to calling module)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
