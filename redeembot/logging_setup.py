"""Logging for the bot and the CLI.

Every record carries a trace id. A chat command gets `g<guild>-<hex>`; a
redemption run gets `<scope>/<code>-<hex>` and its per-player tasks inherit
it, so one grep over log.txt shows a whole run.
"""

import contextvars
import logging
import uuid
from logging.handlers import RotatingFileHandler
from typing import Optional

from .config import Settings, load_settings

NOISY_LOGGERS = ("discord", "playwright", "gspread", "google", "urllib3", "aiohttp.access")
LOG_FORMAT = "%(asctime)s %(levelname)s [%(trace_id)s] %(name)s: %(message)s"

_trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id", default="-")
_configured = False


class TraceIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = _trace_id_var.get()  # type: ignore[attr-defined]
        return True


def new_trace_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:6]}"


def run_trace_id(scope: str, code: str) -> str:
    return new_trace_id(f"{scope}/{code}")


def set_trace_id(trace_id: str) -> contextvars.Token:
    return _trace_id_var.set(trace_id)


def reset_trace_id(token: contextvars.Token) -> None:
    try:
        _trace_id_var.reset(token)
    except ValueError:
        # token was created in another context
        pass


def context_with_trace_id(trace_id: str) -> contextvars.Context:
    """Copy of the current context with trace_id set, for asyncio.create_task(context=...)."""
    ctx = contextvars.copy_context()
    ctx.run(_trace_id_var.set, trace_id)
    return ctx


def _level(name: str, default: int) -> int:
    value = logging.getLevelName(name.upper())
    return value if isinstance(value, int) else default


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Console on the root logger, rotating file on `redeembot` only. Runs once."""
    global _configured
    if _configured:
        return
    settings = settings or load_settings()

    fmt = logging.Formatter(LOG_FORMAT)
    trace = TraceIdFilter()

    console = logging.StreamHandler()
    console.setLevel(_level(settings.log_level, logging.INFO))
    console.setFormatter(fmt)
    console.addFilter(trace)
    root = logging.getLogger()
    root.setLevel(_level(settings.log_level, logging.INFO))
    root.addHandler(console)

    app = logging.getLogger("redeembot")
    app.setLevel(logging.DEBUG)
    if settings.log_file:
        try:
            fh = RotatingFileHandler(
                settings.log_file,
                maxBytes=settings.log_max_bytes,
                backupCount=settings.log_backups,
                encoding="utf-8",
            )
        except OSError:
            app.warning("File logging disabled: cannot open %s", settings.log_file)
        else:
            fh.setLevel(_level(settings.log_file_level, logging.DEBUG))
            fh.setFormatter(fmt)
            fh.addFilter(trace)
            app.addHandler(fh)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    _configured = True
