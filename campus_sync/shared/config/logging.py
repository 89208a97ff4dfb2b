"""
Structured logging for the realtime sync layer.

Standard library logging with keyword-argument structured data, JSON output
in production and colored one-line output in development. Every record is
tagged with the current session correlation id, so the logs of one signed-in
session (including its channel listener tasks, which inherit the context)
can be pulled out of a shared log stream.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

from campus_sync.shared.config.settings import settings

# Correlation id of the realtime session running in this context
session_id_var: ContextVar[str] = ContextVar("session_id", default="")


def new_session_id() -> str:
    return uuid.uuid4().hex[:12]


def bind_session_id(session_id: str) -> None:
    """Tag logs from this task, and tasks it creates afterwards, with a session id."""
    session_id_var.set(session_id)


def get_session_id() -> str:
    return session_id_var.get()


class SessionContextFilter(logging.Filter):
    """Copies the session correlation id onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = session_id_var.get() or "-"
        return True


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for log aggregation.

    One object per line with timestamp, level, logger, message, the session
    id when bound, structured data, and the exception if any.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        session_id = getattr(record, "session_id", None)
        if session_id and session_id != "-":
            log_data["session_id"] = session_id

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            log_data["data"] = extra_data

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if settings.debug:
            log_data["source"] = {
                "file": record.filename,
                "line": record.lineno,
                "function": record.funcName,
            }

        return json.dumps(log_data, default=str)


class DevelopmentFormatter(logging.Formatter):
    """Colored single-line formatter for local runs."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    DIM = "\033[2m"
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, self.RESET)
        clock = datetime.now().strftime("%H:%M:%S")

        session_id = getattr(record, "session_id", None)
        session_tag = f"{self.DIM}[{session_id}]{self.RESET} " if session_id and session_id != "-" else ""

        line = (
            f"{color}[{clock}] {record.levelname:8}{self.RESET} "
            f"{session_tag}{record.name}: {record.getMessage()}"
        )

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            line += " (" + " | ".join(f"{key}={value}" for key, value in extra_data.items()) + ")"

        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"

        return line


class StructuredLogger(logging.Logger):
    """
    Logger accepting structured fields as keyword arguments.

        logger.warning("Channel close timed out", channel=name, timeout=5.0)
    """

    def _log_with_data(
        self,
        level: int,
        msg: str,
        args: tuple,
        exc_info: Any = None,
        extra: dict | None = None,
        **fields: Any,
    ) -> None:
        if not self.isEnabledFor(level):
            return
        extra = dict(extra or {})
        extra["extra_data"] = fields or None
        # Skip this helper and the level method so records point at the caller
        super()._log(level, msg, args, exc_info=exc_info, extra=extra, stacklevel=3)

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log_with_data(logging.DEBUG, msg, args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log_with_data(logging.INFO, msg, args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log_with_data(logging.WARNING, msg, args, **kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log_with_data(logging.ERROR, msg, args, **kwargs)

    def critical(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log_with_data(logging.CRITICAL, msg, args, **kwargs)


logging.setLoggerClass(StructuredLogger)


def setup_logging() -> None:
    """
    Install the sync layer's handler on the root logger.

    Call once at process start. Production gets JSON lines, every other
    environment the colored formatter.
    """
    level = logging.DEBUG if settings.debug else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(SessionContextFilter())
    if settings.environment == "production":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(DevelopmentFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str) -> StructuredLogger:
    """
    Get a structured logger.

    Usage:
        from campus_sync.shared.config.logging import get_logger
        logger = get_logger(__name__)

        logger.info("Channel opened", channel="mentorship-offers-iitd.ac.in")
        logger.error("Reconnect loop failed", reason="online", exc_info=True)
    """
    return logging.getLogger(name)  # type: ignore[return-value]


def mask_user_id(user_id: str | None) -> str:
    """
    Shorten a user id for logs, keeping enough to correlate.

    "3f2a9c1e-77b0-4c1d-..." -> "3f2a9c1e..."
    """
    if not user_id:
        return "<no-user>"
    if len(user_id) <= 8:
        return user_id
    return f"{user_id[:8]}..."


# =============================================================================
# Audit trail
# =============================================================================


audit_logger = get_logger("campus_sync.audit")


def audit_session_event(event_type: str, user_id: str | None = None, **extra: Any) -> None:
    """
    Record a session lifecycle event (START, SIGN_OUT, USER_SWITCH, RESCOPE).

    User ids are masked.
    """
    audit_logger.info(
        f"SESSION_AUDIT: {event_type}",
        event_type=event_type,
        user=mask_user_id(user_id),
        **extra,
    )


def audit_request_event(
    event_type: str,
    request_id: str,
    actor_id: str,
    success: bool = True,
    reason: str | None = None,
    **extra: Any,
) -> None:
    """
    Record a collaboration request write and its outcome.

    Refused writes are logged at WARNING so concurrent-use conflicts stand
    out from routine traffic.
    """
    level = logging.INFO if success else logging.WARNING
    audit_logger._log_with_data(
        level,
        f"REQUEST_AUDIT: {event_type}",
        args=(),
        event_type=event_type,
        request_id=request_id,
        actor=mask_user_id(actor_id),
        success=success,
        reason=reason,
        **extra,
    )
