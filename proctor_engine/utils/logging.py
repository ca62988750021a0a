"""
Logging utilities for the proctor engine

- Colored console output for local runs
- Optional rotating log files (all levels + errors only)
- [PROCTOR] audit helpers for session events
"""
import logging
import logging.handlers
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("proctor_engine.audit")


# ============================================================================
# ANSI Colors for Terminal
# ============================================================================

class Colors:
    """ANSI color codes for terminal output."""
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"

    BG_RED = "\033[41m"


class ColoredFormatter(logging.Formatter):
    """Colored formatter for terminal output."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.DIM + Colors.WHITE,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BG_RED + Colors.WHITE,
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, Colors.WHITE)
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]

        level_str = f"{color}{record.levelname:8}{Colors.RESET}"
        time_str = f"{Colors.DIM}{timestamp}{Colors.RESET}"
        name_str = f"{Colors.CYAN}{record.name}{Colors.RESET}"

        message = f"{time_str} {level_str} [{name_str}] {record.getMessage()}"
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


# ============================================================================
# Setup
# ============================================================================

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    service_name: str = "proctor-engine",
    level: str = "INFO",
    log_to_file: bool = False,
    log_dir: str = "logs",
    colored: bool = True
) -> logging.Logger:
    """Set up root logging for the service"""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(
        ColoredFormatter() if colored else logging.Formatter(LOG_FORMAT, DATE_FORMAT)
    )
    root_logger.addHandler(console_handler)

    if log_to_file:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)

        today = datetime.now().strftime("%Y-%m-%d")
        file_handler = logging.handlers.RotatingFileHandler(
            directory / f"{service_name}_{today}.log",
            maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            directory / f"{service_name}_errors.log",
            maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
        )
        error_handler.setFormatter(formatter)
        error_handler.setLevel(logging.ERROR)
        root_logger.addHandler(error_handler)

    service_logger = logging.getLogger(service_name)
    service_logger.info(f"=== {service_name.upper()} LOGGING READY (level={level}) ===")
    return service_logger


# ============================================================================
# Proctor audit events
# ============================================================================

def log_proctor_event(
    session_id: Optional[str],
    event_type: str,
    details: Optional[Dict[str, Any]] = None,
    level: str = "info"
):
    """
    Log a proctoring event.

    Args:
        session_id: Exam session ID (None for supervisor-only events)
        event_type: Type of event (connected, violation, transition, ...)
        details: Optional event details
        level: Log level (debug, info, warning, error)
    """
    message = f"[PROCTOR] session={session_id or '-'} event={event_type}"
    if details:
        message += " " + " ".join(f"{k}={v}" for k, v in details.items())

    if level == "debug":
        logger.debug(message)
    elif level == "warning":
        logger.warning(message)
    elif level == "error":
        logger.error(message)
    else:
        logger.info(message)


def log_connection(session_id: Optional[str], user_id: str, role: str, connected: bool):
    """Log a transport connect/disconnect"""
    log_proctor_event(
        session_id=session_id,
        event_type="connected" if connected else "disconnected",
        details={"user_id": user_id, "role": role}
    )


def log_violation_recorded(session_id: str, event_type: str, count: int, max_violations: int):
    """Log an appended violation"""
    log_proctor_event(
        session_id=session_id,
        event_type="violation",
        details={
            "type": event_type,
            "count": count,
            "max": max_violations
        },
        level="warning" if count >= max_violations else "info"
    )


def log_status_transition(session_id: str, previous: str, current: str, reason: Optional[str] = None):
    """Log an applied status transition"""
    details = {"from": previous, "to": current}
    if reason:
        details["reason"] = reason
    log_proctor_event(session_id, "transition", details)


def log_command_rejected(user_id: str, role: str, command: str, target_session_id: Optional[str]):
    """Audit a supervisor-only command issued without the supervisor role"""
    log_proctor_event(
        session_id=target_session_id,
        event_type="command_rejected",
        details={"command": command, "user_id": user_id, "role": role},
        level="warning"
    )
