"""Logging configuration for the Escao backend.

All loggers live under the ``escao`` hierarchy so a single call to
``setup_logging`` configures every module.
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configured = False


def setup_logging(level: str = "INFO") -> None:
    """Configure the root ``escao`` logger once per process."""
    global _configured
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger("escao")
    root.addHandler(handler)
    root.setLevel(level.upper())
    root.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Get a logger, namespaced under ``escao``."""
    if not name.startswith("escao"):
        name = f"escao.{name}"
    return logging.getLogger(name)


_auth_logger = get_logger("escao.auth.events")
_transition_logger = get_logger("escao.transitions")
_webhook_logger = get_logger("escao.webhooks.events")


def log_auth_event(event: str, subject: str, success: bool, reason: str | None = None) -> None:
    """Log an authentication event (register, login, refresh)."""
    outcome = "ok" if success else "failed"
    message = f"auth {event} | subject={subject} | {outcome}"
    if reason:
        message += f" | reason={reason}"
    if success:
        _auth_logger.info(message)
    else:
        _auth_logger.warning(message)


def log_transition(
    entity: str,
    entity_id: str,
    from_status: str | None,
    to_status: str,
    actor_id: str,
) -> None:
    """Log a status change of an escrow, dispute or payout."""
    _transition_logger.info(
        f"{entity} {entity_id} | {from_status or '-'} -> {to_status} | actor={actor_id}"
    )


def log_webhook_event(source: str, event_type: str, reference: str | None, outcome: str) -> None:
    """Log the outcome of a gateway callback."""
    _webhook_logger.info(f"{source} {event_type} | ref={reference} | {outcome}")
