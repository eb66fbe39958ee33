"""
Structured Logging Configuration Module

Every registry and ledger operation emits one record through ``log_action``:
INFO when the change commits, WARNING with the error ``kind`` when it is
rejected. Records carry the acting user, the action name
(``deposit``, ``transfer``, ``delete_account``...) and the resource
(``account:<id>``), plus operation fields such as ``transaction_id``,
``transfer_id`` and formatted amounts under ``extra``.

Loggers live under ``bank_ledger``: ``bank_ledger.accounts``,
``bank_ledger.ledger`` and ``bank_ledger.storage`` (contention retries).
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional


class JSONFormatter(logging.Formatter):
    """One JSON object per line; unset ledger fields are omitted"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, 'correlation_id', None),
            "user_id": getattr(record, 'user_id', None),
            "action": getattr(record, 'action', None),
            "resource": getattr(record, 'resource', None),
            "extra": getattr(record, 'extra', None)
        }

        log_entry = {k: v for k, v in log_entry.items() if v is not None}

        # Audit write failures after commit are logged with their traceback
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str = "INFO", log_format: str = "json",
                  logger_name: str = "bank_ledger") -> logging.Logger:
    """
    Attach a single stream handler to the package logger.

    Called by ``build_ledger`` with ``LedgerConfig.log_level`` and
    ``LedgerConfig.log_format``. Calling it again replaces the handler.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: "json" for structured output, "text" for plain lines
        logger_name: Package logger that the module loggers inherit from

    Returns:
        Configured package logger
    """
    logger = logging.getLogger(logger_name)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "bank_ledger") -> logging.Logger:
    """Get a logger under the ``bank_ledger`` hierarchy"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Emit one ledger operation record.

    Args:
        logger: Module logger of the registry or the engine
        level: "info" for committed changes, "warning" for rejections
        message: Human-readable summary, e.g. "TRANSFER posted"
        user_id: ID of the actor performing the operation
        action: Operation name
        resource: Account the operation targets, as ``account:<id>``
        correlation_id: Request id supplied by the calling layer
        extra: Operation fields; rejections carry the error ``kind``
    """
    levelno = getattr(logging, level.upper())
    # Skip building the record when the level is filtered out
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(
        logger.name, levelno, __name__, 0, message, (), None
    )

    if user_id:
        record.user_id = user_id
    if action:
        record.action = action
    if resource:
        record.resource = resource
    if correlation_id:
        record.correlation_id = correlation_id
    if extra:
        record.extra = extra

    logger.handle(record)
