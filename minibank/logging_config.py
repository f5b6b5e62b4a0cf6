"""
Structured Logging Configuration Module

Provides JSON-formatted structured logging for ledger operations. Every
entry names the account holder, the operation and the account id; money
movements add the amount and the resulting balance, rejections add the
error kind.
"""

import logging
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Union


TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Record attributes copied into the JSON entry, in output order
LEDGER_FIELDS = ("username", "action", "account_id", "amount", "balance",
                 "counterparty", "error")


class JSONFormatter(logging.Formatter):
    """JSON formatter for ledger log records"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in LEDGER_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        # Decimals are written as strings so amounts never lose precision
        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "minibank",
                  fmt: str = "json") -> logging.Logger:
    """
    Setup structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the logger
        fmt: "json" for structured output, "text" for plain lines

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if fmt == "text":
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    else:
        handler.setFormatter(JSONFormatter())

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "minibank") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               username: Optional[str] = None, action: Optional[str] = None,
               account_id: Optional[str] = None,
               amount: Optional[Union[Decimal, str]] = None,
               balance: Optional[Union[Decimal, str]] = None,
               counterparty: Optional[str] = None,
               error: Optional[str] = None):
    """
    Log a ledger action with structured fields.

    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        username: Account holder performing the action
        action: Ledger operation (register, deposit, withdraw, transfer, ...)
        account_id: Identity of the account acted upon
        amount: Amount moved by the operation
        balance: Balance after the operation committed
        counterparty: Other side of a transfer
        error: ``ErrorKind`` value of a rejected operation
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(
        logger.name, levelno, __name__, 0, message, (), None
    )

    fields = {
        "username": username,
        "action": action,
        "account_id": account_id,
        "amount": None if amount is None else str(amount),
        "balance": None if balance is None else str(balance),
        "counterparty": counterparty,
        "error": error,
    }
    for name, value in fields.items():
        if value is not None:
            setattr(record, name, value)

    logger.handle(record)
