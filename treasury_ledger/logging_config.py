"""
Structured Logging Configuration Module

Provides JSON-formatted structured logging for all ledger operations. Ledger
log lines carry the ledger module, the entity they touch and, for postings,
the amount and currency, so a log stream can be filtered the same way the
audit trail is queried.
"""

import logging
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from .currency import Currency

# Record attributes copied into the JSON entry when present
LEDGER_FIELDS = ("ledger_module", "entity_type", "resource", "user_id", "action", "amount", "currency")

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in LEDGER_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class LedgerTextFormatter(logging.Formatter):
    """Plain-line formatter that appends the ledger module and entity"""

    def __init__(self):
        super().__init__(TEXT_FORMAT)

    def format(self, record):
        line = super().format(record)
        module = getattr(record, 'ledger_module', None)
        if module:
            entity = getattr(record, 'entity_type', None) or "-"
            line += f" ({module}/{entity}:{getattr(record, 'resource', None) or '-'})"
        return line


def setup_logging(level: str = "INFO", logger_name: str = "treasury", fmt: str = "json") -> logging.Logger:
    """
    Setup logging for the ledger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the root ledger logger
        fmt: "json" for structured output, "text" for plain lines

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(LedgerTextFormatter() if fmt == "text" else JSONFormatter())

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "treasury") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, module: Optional[str] = None,
               entity_type: Optional[str] = None, amount: Optional[Decimal] = None,
               currency: Optional[Currency] = None):
    """
    Log a ledger action with structured data.

    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        user_id: ID of the user performing the action
        action: Service operation being performed
        resource: ID of the entity acted upon
        module: Ledger module ("funds", "petty_cash", "fixed_deposit")
        entity_type: Kind of entity, as recorded in the audit trail
        amount: Amount posted, if any
        currency: Currency of the amount
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(
        logger.name, levelno,
        __name__, 0, message, (), None
    )

    fields = {
        'user_id': user_id,
        'action': action,
        'resource': resource,
        'ledger_module': module,
        'entity_type': entity_type,
        'amount': amount,
        'currency': currency.code if isinstance(currency, Currency) else currency,
    }
    for name, value in fields.items():
        if value is not None:
            setattr(record, name, value)

    logger.handle(record)
