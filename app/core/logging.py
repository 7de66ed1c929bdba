"""Logging setup.

Every record passes through ``PIISafeFilter`` on its way to the console, so
contact points never reach the operator log even when a caller interpolates
them by mistake.
"""
import logging
import logging.config
import re

# Email first so the local part of an address is never half-matched as a phone.
PII_PATTERNS = [
    re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),
    re.compile(r"(?<![\w.])\+?\d[\d\s().-]{5,}\d(?![\w.])"),
    re.compile(r"(?i)((?:email|phone(?:_number)?|phoneNumber)\s*[=:]\s*)([^,\s]+)"),
]


class PIISafeFilter(logging.Filter):
    """Redact contact points from log records before they are emitted.

    Only ``record.msg`` and string ``record.args`` are rewritten. Tracebacks
    are left alone; the engine is created with ``hide_parameters`` so bound
    values never appear in SQLAlchemy error text.
    """

    def _sanitize(self, value: object) -> object:
        if not isinstance(value, str):
            return value

        redacted = value
        for pattern in PII_PATTERNS:
            if pattern.groups:
                redacted = pattern.sub(r"\1[REDACTED]", redacted)
            else:
                redacted = pattern.sub("[REDACTED]", redacted)
        return redacted

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self._sanitize(record.msg)

        if isinstance(record.args, tuple):
            record.args = tuple(self._sanitize(item) for item in record.args)
        elif isinstance(record.args, dict):
            record.args = {key: self._sanitize(value) for key, value in record.args.items()}

        return True


def setup_logging() -> None:
    from app.core.settings import get_settings

    settings = get_settings()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "pii_safe": {
                    "()": "app.core.logging.PIISafeFilter",
                }
            },
            "formatters": {
                "default": {
                    "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "filters": ["pii_safe"],
                }
            },
            "loggers": {
                "": {
                    "handlers": ["console"],
                    "level": settings.log_level.upper(),
                },
                "uvicorn.access": {
                    "handlers": ["console"],
                    "level": "WARNING",
                    "propagate": False,
                },
                "sqlalchemy.engine": {
                    "level": "WARNING",
                },
            },
        }
    )
