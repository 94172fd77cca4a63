# /cartresq/utils/logging.py

import logging
import re
import sys
from typing import Optional

import structlog

from cartresq.config.settings import Settings, settings as default_settings

SERVICE_NAME = "cartresq-scheduler"
_EMAIL_RE = re.compile(r"([A-Za-z0-9._%+-]{1,2})[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+\.[A-Za-z]{2,})")
# Libraries that log every poll or heartbeat at INFO
_NOISY_LOGGERS = ("apscheduler", "pymongo", "httpx", "httpcore")


def mask_email(email: str | None) -> str:
    """Keeps the first two characters of the local part: jo***@example.com"""
    if not email or "@" not in email:
        return "unknown"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def redact_emails(_logger, _method, event_dict):
    """structlog processor: customer addresses never reach the log sink in full."""
    for key, value in event_dict.items():
        if isinstance(value, str) and "@" in value:
            event_dict[key] = _EMAIL_RE.sub(r"\1***@\2", value)
    return event_dict


def _bind_service(environment: str):
    def processor(_logger, _method, event_dict):
        event_dict.setdefault("service", SERVICE_NAME)
        event_dict.setdefault("environment", environment)
        return event_dict
    return processor


def setup_logging(config: Optional[Settings] = None):
    """
    Routes stdlib logging through structlog. Development gets the console
    renderer; every other environment emits one JSON object per line.
    """
    config = config or default_settings

    pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _bind_service(config.environment),
        structlog.processors.format_exc_info,
        redact_emails,
    ]

    renderer = (
        structlog.dev.ConsoleRenderer()
        if config.environment == "development"
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    stdout = logging.StreamHandler(sys.stdout)
    stdout.setFormatter(structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=pre_chain))

    root = logging.getLogger()
    # Worker restarts inside one process (tests, scripts) must not stack handlers
    root.handlers.clear()
    root.addHandler(stdout)
    root.setLevel(config.log_level.upper())

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
