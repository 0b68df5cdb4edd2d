"""Logging configuration for the application"""
import logging

from casefund.core.config import settings

# Loggers that form the money audit trail
AUDIT_LOGGERS = ("payout", "settlement", "webhook")


def _level(name: str) -> int:
    return getattr(logging, name.upper(), logging.INFO)


def setup_logging():
    """Configure root logging and the audit loggers.

    Audit loggers keep their own level so payout and settlement records are
    written even when LOG_LEVEL is raised to quiet everything else.
    """
    logging.basicConfig(
        level=_level(settings.LOG_LEVEL),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )

    for name in AUDIT_LOGGERS:
        logging.getLogger(name).setLevel(_level(settings.AUDIT_LOG_LEVEL))

    # Silence noisy third-party libraries
    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
