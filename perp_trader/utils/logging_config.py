import logging
import sys

from perp_trader.config import settings

_configured = False


def configure_logging(level: str = None):
    """Configure logging for the application."""
    global _configured
    root = logging.getLogger()
    if not _configured:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
        handler.setFormatter(formatter)
        root.addHandler(handler)
        _configured = True
    root.setLevel((level or settings.LOG_LEVEL).upper())
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

__all__ = ['configure_logging']
