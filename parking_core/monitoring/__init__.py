"""Monitoring and observability package."""
from .logging import audit_log, get_logger, setup_logging
from .metrics import metrics

__all__ = ["audit_log", "get_logger", "metrics", "setup_logging"]
