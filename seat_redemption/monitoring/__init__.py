"""Monitoring and observability package."""
from .logging import order_context, setup_logging
from .metrics import metrics

__all__ = ["metrics", "order_context", "setup_logging"]
