"""Background workers."""
from .order_sweeper import run_sweep, start_order_sweeper

__all__ = ["run_sweep", "start_order_sweeper"]
