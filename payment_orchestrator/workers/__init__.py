"""Background workers."""
from .reconciliation_worker import run_reconciliation_once, start_reconciliation_worker

__all__ = ["run_reconciliation_once", "start_reconciliation_worker"]
