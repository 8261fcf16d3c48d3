"""Reconciliation layer - keeps the mirror store in step with the factory."""

from launchpad_indexer.indexer.applier import EventApplier
from launchpad_indexer.indexer.attribution import AgentResolver
from launchpad_indexer.indexer.receipts import ReceiptError, ReceiptRecorder
from launchpad_indexer.indexer.reconciler import Reconciler, ReconcilerState, TickResult

__all__ = [
    "AgentResolver",
    "EventApplier",
    "ReceiptError",
    "ReceiptRecorder",
    "Reconciler",
    "ReconcilerState",
    "TickResult",
]
