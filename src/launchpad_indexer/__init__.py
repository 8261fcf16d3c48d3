"""Chain-event indexer and reconciliation service for a bonding-curve launch platform."""

__version__ = "0.1.0"
