"""CoW Protocol settlement sync - block ingestion into persisted trade records."""

__version__ = "0.1.0"
