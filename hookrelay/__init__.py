"""hookrelay: signed webhook ingestion with durable storage and context injection."""

__version__ = "0.1.0"
