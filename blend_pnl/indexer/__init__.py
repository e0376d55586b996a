"""Indexer access: JSON-RPC client, row decoding and the event repository."""
from .client import IndexerClient
from .repository import IndexerRepository

__all__ = ["IndexerClient", "IndexerRepository"]
