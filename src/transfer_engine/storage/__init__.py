"""Transactional document storage: protocols, stores, repositories, runner."""

from .base import ChangeFeed, Document, IDocumentStore, ITransaction, StoreChange
from .memory_store import InMemoryDocumentStore
from .repositories import Repositories
from .runner import TransactionRunner

__all__ = [
    "ChangeFeed",
    "Document",
    "IDocumentStore",
    "ITransaction",
    "InMemoryDocumentStore",
    "Repositories",
    "StoreChange",
    "TransactionRunner",
]
