# app/storage/__init__.py
from .base import StorageBackend, SubscriberTransaction, CreditTransaction, normalize_email
from .memory import MemoryBackend
from .postgres import PostgresBackend

__all__ = [
    "StorageBackend",
    "SubscriberTransaction",
    "CreditTransaction",
    "normalize_email",
    "MemoryBackend",
    "PostgresBackend",
]
