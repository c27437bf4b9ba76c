"""
Local durable storage.

- LocalStore: versioned, transactional SQLite store
- StoreTransaction: multi-table operations inside one transaction
"""

from .local_store import SCHEMA_VERSION, TABLES, LocalStore, StoreTransaction

__all__ = ['LocalStore', 'StoreTransaction', 'SCHEMA_VERSION', 'TABLES']
