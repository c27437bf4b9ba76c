"""
Offline-first synchronization engine for point-of-sale terminals.

Sales, stock adjustments and customer edits are written to a local SQLite
store and a durable mutation queue, then replayed against the remote
system-of-record whenever the terminal is online.
"""

__version__ = "0.3.0"
