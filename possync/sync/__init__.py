"""
Offline synchronization.

This package provides the components that keep a terminal selling offline:
- SyncQueue: durable ledger of mutations awaiting acknowledgment
- ConnectivityMonitor: online/offline signal with transition callbacks
- SyncDrainer: single-flight replay of the queue against the remote
- LocalMutationApplier: one-transaction write path for sales and edits
- MirrorReconciler: merges remote catalog/customer data into the mirrors
- RemoteClient: HTTP client for the remote authority
"""

from .applier import LocalMutationApplier
from .connectivity import ConnectivityMonitor
from .drainer import DrainResult, SyncDrainer
from .reconciler import MirrorReconciler
from .remote_client import RemoteClient
from .sync_queue import SyncQueue

__all__ = [
    'ConnectivityMonitor',
    'DrainResult',
    'LocalMutationApplier',
    'MirrorReconciler',
    'RemoteClient',
    'SyncDrainer',
    'SyncQueue',
]
