"""Service layer wiring the sync engine together."""

from .sync_service import ServiceState, ServiceStatus, SyncService

__all__ = ['ServiceState', 'ServiceStatus', 'SyncService']
