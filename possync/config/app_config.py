"""
Application configuration for the sync engine.
"""
import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional


@dataclass
class StoreConfig:
    """Local store configuration."""
    path: str = "possync.db"


@dataclass
class CloudSyncConfig:
    """Remote authority and drain loop configuration."""
    endpoint: str = "http://localhost:8080"
    api_key: Optional[str] = None
    enabled: bool = True
    enable_background_sync: bool = True
    sync_interval: float = 30.0  # seconds
    max_retries: int = 3
    retention_hours: float = 24.0
    request_timeout: float = 10.0  # seconds
    preserve_local_deltas: bool = True


@dataclass
class TaxConfig:
    """Flat VAT plus optional per-category excise rates."""
    vat_rate: float = 0.10
    excise_rates: Dict[str, float] = field(default_factory=dict)


@dataclass
class LoyaltyConfig:
    """1 point per 1000 currency units, on orders of at least 10,000."""
    points_per_unit: float = 0.001
    minimum_order: float = 10000.0


@dataclass
class AppConfig:
    """Main application configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    cloud_sync: CloudSyncConfig = field(default_factory=CloudSyncConfig)
    tax: TaxConfig = field(default_factory=TaxConfig)
    loyalty: LoyaltyConfig = field(default_factory=LoyaltyConfig)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'AppConfig':
        """
        Create configuration from POSSYNC_* environment variables.

        Unset variables keep their defaults.

        Args:
            environ: Mapping to read instead of os.environ

        Returns:
            A populated AppConfig
        """
        env = os.environ if environ is None else environ
        config = cls()

        if "POSSYNC_DB_PATH" in env:
            config.store.path = env["POSSYNC_DB_PATH"]

        sync = config.cloud_sync
        sync.endpoint = env.get("POSSYNC_ENDPOINT", sync.endpoint)
        sync.api_key = env.get("POSSYNC_API_KEY", sync.api_key)
        if "POSSYNC_SYNC_ENABLED" in env:
            sync.enabled = _parse_bool(env["POSSYNC_SYNC_ENABLED"])
        if "POSSYNC_SYNC_INTERVAL" in env:
            sync.sync_interval = float(env["POSSYNC_SYNC_INTERVAL"])
        if "POSSYNC_MAX_RETRIES" in env:
            sync.max_retries = int(env["POSSYNC_MAX_RETRIES"])
        if "POSSYNC_RETENTION_HOURS" in env:
            sync.retention_hours = float(env["POSSYNC_RETENTION_HOURS"])
        if "POSSYNC_REQUEST_TIMEOUT" in env:
            sync.request_timeout = float(env["POSSYNC_REQUEST_TIMEOUT"])

        if "POSSYNC_VAT_RATE" in env:
            config.tax.vat_rate = float(env["POSSYNC_VAT_RATE"])

        return config


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")
