"""
Repartilo Configuration
=======================

PURPOSE:
    Pydantic-Settings based configuration for the quota gate, workflow
    persistence, subscription reconciliation and the reference usage ledger.
    All settings can be overridden via environment variables (REPARTILO_ prefix).

RECONCILIATION CONTRACT:
    reconcile_attempts / reconcile_interval_ms are observed by existing
    clients (1 immediate refresh + 5 scheduled refreshes every 2000ms).
    Change them only together with every consumer of the checkout flow.
"""

import logging
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

_DEFAULT_API_URL = "http://localhost:8000"


class Settings(BaseSettings):
    """Runtime settings for the optimize workflow core."""

    app_name: str = "repartilo"
    debug: bool = False

    # Ledger / routing API (client side)
    api_url: str = _DEFAULT_API_URL
    api_timeout_s: float = 10.0
    api_retries: int = 2

    # Local persistence
    data_directory: str = "./data"
    database_url: Optional[str] = None  # defaults to sqlite under data_directory
    workflow_state_file: str = "optimization_state.json"
    workflow_state_key: str = "repartilo-optimization-storage"

    # Post-checkout reconciliation
    reconcile_attempts: int = 5
    reconcile_interval_ms: int = 2000

    # Saved optimization history
    max_saved_optimizations: int = 100
    history_page_size: int = 20

    # Billing
    checkout_base_url: str = "https://billing.repartilo.com/checkout"
    billing_webhook_secret: Optional[str] = None

    # Logging
    log_dir: str = "logs"
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "REPARTILO_"

    def get_database_url(self) -> str:
        """Return the configured database URL, or a SQLite file in data_directory."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{Path(self.data_directory) / 'repartilo.db'}"

    def get_workflow_state_path(self) -> Path:
        return Path(self.data_directory) / self.workflow_state_file


settings = Settings()

if settings.reconcile_attempts != 5 or settings.reconcile_interval_ms != 2000:
    logger.warning(
        "Reconciliation policy overridden (attempts=%d interval=%dms) — "
        "clients expecting 5 x 2000ms polling will observe different timing",
        settings.reconcile_attempts,
        settings.reconcile_interval_ms,
    )
