"""
Engine configuration read from the environment.
"""

import os
from dataclasses import dataclass


@dataclass
class EngineConfig:
    """Runtime knobs for the payout engine and its HTTP surfaces."""

    max_workers: int = 4
    collection_grace_days: int = 90
    base_currency: str = "USD"
    data_file: str | None = None
    environment: str = "dev"

    @classmethod
    def from_env(cls) -> "EngineConfig":
        max_workers = int(os.environ.get("PAYOUT_MAX_WORKERS", 4))
        if max_workers < 1:
            raise ValueError(f"PAYOUT_MAX_WORKERS must be at least 1, got: {max_workers}")
        grace_days = int(os.environ.get("PAYOUT_COLLECTION_GRACE_DAYS", 90))
        if grace_days < 0:
            raise ValueError(f"PAYOUT_COLLECTION_GRACE_DAYS cannot be negative, got: {grace_days}")
        return cls(
            max_workers=max_workers,
            collection_grace_days=grace_days,
            base_currency=os.environ.get("PAYOUT_BASE_CURRENCY", "USD"),
            data_file=os.environ.get("PAYOUT_DATA_FILE") or None,
            environment=os.environ.get("ENVIRONMENT", "dev"),
        )
