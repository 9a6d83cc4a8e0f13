"""Runtime settings read from the environment."""

import os
from dataclasses import dataclass
from typing import Optional

from schemaflow.domain.exceptions import ValidationError

_TRUE = ("1", "true", "yes", "on")
_LOCK_BACKENDS = ("memory", "postgres")


@dataclass
class Settings:
    """Connection strings and execution knobs for the engine."""
    metadata_dsn: Optional[str] = None
    target_dsn: Optional[str] = None
    statement_timeout_seconds: float = 30.0
    transactional: bool = True
    lock_backend: str = "memory"
    log_level: str = "INFO"
    dialect: str = "postgresql"

    @classmethod
    def from_env(cls) -> "Settings":
        timeout_raw = os.getenv("SCHEMAFLOW_STATEMENT_TIMEOUT", "30")
        try:
            timeout = float(timeout_raw)
        except ValueError:
            raise ValidationError(f"SCHEMAFLOW_STATEMENT_TIMEOUT must be a number, got {timeout_raw!r}") from None
        if timeout <= 0:
            raise ValidationError("SCHEMAFLOW_STATEMENT_TIMEOUT must be positive")

        lock_backend = os.getenv("SCHEMAFLOW_LOCK_BACKEND", "memory").lower()
        if lock_backend not in _LOCK_BACKENDS:
            raise ValidationError(f"SCHEMAFLOW_LOCK_BACKEND must be one of {_LOCK_BACKENDS}")

        return cls(
            metadata_dsn=os.getenv("SCHEMAFLOW_METADATA_DSN") or None,
            target_dsn=os.getenv("SCHEMAFLOW_TARGET_DSN") or None,
            statement_timeout_seconds=timeout,
            transactional=os.getenv("SCHEMAFLOW_TRANSACTIONAL", "1").lower() in _TRUE,
            lock_backend=lock_backend,
            log_level=os.getenv("SCHEMAFLOW_LOG_LEVEL", "INFO").upper(),
        )
