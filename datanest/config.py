"""Runtime settings — env-driven via pydantic-settings.

Reads from a .env file and DATANEST_* environment variables.  Settings
never carry a project location; the project root is always passed
explicitly.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatanestSettings(BaseSettings):
    """Runtime settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export DATANEST_DATA_ROOT=/srv/datanest
        export DATANEST_RETRIES=5
        export DATANEST_MAX_PARALLEL=8

    Or via .env file::

        DATANEST_LOG_LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="DATANEST_",
        env_file_encoding="utf-8",
    )

    log_level: str = "INFO"

    # Overrides the project's data root (registry + cache) when set
    data_root: Path | None = None

    # Fetch retry policy
    retries: int = Field(default=3, ge=0)
    backoff_seconds: float = Field(default=0.5, ge=0)
    http_timeout: float = Field(default=30.0, gt=0)

    # Scheduling
    max_parallel: int = Field(default=4, ge=1)

    def with_overrides(self, **overrides: object) -> DatanestSettings:
        """Return a copy with the non-None overrides applied (CLI flags)."""
        update = {k: v for k, v in overrides.items() if v is not None}
        return self.model_copy(update=update)
