"""Environment-driven settings for containers built with :meth:`Container.from_settings`."""

import tempfile
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ["ProvisorSettings"]


class ProvisorSettings(BaseSettings):
    """Settings read from ``PROVISOR_*`` environment variables or a ``.env`` file.

    Example:
        PROVISOR_CACHE_ENABLED=true PROVISOR_CACHE_TTL=0 python app.py
    """

    model_config = SettingsConfigDict(
        env_prefix="PROVISOR_", case_sensitive=False, extra="ignore", env_file=".env"
    )

    cache_enabled: bool = False
    cache_dir: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()) / "provisor-cache")
    cache_ttl: int = 3600  # 0 never expires
    snapshot_dir: Path = Path("var/cache/provisor")
    allow_overwrite: bool = True

    @field_validator("cache_ttl")
    @classmethod
    def validate_cache_ttl(cls, v: int) -> int:
        """Ensure the TTL is not negative."""
        if v < 0:
            raise ValueError(f"cache_ttl must be >= 0, got {v}")
        return v
