from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

_PACKAGE_DIR = Path(__file__).parent


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    return os.getenv(name, "").strip() or default


def _resolve_db_path() -> Path:
    override = os.getenv("HACKJURY_DB_PATH", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return _PACKAGE_DIR / "data" / "hackjury.db"


def _short_timeout_layers() -> set[str]:
    raw = _env_str("HACKJURY_SHORT_TIMEOUT_LAYERS", "COHERENCE")
    return {part.strip().upper() for part in raw.split(",") if part.strip()}


class Settings(BaseModel):
    database_path: Path = Field(default_factory=_resolve_db_path)

    # Governor: one global budget shared by every layer type.
    max_concurrent_jobs: int = Field(default_factory=lambda: _env_int("HACKJURY_MAX_CONCURRENT_JOBS", 2))
    slot_max_lifetime_seconds: int = Field(
        default_factory=lambda: _env_int("HACKJURY_SLOT_MAX_LIFETIME_SECONDS", 1800)
    )

    # Reclaimer: two timeout tiers, picked per layer type.
    short_timeout_seconds: int = Field(default_factory=lambda: _env_int("HACKJURY_SHORT_TIMEOUT_SECONDS", 30))
    long_timeout_seconds: int = Field(default_factory=lambda: _env_int("HACKJURY_LONG_TIMEOUT_SECONDS", 1800))
    short_timeout_layers: set[str] = Field(default_factory=_short_timeout_layers)
    reclaim_interval_seconds: int = Field(
        default_factory=lambda: _env_int("HACKJURY_RECLAIM_INTERVAL_SECONDS", 60)
    )

    jury_fanout: int = Field(default_factory=lambda: _env_int("HACKJURY_JURY_FANOUT", 8))
    scoring_configuration: str = Field(
        default_factory=lambda: _env_str("HACKJURY_SCORING_CONFIGURATION", "HACKATHON_STANDARD")
    )

    github_token: str = Field(default_factory=lambda: os.getenv("GITHUB_TOKEN", ""))

    llm_provider: str = Field(default_factory=lambda: _env_str("LLM_PROVIDER", "anthropic"))
    llm_model: str = Field(default_factory=lambda: os.getenv("LLM_MODEL", "").strip())
    llm_max_tokens: int = Field(default_factory=lambda: _env_int("LLM_MAX_TOKENS", 4096))
    log_level: str = Field(default_factory=lambda: _env_str("HACKJURY_LOG_LEVEL", "INFO"))

    def timeout_for(self, layer_type: str) -> int:
        """Stuck-job timeout (seconds) for a layer type."""
        key = str(getattr(layer_type, "value", layer_type)).upper()
        if key in self.short_timeout_layers:
            return self.short_timeout_seconds
        return self.long_timeout_seconds

    def layer_timeouts(self) -> dict[str, int]:
        from hackjury.models import LayerType
        return {lt.value: self.timeout_for(lt.value) for lt in LayerType}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str | None = None) -> None:
    level = (level or get_settings().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )
