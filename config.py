"""Environment-driven configuration for mantis-mcp."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from errors import ConfigurationError

DEFAULT_DB_PATH = Path.home() / ".mantis-mcp" / "lancedb"
DEFAULT_EMBEDDING_MODEL = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"
VALID_PROVIDERS = frozenset({"local", "ollama", "google"})
VALID_LOG_LEVELS = frozenset({"error", "warn", "warning", "info", "debug"})


@dataclass(frozen=True, slots=True)
class Config:
    """Server configuration with sensible defaults."""

    mantis_api_url: str
    mantis_api_key: str
    db_path: Path = DEFAULT_DB_PATH
    embedding_provider: str = "local"  # local | ollama | google
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    embedding_dim: int = 384
    ollama_base_url: str = "http://localhost:11434"
    sync_batch_size: int = 50
    sync_on_startup: bool = False
    log_level: str = "info"
    http_timeout: float = 30.0
    default_limit: int = 10
    max_limit: int = 50

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Config:
        """Build a Config from environment variables.

        Raises:
            ConfigurationError: listing every missing or invalid variable.
        """
        env = os.environ if environ is None else environ
        errors: list[str] = []

        def required(name: str) -> str:
            value = env.get(name, "").strip()
            if not value:
                errors.append(f"  {name}: required")
            return value

        def positive_int(name: str, default: int) -> int:
            raw = env.get(name)
            if raw is None or raw == "":
                return default
            try:
                value = int(raw)
            except ValueError:
                errors.append(f"  {name}: expected an integer, got {raw!r}")
                return default
            if value <= 0:
                errors.append(f"  {name}: must be positive, got {value}")
            return value

        api_url = required("MANTIS_API_URL")
        if api_url and not api_url.startswith(("http://", "https://")):
            errors.append(f"  MANTIS_API_URL: not a URL: {api_url!r}")
        api_key = required("MANTIS_API_KEY")

        provider = env.get("EMBEDDING_PROVIDER", "local").lower()
        if provider not in VALID_PROVIDERS:
            errors.append(f"  EMBEDDING_PROVIDER: expected one of {sorted(VALID_PROVIDERS)}, got {provider!r}")

        log_level = env.get("LOG_LEVEL", "info").lower()
        if log_level not in VALID_LOG_LEVELS:
            errors.append(f"  LOG_LEVEL: expected one of {sorted(VALID_LOG_LEVELS)}, got {log_level!r}")

        timeout_raw = env.get("MANTIS_HTTP_TIMEOUT", "30")
        try:
            timeout = float(timeout_raw)
        except ValueError:
            errors.append(f"  MANTIS_HTTP_TIMEOUT: expected a number, got {timeout_raw!r}")
            timeout = 30.0

        config = cls(
            mantis_api_url=api_url.rstrip("/"),
            mantis_api_key=api_key,
            db_path=Path(env.get("MANTIS_MCP_DB_PATH") or DEFAULT_DB_PATH).expanduser(),
            embedding_provider=provider,
            embedding_model=env.get("EMBEDDING_MODEL") or DEFAULT_EMBEDDING_MODEL,
            embedding_dim=positive_int("EMBEDDING_DIM", 384),
            ollama_base_url=env.get("OLLAMA_BASE_URL") or "http://localhost:11434",
            sync_batch_size=positive_int("SYNC_BATCH_SIZE", 50),
            sync_on_startup=env.get("SYNC_ON_STARTUP", "false").lower() == "true",
            log_level=log_level,
            http_timeout=timeout,
        )
        if errors:
            raise ConfigurationError("Invalid configuration:\n" + "\n".join(errors))
        return config
