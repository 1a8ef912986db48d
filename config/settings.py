"""Configuration helpers for the portrait asset store."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

MIB = 1024 * 1024
DAY_SECONDS = 24 * 60 * 60


@dataclass(slots=True)
class AppConfig:
    """Centralized application configuration."""

    data_dir: Path = Path("data")
    storage_dir: Path = Path("data/stored_images")
    cache_dir: Path = Path("data/images")
    ledger_path: Path = Path("data/ledger.json")
    log_dir: Path = Path("logs")
    log_level: str = "INFO"
    max_cache_size: int = 100 * MIB
    max_cache_age_seconds: float = 7 * DAY_SECONDS
    cache_cleanup_ratio: float = 0.8
    max_training_images: int = 3
    download_timeout: float = 30.0
    download_chunk_size: int = 64 * 1024
    verify_images: bool = True
    default_extension: str = "jpg"
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_root(cls, root: Path, **overrides: Any) -> "AppConfig":
        """Build a config whose directories all live under ``root``."""
        root = Path(root)
        values: dict[str, Any] = {
            "data_dir": root,
            "storage_dir": root / "stored_images",
            "cache_dir": root / "images",
            "ledger_path": root / "ledger.json",
            "log_dir": root / "logs",
        }
        values.update(overrides)
        return cls(**values)


def _load_env_file(path: Path) -> None:
    """Populate environment variables from a simple KEY=VALUE .env file."""
    if not path.exists():
        return

    for line in path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        os.environ[key.strip()] = value.strip()


def _env_number(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be numeric, got {raw!r}") from exc


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_level(name: str, default: str) -> str:
    raw = (os.getenv(name) or "").strip().upper()
    if not raw:
        return default
    if not isinstance(logging.getLevelName(raw), int):
        raise ValueError(f"{name} must be a logging level name, got {raw!r}")
    return raw


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if not raw:
        return default
    return Path(raw).expanduser().resolve()


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """Return an AppConfig instance with environment-aware settings."""
    env_path = Path(config_path) if config_path else Path(".env")
    _load_env_file(env_path)

    data_dir = _env_path("ASSET_DATA_DIR", Path("data").resolve())
    storage_dir = _env_path("ASSET_STORAGE_DIR", data_dir / "stored_images")
    cache_dir = _env_path("ASSET_CACHE_DIR", data_dir / "images")
    ledger_path = _env_path("ASSET_LEDGER_PATH", data_dir / "ledger.json")
    log_dir = _env_path("ASSET_LOG_DIR", Path("logs").resolve())

    max_cache_size = int(_env_number("IMAGE_CACHE_MAX_BYTES", 100 * MIB))
    max_age_days = _env_number("IMAGE_CACHE_MAX_AGE_DAYS", 7)
    download_timeout = _env_number("DOWNLOAD_TIMEOUT", 30.0)

    metadata: dict[str, Any] = {"env_file": str(env_path)}
    user_agent = os.getenv("ASSET_USER_AGENT")
    if user_agent:
        metadata["user_agent"] = user_agent

    return AppConfig(
        data_dir=data_dir,
        storage_dir=storage_dir,
        cache_dir=cache_dir,
        ledger_path=ledger_path,
        log_dir=log_dir,
        log_level=_env_level("ASSET_LOG_LEVEL", "INFO"),
        max_cache_size=max_cache_size,
        max_cache_age_seconds=max_age_days * DAY_SECONDS,
        download_timeout=download_timeout,
        verify_images=_env_flag("VERIFY_IMAGES", True),
        metadata=metadata,
    )
