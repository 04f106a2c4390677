"""Environment-driven settings for the discovery service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

_ROOT = Path(__file__).resolve().parents[2]

DEFAULT_GENERATE_BATCH = 10
DEFAULT_GENERATE_ACCEPT = 4
# games last 7 days
DEFAULT_IGNORE_OLD_SECONDS = 60 * 60 * 24 * 7


@dataclass(frozen=True)
class Settings:
    store_impl: str = "memory"
    data_dir: str = str(_ROOT / "run")
    mongo_url: str = "mongodb://localhost:27017"
    mongo_db: str = "discovery"
    generate_batch: int = DEFAULT_GENERATE_BATCH
    generate_accept: int = DEFAULT_GENERATE_ACCEPT
    ignore_old_seconds: int = DEFAULT_IGNORE_OLD_SECONDS
    telegram_secret_token: Optional[str] = None
    telegram_bot_token: Optional[str] = None


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    env = env if env is not None else os.environ
    impl = (env.get("DISCOVERY_STORE_IMPL") or "memory").strip().lower()
    if impl not in {"memory", "file", "mongo"}:
        impl = "memory"
    return Settings(
        store_impl=impl,
        data_dir=env.get("DISCOVERY_DATA_DIR") or Settings.data_dir,
        mongo_url=env.get("MONGO_URL") or Settings.mongo_url,
        mongo_db=env.get("MONGO_DB") or Settings.mongo_db,
        generate_batch=_env_int(env, "DISCOVERY_GENERATE_BATCH", DEFAULT_GENERATE_BATCH),
        generate_accept=_env_int(env, "DISCOVERY_GENERATE_ACCEPT", DEFAULT_GENERATE_ACCEPT),
        ignore_old_seconds=_env_int(env, "DISCOVERY_IGNORE_OLD_SECONDS", DEFAULT_IGNORE_OLD_SECONDS),
        telegram_secret_token=(env.get("TELEGRAM_WEBHOOK_SECRET") or None),
        telegram_bot_token=(env.get("TELEGRAM_BOT_TOKEN") or None),
    )
