from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


def _default_env_file() -> str:
    # .env junto al repo; las variables reales del entorno siempre ganan.
    repo_root = Path(__file__).resolve().parents[1]
    return str(repo_root / ".env")


@dataclass(frozen=True)
class Settings:
    database_url: str
    db_pool_size: int
    db_echo: bool


def load_env_file() -> None:
    env_file = os.getenv("GATEWAY_ENV_FILE", _default_env_file())
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)


def get_settings() -> Settings:
    load_env_file()

    database_url = os.getenv("DATABASE_URL", "sqlite:///./device_gateway.db")
    db_pool_size = int(os.getenv("DB_POOL_SIZE", "5"))
    db_echo = os.getenv("DB_ECHO", "false").lower() in ("true", "1", "yes")

    return Settings(
        database_url=database_url,
        db_pool_size=db_pool_size,
        db_echo=db_echo,
    )
