from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Tuple

DEFAULT_DB_PATH = "data/ramikart.sqlite"
DEFAULT_SECRET_KEY = "dev-secret-key-change-me"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    """
    Process-wide settings.

    Fields:
      - db_path: sqlite file holding products, orders and conversations
      - secret_key / jwt_algorithm: verify bearer tokens issued by the auth service
      - token_expire_minutes: lifetime of tokens minted by create_access_token
      - push_timeout: seconds one real-time push may take before it counts as not delivered
      - ack_timeout: seconds a socket request may run before the client gets a timeout ack
      - allowed_origins: CORS origins for the REST and socket endpoints
    """

    db_path: str = DEFAULT_DB_PATH
    secret_key: str = DEFAULT_SECRET_KEY
    jwt_algorithm: str = "HS256"
    token_expire_minutes: int = 60 * 24
    push_timeout: float = 2.0
    ack_timeout: float = 5.0
    allowed_origins: Tuple[str, ...] = field(
        default_factory=lambda: ("http://localhost:3000",)
    )
    host: str = "0.0.0.0"
    port: int = 5000

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("RAMIKART_ALLOWED_ORIGINS", "http://localhost:3000")
        return cls(
            db_path=os.getenv("RAMIKART_DB_PATH", DEFAULT_DB_PATH),
            secret_key=os.getenv("RAMIKART_SECRET_KEY", DEFAULT_SECRET_KEY),
            jwt_algorithm=os.getenv("RAMIKART_JWT_ALGORITHM", "HS256"),
            token_expire_minutes=_env_int("RAMIKART_TOKEN_EXPIRE_MINUTES", 60 * 24),
            push_timeout=_env_float("RAMIKART_PUSH_TIMEOUT", 2.0),
            ack_timeout=_env_float("RAMIKART_ACK_TIMEOUT", 5.0),
            allowed_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
            host=os.getenv("HOST", "0.0.0.0"),
            port=_env_int("PORT", 5000),
        )
