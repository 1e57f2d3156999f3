from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, ValidationError

from vidauth.pkce import ProviderConfig

from .constants import LOGGER


@dataclass
class Settings:
    provider: ProviderConfig
    timeout: float
    max_retries: int
    token_lifetime_seconds: int
    token_freshness_seconds: int
    credentials_path: Path
    flow_state_path: Path

    @property
    def api_base_url(self) -> str:
        return self.provider.api_base_url


def is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_env_int(key: str, default: int) -> int:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be an integer value.")


def _get_env_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be a number.")


def _get_env_url(key: str, default: str) -> str:
    raw = os.getenv(key, "").strip() or default
    try:
        url = AnyHttpUrl(raw)
    except ValidationError as error:
        raise RuntimeError(f"{key} must be a valid http(s) URL.") from error
    return str(url).rstrip("/")


def load_env() -> None:
    env_path = Path(__file__).resolve().parent.parent / ".env"
    if not env_path.exists():
        return
    load_dotenv(env_path, override=True)


def validate_env() -> None:
    base_url = os.getenv("VIDUP_API_BASE_URL", "").strip()
    if base_url:
        parsed = urlparse(base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise RuntimeError(
                "VIDUP_API_BASE_URL must be an http(s) URL (for example: "
                "http://localhost:8080)."
            )

    lifetime = _get_env_int("VIDUP_TOKEN_LIFETIME", 300)
    freshness = _get_env_int("VIDUP_TOKEN_FRESHNESS", 240)
    if lifetime <= 0:
        raise RuntimeError("VIDUP_TOKEN_LIFETIME must be positive.")
    if freshness >= lifetime:
        LOGGER.warning(
            "VIDUP_TOKEN_FRESHNESS (%ss) is not below VIDUP_TOKEN_LIFETIME (%ss); "
            "restored tokens may already be expired.",
            freshness,
            lifetime,
        )

    if _get_env_int("VIDUP_MAX_RETRIES", 2) < 0:
        raise RuntimeError("VIDUP_MAX_RETRIES must not be negative.")


def load_settings() -> Settings:
    provider = ProviderConfig(
        api_base_url=_get_env_url("VIDUP_API_BASE_URL", "http://localhost:8080"),
        client_id=os.getenv("VIDUP_CLIENT_ID", "public-client").strip() or "public-client",
        redirect_uri=os.getenv("VIDUP_REDIRECT_URI", "http://localhost:8765/callback").strip(),
        scope=os.getenv("VIDUP_SCOPE", "openid profile"),
        authorization_endpoint=os.getenv("VIDUP_AUTHORIZATION_ENDPOINT", "/oauth2/authorize"),
        token_endpoint=os.getenv("VIDUP_TOKEN_ENDPOINT", "/oauth2/token"),
        logout_endpoint=os.getenv("VIDUP_LOGOUT_ENDPOINT", "/oauth2/logout"),
    )
    return Settings(
        provider=provider,
        timeout=_get_env_float("VIDUP_TIMEOUT", 30.0),
        max_retries=_get_env_int("VIDUP_MAX_RETRIES", 2),
        token_lifetime_seconds=_get_env_int("VIDUP_TOKEN_LIFETIME", 300),
        token_freshness_seconds=_get_env_int("VIDUP_TOKEN_FRESHNESS", 240),
        credentials_path=Path(os.getenv("VIDUP_CREDENTIALS_PATH", ".vidup_credentials.json")),
        flow_state_path=Path(os.getenv("VIDUP_FLOW_STATE_PATH", ".vidup_flow_state.json")),
    )


def setup_logging() -> bool:
    debug_enabled = is_truthy(os.getenv("VIDUP_DEBUG", "1"))
    if debug_enabled:
        logging.basicConfig(level=logging.INFO)
        LOGGER.setLevel(logging.INFO)
        logging.getLogger("vidauth").setLevel(logging.INFO)
    return debug_enabled
