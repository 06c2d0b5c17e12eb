# backend/config.py
import os
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), ".env"), override=False)

DEFAULT_GRAPH_VERSION = "v24.0"
DEFAULT_REQUEST_TIMEOUT = 30  # segundos
DEFAULT_REDIRECT_URI = "https://insta-glow-up-39.lovable.app/auth/callback"
DEFAULT_ALLOWED_ORIGINS = [
    "https://insta-glow-up-39.lovable.app",
    "https://lovable.dev",
    "http://localhost:5173",
    "http://localhost:8080",
]
DEFAULT_TRUSTED_DOMAIN = "lovable.dev"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class ConfigurationError(RuntimeError):
    """Credenciais obrigatórias ausentes no servidor."""


def setup_logging(level_name: Optional[str] = None) -> None:
    level_name = (level_name or os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value or default


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env(name) or default)
    except ValueError:
        return default


def _split_origins(raw: Optional[str]) -> List[str]:
    normalized: List[str] = []
    for item in (raw or "").split(","):
        item = item.strip()
        if item and item not in normalized:
            normalized.append(item)
    return normalized


@dataclass(frozen=True)
class DashboardConfig:
    access_token: Optional[str] = None
    business_id: Optional[str] = None
    page_id: Optional[str] = None
    graph_version: str = DEFAULT_GRAPH_VERSION
    app_secret: Optional[str] = None
    request_timeout: int = DEFAULT_REQUEST_TIMEOUT

    @classmethod
    def from_env(cls) -> "DashboardConfig":
        return cls(
            access_token=_env("IG_ACCESS_TOKEN"),
            business_id=_env("IG_BUSINESS_ID"),
            page_id=_env("FB_PAGE_ID"),
            graph_version=_env("META_GRAPH_VERSION", DEFAULT_GRAPH_VERSION),
            app_secret=_env("META_APP_SECRET"),
            request_timeout=_env_int("META_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
        )


@dataclass(frozen=True)
class OAuthConfig:
    facebook_app_id: Optional[str] = None
    facebook_app_secret: Optional[str] = None
    instagram_app_id: Optional[str] = None
    instagram_app_secret: Optional[str] = None
    redirect_uri: str = DEFAULT_REDIRECT_URI
    state_secret: Optional[str] = None
    state_ttl_seconds: int = 600

    @classmethod
    def from_env(cls) -> "OAuthConfig":
        facebook_secret = _env("FACEBOOK_APP_SECRET")
        return cls(
            facebook_app_id=_env("FACEBOOK_APP_ID"),
            facebook_app_secret=facebook_secret,
            instagram_app_id=_env("INSTAGRAM_APP_ID"),
            instagram_app_secret=_env("INSTAGRAM_APP_SECRET"),
            redirect_uri=_env("OAUTH_REDIRECT_URI", DEFAULT_REDIRECT_URI),
            state_secret=_env("OAUTH_STATE_SECRET") or facebook_secret,
            state_ttl_seconds=_env_int("OAUTH_STATE_TTL_SECONDS", 600),
        )


@dataclass(frozen=True)
class SupabaseConfig:
    url: Optional[str] = None
    anon_key: Optional[str] = None
    service_role_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        return cls(
            url=_env("SUPABASE_URL"),
            anon_key=_env("SUPABASE_ANON_KEY"),
            service_role_key=_env("SUPABASE_SERVICE_ROLE_KEY"),
        )


@dataclass(frozen=True)
class CorsConfig:
    allowed_origins: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS))
    trusted_domain: str = DEFAULT_TRUSTED_DOMAIN

    @classmethod
    def from_env(cls) -> "CorsConfig":
        origins = _split_origins(_env("ALLOWED_ORIGINS"))
        return cls(
            allowed_origins=origins or list(DEFAULT_ALLOWED_ORIGINS),
            trusted_domain=(_env("TRUSTED_ORIGIN_DOMAIN", DEFAULT_TRUSTED_DOMAIN) or "").lower(),
        )


@dataclass(frozen=True)
class Settings:
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)
    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    supabase: SupabaseConfig = field(default_factory=SupabaseConfig)
    cors: CorsConfig = field(default_factory=CorsConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            dashboard=DashboardConfig.from_env(),
            oauth=OAuthConfig.from_env(),
            supabase=SupabaseConfig.from_env(),
            cors=CorsConfig.from_env(),
        )
