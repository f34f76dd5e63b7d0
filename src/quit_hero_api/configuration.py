"""
Runtime configuration for the backoffice API.

Values are read from the environment (a local ``.env`` is loaded first) and
validated into small pydantic models, one per concern.
"""

from __future__ import annotations

import os
from typing import List, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

DEFAULT_POCKETBASE_URL = "http://localhost:8096"

# Checked in order; the VITE_* names are shared with the SPA build env.
POCKETBASE_URL_ENV_VARS = ("POCKETBASE_URL", "VITE_POCKETBASE_URL", "VITE_BACKOFFICE_PB_URL")


# ========== 1. PocketBase backend ==========

class PocketBaseConfig(BaseModel):
    url: str = DEFAULT_POCKETBASE_URL
    """Base URL of the PocketBase instance (no trailing slash)"""

    url_is_default: bool = True
    """True when no env var supplied the URL"""

    request_timeout_seconds: float = 30.0

    admin_collection: str = "admin_users"
    """Custom auth collection used by backoffice admins"""

    user_collection: str = "users"

    @property
    def host(self) -> str:
        return urlparse(self.url).netloc


# ========== 2. Proxy ==========

class ProxyConfig(BaseModel):
    enable: bool = True
    mount_path: str = "/api/pocketbase"


# ========== 3. Dashboard data source ==========

class DashboardConfig(BaseModel):
    database_url: Optional[str] = None
    """When set, analytics read a SQL snapshot instead of PocketBase"""


# ========== 4. HTTP server ==========

class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"


class BackofficeConfig(BaseModel):
    """Configuration for the Quit Hero backoffice API."""

    pocketbase: PocketBaseConfig = PocketBaseConfig()
    proxy: ProxyConfig = ProxyConfig()
    dashboard: DashboardConfig = DashboardConfig()
    server: ServerConfig = ServerConfig()

    @classmethod
    def from_env(cls) -> "BackofficeConfig":
        url, url_is_default = _resolve_pocketbase_url()
        return cls(
            pocketbase=PocketBaseConfig(
                url=url,
                url_is_default=url_is_default,
                request_timeout_seconds=_env_float("POCKETBASE_TIMEOUT_SECONDS", 30.0),
                admin_collection=os.getenv("POCKETBASE_ADMIN_COLLECTION", "admin_users"),
                user_collection=os.getenv("POCKETBASE_USER_COLLECTION", "users"),
            ),
            proxy=ProxyConfig(
                enable=_env_bool("PROXY_ENABLE", True),
                mount_path=os.getenv("PROXY_MOUNT_PATH", "/api/pocketbase").rstrip("/") or "/api/pocketbase",
            ),
            dashboard=DashboardConfig(database_url=os.getenv("DASHBOARD_DATABASE_URL") or None),
            server=ServerConfig(
                host=os.getenv("HOST", "0.0.0.0"),
                port=_env_int("PORT", 8000),
                cors_origins=_env_list("CORS_ORIGINS", ["*"]),
                log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            ),
        )


def _resolve_pocketbase_url() -> tuple[str, bool]:
    for name in POCKETBASE_URL_ENV_VARS:
        value = (os.getenv(name) or "").strip()
        if value:
            return value.rstrip("/"), False
    return DEFAULT_POCKETBASE_URL, True


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return default
    items = [item.strip() for item in raw.split(",") if item.strip()]
    return items or default
