"""FastAPI server for the Quit Hero backoffice: PocketBase proxy, auth and analytics."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from backend.analytics.server import app as dashboard_app

from .auth import AdminAuthSession, AuthResult, UserAuth
from .configuration import BackofficeConfig
from .pocketbase import AuthStore, ClientResponseError, PocketBaseClient
from .proxy import create_proxy_router

config = BackofficeConfig.from_env()

logging.basicConfig(
    level=getattr(logging, config.server.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

if config.pocketbase.url_is_default:
    logger.error(
        "POCKETBASE_URL is not set; falling back to %s. Set POCKETBASE_URL (or VITE_POCKETBASE_URL).",
        config.pocketbase.url,
    )

app = FastAPI(title="Quit Hero Backoffice API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.server.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if config.proxy.enable:
    app.include_router(create_proxy_router(config))

app.mount("/dashboard", dashboard_app)


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class RegisterRequest(LoginRequest):
    name: Optional[str] = None


class AuthResponse(BaseModel):
    token: str
    record: Dict[str, Any]


def get_config() -> BackofficeConfig:
    return config


def get_pocketbase_client(
    authorization: Optional[str] = Header(None),
    settings: BackofficeConfig = Depends(get_config),
) -> PocketBaseClient:
    return PocketBaseClient(
        settings.pocketbase.url,
        timeout=settings.pocketbase.request_timeout_seconds,
        auth_store=AuthStore(token=(authorization or "").strip()),
    )


def _auth_response(result: AuthResult, failure_status: int) -> AuthResponse:
    if not result.success:
        raise HTTPException(status_code=failure_status, detail=result.error)
    return AuthResponse(token=result.token or "", record=result.record or {})


@app.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/auth/admin/login", response_model=AuthResponse)
def admin_login(
    request: LoginRequest,
    client: PocketBaseClient = Depends(get_pocketbase_client),
    settings: BackofficeConfig = Depends(get_config),
) -> AuthResponse:
    session = AdminAuthSession(client, collection=settings.pocketbase.admin_collection)
    try:
        return _auth_response(session.login(request.email, request.password), 401)
    finally:
        session.close()


@app.get("/auth/admin/me")
def admin_me(
    client: PocketBaseClient = Depends(get_pocketbase_client),
    settings: BackofficeConfig = Depends(get_config),
) -> Dict[str, Any]:
    if not client.auth_store.token:
        raise HTTPException(status_code=401, detail="Missing Authorization token.")
    try:
        auth = client.collection(settings.pocketbase.admin_collection).auth_refresh()
    except ClientResponseError as exc:
        status = exc.status if exc.status >= 400 else 502
        if status in (400, 403, 404):
            status = 401
        raise HTTPException(status_code=status, detail=str(exc)) from exc
    return {"token": auth["token"], "record": auth["record"]}


@app.post("/auth/users/login", response_model=AuthResponse)
def user_login(
    request: LoginRequest,
    client: PocketBaseClient = Depends(get_pocketbase_client),
    settings: BackofficeConfig = Depends(get_config),
) -> AuthResponse:
    users = UserAuth(client, collection=settings.pocketbase.user_collection)
    return _auth_response(users.login(request.email, request.password), 401)


@app.post("/auth/users/register", response_model=AuthResponse)
def user_register(
    request: RegisterRequest,
    client: PocketBaseClient = Depends(get_pocketbase_client),
    settings: BackofficeConfig = Depends(get_config),
) -> AuthResponse:
    users = UserAuth(client, collection=settings.pocketbase.user_collection)
    extra = {"name": request.name} if request.name else {}
    return _auth_response(users.register(request.email, request.password, **extra), 400)


def main() -> None:
    uvicorn.run(app, host=config.server.host, port=config.server.port, log_level=config.server.log_level.lower())


if __name__ == "__main__":
    main()
