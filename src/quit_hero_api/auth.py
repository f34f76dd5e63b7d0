"""
Admin and end-user authentication on top of the PocketBase auth store.

Login helpers never raise: they log the upstream failure and hand back an
``AuthResult`` carrying a message that can be shown to the user as is.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .pocketbase import AuthListener, ClientResponseError, PocketBaseClient

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password. Please check your credentials and try again."


@dataclass(frozen=True)
class AuthResult:
    success: bool
    record: Optional[Dict[str, Any]] = None
    token: Optional[str] = None
    error: Optional[str] = None


def _field_message(data: Dict[str, Any], field: str) -> Optional[str]:
    value = data.get(field)
    if isinstance(value, dict) and isinstance(value.get("message"), str) and value["message"]:
        return value["message"]
    return None


def extract_error_message(error: BaseException, default: str) -> str:
    """
    Pick the most specific message out of a PocketBase error.

    Field errors win over the top-level message, ``email`` before ``password``.
    """

    if isinstance(error, ClientResponseError) and error.status and error.data:
        body = error.data
        fields = body.get("data") if isinstance(body.get("data"), dict) else {}
        for field in ("email", "password"):
            message = _field_message(fields, field) or _field_message(body, field)
            if message:
                return message
        if isinstance(body.get("message"), str) and body["message"]:
            return body["message"]
    message = str(error)
    return message or default


def _is_credentials_failure(error: BaseException, message: str) -> bool:
    if isinstance(error, ClientResponseError) and error.status == 400:
        return True
    return any(marker in message for marker in ("Failed to authenticate", "Invalid login", "400"))


class AdminAuthSession:
    """
    Auth state for one backoffice admin.

    ``user`` mirrors the client's auth store, so a token saved or cleared
    anywhere else on the same client is reflected here too.
    """

    def __init__(self, client: PocketBaseClient, collection: str = "admin_users"):
        self.client = client
        self.collection = collection
        self.is_loading = True
        self.user: Optional[Dict[str, Any]] = None
        if client.auth_store.is_valid and client.auth_store.model:
            self.user = client.auth_store.model
        self.is_loading = False
        self._unsubscribe = client.auth_store.on_change(self._sync_user)

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    def login(self, email: str, password: str) -> AuthResult:
        self.is_loading = True
        try:
            auth = self.client.collection(self.collection).auth_with_password(email, password)
        except ClientResponseError as exc:
            logger.warning("Admin login failed for %s: %s", email, exc)
            return AuthResult(success=False, error=str(exc) or "Login failed")
        finally:
            self.is_loading = False
        self.user = auth["record"]
        return AuthResult(success=True, record=auth["record"], token=auth["token"])

    def logout(self) -> None:
        self.client.auth_store.clear()
        self.user = None

    def current_user(self) -> Optional[Dict[str, Any]]:
        return self.client.auth_store.model

    def subscribe(self, callback: AuthListener) -> Callable[[], None]:
        return self.client.auth_store.on_change(callback)

    def close(self) -> None:
        self._unsubscribe()

    def _sync_user(self, _token: str, model: Optional[Dict[str, Any]]) -> None:
        self.user = model


class UserAuth:
    """Registration and login for app users (the ``users`` auth collection)."""

    def __init__(self, client: PocketBaseClient, collection: str = "users"):
        self.client = client
        self.collection = collection

    def register(self, email: str, password: str, **data: Any) -> AuthResult:
        payload = {"email": email, "password": password, "passwordConfirm": password, **data}
        service = self.client.collection(self.collection)
        try:
            service.create(payload)
            auth = service.auth_with_password(email, password)
        except ClientResponseError as exc:
            logger.warning("User registration failed for %s: %s", email, exc)
            return AuthResult(success=False, error=extract_error_message(exc, "Registration failed"))
        return AuthResult(success=True, record=auth["record"], token=auth["token"])

    def login(self, email: str, password: str) -> AuthResult:
        try:
            auth = self.client.collection(self.collection).auth_with_password(email, password)
        except ClientResponseError as exc:
            logger.warning("User login failed for %s: status=%s %s", email, exc.status, exc)
            message = extract_error_message(exc, "Login failed")
            if _is_credentials_failure(exc, message):
                message = INVALID_CREDENTIALS_MESSAGE
            return AuthResult(success=False, error=message)
        return AuthResult(success=True, record=auth["record"], token=auth["token"])

    def logout(self) -> None:
        self.client.auth_store.clear()

    def current_user(self) -> Optional[Dict[str, Any]]:
        return self.client.auth_store.model

    def is_authenticated(self) -> bool:
        return self.client.auth_store.is_valid
