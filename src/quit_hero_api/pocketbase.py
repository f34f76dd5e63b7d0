"""
Minimal PocketBase REST client.

Only the record and auth endpoints the backoffice relies on are covered:
list/full-list/one/first-item reads, create/update/delete, password auth and
token refresh. Every call goes straight to the backend: no retries, no
request cancellation and no caching.
"""

from __future__ import annotations

import base64
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

AuthListener = Callable[[str, Optional[Dict[str, Any]]], None]


class ClientResponseError(Exception):
    """
    Error raised for any failed PocketBase request.

    ``status`` is the upstream HTTP status, or 0 when the request never got a
    response (DNS failure, refused connection, timeout). ``data`` holds the
    decoded error body, usually ``{"code", "message", "data": {field: {...}}}``.
    """

    def __init__(
        self,
        url: str = "",
        status: int = 0,
        data: Optional[Dict[str, Any]] = None,
        is_abort: bool = False,
        original_error: Optional[BaseException] = None,
    ):
        self.url = url
        self.status = status
        self.data = data or {}
        self.is_abort = is_abort
        self.original_error = original_error
        message = self.data.get("message") if isinstance(self.data.get("message"), str) else None
        if not message:
            if original_error is not None:
                message = f"Failed to connect to PocketBase: {original_error}"
            else:
                message = "Something went wrong while processing your request."
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self)


def _decode_jwt_payload(token: str) -> Dict[str, Any]:
    parts = token.split(".")
    if len(parts) != 3:
        return {}
    payload = parts[1]
    payload += "=" * (-len(payload) % 4)
    try:
        decoded = base64.urlsafe_b64decode(payload.encode("ascii"))
        data = json.loads(decoded)
    except (ValueError, UnicodeDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


class AuthStore:
    """In-memory token + auth record holder with change listeners."""

    def __init__(self, token: str = "", model: Optional[Dict[str, Any]] = None):
        self._token = token
        self._model = model
        self._listeners: List[AuthListener] = []

    @property
    def token(self) -> str:
        return self._token

    @property
    def model(self) -> Optional[Dict[str, Any]]:
        return self._model

    @property
    def is_valid(self) -> bool:
        if not self._token:
            return False
        payload = _decode_jwt_payload(self._token)
        exp = payload.get("exp")
        if exp is None:
            return True
        try:
            return float(exp) > time.time()
        except (TypeError, ValueError):
            return False

    def save(self, token: str, model: Optional[Dict[str, Any]]) -> None:
        self._token = token or ""
        self._model = model
        self._notify()

    def clear(self) -> None:
        self._token = ""
        self._model = None
        self._notify()

    def on_change(self, callback: AuthListener, fire_immediately: bool = False) -> Callable[[], None]:
        self._listeners.append(callback)
        if fire_immediately:
            callback(self._token, self._model)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self._token, self._model)


@dataclass(frozen=True)
class ListResult:
    page: int
    per_page: int
    total_items: int
    total_pages: int
    items: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ListResult":
        return cls(
            page=int(payload.get("page") or 1),
            per_page=int(payload.get("perPage") or 0),
            total_items=int(payload.get("totalItems") or 0),
            total_pages=int(payload.get("totalPages") or 0),
            items=list(payload.get("items") or []),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "page": self.page,
            "perPage": self.per_page,
            "totalItems": self.total_items,
            "totalPages": self.total_pages,
            "items": self.items,
        }


def _clean_params(**params: Any) -> Dict[str, Any]:
    return {key: value for key, value in params.items() if value not in (None, "")}


class RecordService:
    """CRUD + auth calls scoped to one collection."""

    def __init__(self, client: "PocketBaseClient", collection: str):
        self.client = client
        self.collection = collection

    @property
    def base_path(self) -> str:
        return f"/api/collections/{self.collection}"

    def get_list(
        self,
        page: int = 1,
        per_page: int = 30,
        filter: Optional[str] = None,
        sort: Optional[str] = None,
        expand: Optional[str] = None,
        fields: Optional[str] = None,
        skip_total: bool = False,
    ) -> ListResult:
        params = _clean_params(
            page=page,
            perPage=per_page,
            filter=filter,
            sort=sort,
            expand=expand,
            fields=fields,
            skipTotal=1 if skip_total else None,
        )
        payload = self.client.send(f"{self.base_path}/records", params=params)
        return ListResult.from_payload(payload or {})

    def get_full_list(
        self,
        batch: int = 500,
        filter: Optional[str] = None,
        sort: Optional[str] = None,
        expand: Optional[str] = None,
        fields: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        if batch <= 0:
            raise ValueError("batch must be a positive integer")
        items: List[Dict[str, Any]] = []
        page = 1
        while True:
            result = self.get_list(
                page=page,
                per_page=batch,
                filter=filter,
                sort=sort,
                expand=expand,
                fields=fields,
                skip_total=True,
            )
            items.extend(result.items)
            if len(result.items) < batch:
                return items
            page += 1

    def get_one(self, record_id: str, expand: Optional[str] = None, fields: Optional[str] = None) -> Dict[str, Any]:
        if not record_id:
            raise ClientResponseError(
                url=f"{self.client.base_url}{self.base_path}/records/",
                status=404,
                data={"code": 404, "message": "Missing required record id.", "data": {}},
            )
        return self.client.send(
            f"{self.base_path}/records/{record_id}",
            params=_clean_params(expand=expand, fields=fields),
        )

    def get_first_list_item(
        self,
        filter: str,
        expand: Optional[str] = None,
        sort: Optional[str] = None,
    ) -> Dict[str, Any]:
        result = self.get_list(page=1, per_page=1, filter=filter, expand=expand, sort=sort, skip_total=True)
        if not result.items:
            raise ClientResponseError(
                url=f"{self.client.base_url}{self.base_path}/records",
                status=404,
                data={"code": 404, "message": "The requested resource wasn't found.", "data": {}},
            )
        return result.items[0]

    def create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.client.send(f"{self.base_path}/records", method="POST", json=data)

    def update(self, record_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.client.send(f"{self.base_path}/records/{record_id}", method="PATCH", json=data)

    def delete(self, record_id: str) -> None:
        self.client.send(f"{self.base_path}/records/{record_id}", method="DELETE")

    def auth_with_password(self, identity: str, password: str) -> Dict[str, Any]:
        payload = self.client.send(
            f"{self.base_path}/auth-with-password",
            method="POST",
            json={"identity": identity, "password": password},
        )
        return self._save_auth(payload)

    def auth_refresh(self) -> Dict[str, Any]:
        payload = self.client.send(f"{self.base_path}/auth-refresh", method="POST")
        return self._save_auth(payload)

    def _save_auth(self, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        payload = payload or {}
        token = payload.get("token") or ""
        record = payload.get("record")
        self.client.auth_store.save(token, record)
        return {"token": token, "record": record}


class PocketBaseClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        auth_store: Optional[AuthStore] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.auth_store = auth_store or AuthStore()
        self._transport = transport

    def collection(self, name: str) -> RecordService:
        return RecordService(self, name)

    def send(
        self,
        path: str,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = {"Accept": "application/json"}
        if self.auth_store.token:
            headers["Authorization"] = self.auth_store.token

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.request(method, url, params=params, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("PocketBase request timed out [%s %s]", method, url)
            raise ClientResponseError(url=url, status=0, is_abort=True, original_error=exc) from exc
        except httpx.HTTPError as exc:
            logger.warning("PocketBase request failed [%s %s]: %s", method, url, exc)
            raise ClientResponseError(url=url, status=0, original_error=exc) from exc

        if response.status_code == 204:
            return None

        data = self._decode_body(response)
        if response.status_code >= 400:
            raise ClientResponseError(
                url=str(response.request.url),
                status=response.status_code,
                data=data if isinstance(data, dict) else {"message": str(data or "")},
            )
        return data

    @staticmethod
    def _decode_body(response: httpx.Response) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return response.text
