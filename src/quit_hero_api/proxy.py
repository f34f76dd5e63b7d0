"""
Reverse proxy in front of PocketBase.

Lets an HTTPS-served frontend reach an HTTP-only PocketBase without mixed
content errors. Requests are forwarded one-to-one; nothing is retried.
"""

from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from .configuration import BackofficeConfig

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}
# Dropped from the relayed response: httpx already decoded the body.
RESPONSE_SKIP_HEADERS = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}
REQUEST_SKIP_HEADERS = HOP_BY_HOP_HEADERS | {"content-length", "host"}

_NOT_JSON = object()


def build_target_url(base_url: str, path: str, query: List[Tuple[str, str]]) -> str:
    """
    Resolve the upstream URL for an inbound request.

    ``query`` is the inbound query as ordered pairs. A ``path`` parameter
    (Vercel catch-all style) supplies the target path when the route path is
    empty and is never forwarded.
    """

    path_params = [value for key, value in query if key == "path"]
    remaining = [(key, value) for key, value in query if key != "path"]
    target_path = path.strip("/")
    if not target_path and path_params:
        target_path = "/".join(value.strip("/") for value in path_params)

    url = f"{base_url.rstrip('/')}/{target_path}"
    if remaining:
        url = f"{url}?{urlencode(remaining)}"
    return url


def forward_request_headers(headers: Dict[str, str], upstream_host: str) -> Dict[str, str]:
    forwarded = {key: value for key, value in headers.items() if key.lower() not in REQUEST_SKIP_HEADERS}
    forwarded["host"] = upstream_host
    return forwarded


def _parse_json(text: str):
    try:
        return json.loads(text)
    except ValueError:
        return _NOT_JSON


def relay_response(upstream: httpx.Response) -> Response:
    """Relay JSON objects/arrays/null as JSON; everything else as raw text."""

    text = upstream.text
    parsed = _parse_json(text) if text else _NOT_JSON
    skip = set(RESPONSE_SKIP_HEADERS)
    if parsed is None or isinstance(parsed, (dict, list)):
        response: Response = JSONResponse(content=parsed, status_code=upstream.status_code)
        skip.add("content-type")
    else:
        response = Response(content=text, status_code=upstream.status_code)
    # Repeated headers such as Set-Cookie keep one line per value.
    for key, value in upstream.headers.multi_items():
        if key.lower() not in skip:
            response.headers.append(key, value)
    return response


def create_proxy_router(
    config: BackofficeConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> APIRouter:
    router = APIRouter()
    pocketbase = config.pocketbase
    mount_path = config.proxy.mount_path

    async def proxy_pocketbase(request: Request) -> Response:
        query = list(request.query_params.multi_items())
        url = build_target_url(pocketbase.url, request.path_params.get("path", ""), query)
        headers = forward_request_headers(dict(request.headers), pocketbase.host)
        body = None
        if request.method not in ("GET", "HEAD"):
            body = await request.body()

        try:
            async with httpx.AsyncClient(
                timeout=pocketbase.request_timeout_seconds,
                transport=transport,
            ) as client:
                upstream = await client.request(request.method, url, headers=headers, content=body)
        except Exception as exc:
            logger.error("PocketBase proxy error [%s %s]: %s", request.method, url, exc)
            return JSONResponse(
                status_code=500,
                content={"error": "Proxy request failed", "message": str(exc)},
            )

        return relay_response(upstream)

    router.add_api_route(mount_path, proxy_pocketbase, methods=PROXY_METHODS, include_in_schema=False)
    router.add_api_route(
        f"{mount_path}/{{path:path}}",
        proxy_pocketbase,
        methods=PROXY_METHODS,
        include_in_schema=False,
    )
    return router
