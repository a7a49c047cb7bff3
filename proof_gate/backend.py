"""Clients for the hosted backend: remote procedures and HTTP functions.

Both speak plain JSON over `urllib`. Blocking calls run on a worker thread so
an awaiting step yields the event loop while it waits.

- `HttpBackendClient.rpc(name)` POSTs to ``/rest/v1/rpc/<name>``.
- `HttpBackendClient.invoke(name, body)` POSTs to ``/functions/v1/<name>``.

`rpc` raises `BackendError` on any transport failure or non-2xx reply.
`invoke` raises only when no HTTP response was received; non-2xx replies come
back as a `FunctionResponse` so callers can inspect the status.

A header passed with the value `None` is removed from the request. Passing
``{"Authorization": None}`` sends a call without caller credentials.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol, runtime_checkable

from .config import GateConfig
from .errors import BackendError, ProofGateError

logger = logging.getLogger("proof_gate.backend")


@dataclass
class FunctionResponse:
    status: int
    data: Any
    text: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= int(self.status) < 300


@runtime_checkable
class FunctionsClient(Protocol):
    async def invoke(self, name: str, body: Any, headers: Optional[Dict[str, Optional[str]]] = None) -> FunctionResponse: ...


@runtime_checkable
class RpcClient(Protocol):
    async def rpc(self, name: str, params: Optional[Dict[str, Any]] = None) -> Any: ...


def _decode(raw: bytes) -> tuple:
    text = raw.decode("utf-8", errors="replace") if raw else ""
    if not text:
        return None, text
    try:
        return json.loads(text), text
    except ValueError:
        return None, text


@dataclass
class HttpBackendClient:
    """urllib client for the backend's REST RPC and functions surfaces."""

    base_url: str
    api_key: str = ""
    access_token: str = ""
    timeout_seconds: float = 10.0

    @classmethod
    def from_config(cls, config: GateConfig) -> "HttpBackendClient":
        return cls(
            base_url=config.backend_url,
            api_key=config.backend_key,
            access_token=config.access_token,
            timeout_seconds=config.http_timeout_seconds,
        )

    def _headers(self, extra: Optional[Dict[str, Optional[str]]] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
        bearer = self.access_token or self.api_key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        for key, value in (extra or {}).items():
            if value is None:
                headers.pop(key, None)
            else:
                headers[key] = value
        return headers

    def _post(self, path: str, body: Any, headers: Optional[Dict[str, Optional[str]]] = None) -> FunctionResponse:
        url = f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"
        payload = json.dumps(body if body is not None else {}).encode("utf-8")
        req = urllib.request.Request(url, data=payload, headers=self._headers(headers), method="POST")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                data, text = _decode(resp.read())
                return FunctionResponse(status=int(resp.status), data=data, text=text)
        except urllib.error.HTTPError as e:
            try:
                raw = e.read()
            except Exception:
                raw = b""
            data, text = _decode(raw)
            return FunctionResponse(status=int(e.code), data=data, text=text)
        except (urllib.error.URLError, OSError, ValueError) as e:
            logger.warning("backend POST %s failed: %s", url, e)
            raise BackendError(f"request to {path} failed: {type(e).__name__}: {e}") from e

    async def invoke(self, name: str, body: Any, headers: Optional[Dict[str, Optional[str]]] = None) -> FunctionResponse:
        if not self.base_url:
            raise BackendError("backend URL not configured")
        return await asyncio.to_thread(self._post, f"/functions/v1/{name}", body, headers)

    async def rpc(self, name: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if not self.base_url:
            raise BackendError("backend URL not configured")
        resp = await asyncio.to_thread(self._post, f"/rest/v1/rpc/{name}", params or {}, None)
        if not resp.ok:
            raise BackendError(f"rpc {name} failed: HTTP {resp.status}", status=resp.status, body=resp.data or resp.text[:200])
        if resp.data is None and resp.text:
            raise BackendError(f"rpc {name} returned non-JSON", status=resp.status, body=resp.text[:200])
        return resp.data


class LocalRpcClient:
    """Dispatches remote-procedure names to in-process callables.

    Used when the orchestrator runs next to the platform store instead of
    against a hosted backend.
    """

    def __init__(self, procedures: Dict[str, Callable[..., Any]]):
        self._procedures = dict(procedures)

    @classmethod
    def for_store(cls, store: Any) -> "LocalRpcClient":
        return cls({"qa_dependency_check": store.qa_dependency_check})

    async def rpc(self, name: str, params: Optional[Dict[str, Any]] = None) -> Any:
        fn = self._procedures.get(name)
        if fn is None:
            raise BackendError(f"unknown procedure {name}", status=404)
        try:
            return await asyncio.to_thread(fn, **(params or {}))
        except sqlite3.Error as e:
            raise BackendError(f"rpc {name} failed: {type(e).__name__}: {e}") from e


FunctionHandler = Callable[[Dict[str, str], Any], Any]


class LocalFunctionsClient:
    """Dispatches function names to in-process handlers.

    A handler takes ``(headers, body)`` and returns the response body.
    `ProofGateError` raised by a handler becomes a non-2xx `FunctionResponse`
    the same way the HTTP layer would render it.
    """

    def __init__(self, handlers: Dict[str, FunctionHandler]):
        self._handlers = dict(handlers)

    async def invoke(self, name: str, body: Any, headers: Optional[Dict[str, Optional[str]]] = None) -> FunctionResponse:
        handler = self._handlers.get(name)
        if handler is None:
            return FunctionResponse(status=404, data={"error": f"function not found: {name}"})
        clean = {k: v for k, v in (headers or {}).items() if v is not None}
        try:
            data = await asyncio.to_thread(handler, clean, body)
        except ProofGateError as e:
            return FunctionResponse(status=e.http_status, data=e.as_response())
        return FunctionResponse(status=200, data=data, text=json.dumps(data))
