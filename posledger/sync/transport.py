import logging
from typing import Any, Dict, Optional

import httpx

from .queue import MutationType

log = logging.getLogger("posledger.sync.transport")

# mutation type -> (HTTP method, path); path keys are taken out of the payload
ROUTES = {
    MutationType.CREATE_ORDER: ("POST", "/api/v1/orders"),
    MutationType.ADD_ITEM: ("POST", "/api/v1/orders/{order_id}/items"),
    MutationType.UPDATE_ITEM: ("PATCH", "/api/v1/orders/{order_id}/items/{item_id}"),
    MutationType.REMOVE_ITEM: ("DELETE", "/api/v1/orders/{order_id}/items/{item_id}"),
    MutationType.SUBMIT_ORDER: ("POST", "/api/v1/orders/{order_id}/submit"),
    MutationType.KITCHEN_STATUS: ("POST", "/api/v1/orders/{order_id}/status"),
    MutationType.RECORD_PAYMENT: ("POST", "/api/v1/orders/{order_id}/payments"),
    MutationType.CHECKOUT: ("POST", "/api/v1/orders/{order_id}/checkout"),
    MutationType.CANCEL_ORDER: ("POST", "/api/v1/orders/{order_id}/cancel"),
}
TRANSIENT_STATUS = frozenset({408, 429})
PATH_KEYS = ("order_id", "item_id")


class SyncError(Exception):
    pass


class TransientSyncError(SyncError):
    """Retry later: network failure, timeout, or a 5xx/408/429 reply."""

    def __init__(self, message: str, status_code: Optional[int] = None, network: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.network = network


class RejectedMutation(SyncError):
    """The server refused the mutation itself (4xx); retrying cannot help."""

    def __init__(self, status_code: int, code: Optional[str], message: str, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.body = body


class HttpTransport:
    def __init__(self, base_url: str, token: Optional[str] = None,
                 client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.client = client or httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _send(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            resp = await self.client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise TransientSyncError(f"{method} {path}: {e!r}", network=True) from e

        if resp.status_code >= 500 or resp.status_code in TRANSIENT_STATUS:
            raise TransientSyncError(f"{method} {path}: HTTP {resp.status_code}", status_code=resp.status_code)
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {"error": resp.text}
            code = body.get("code") if isinstance(body, dict) else None
            message = (body.get("error") or body.get("detail")) if isinstance(body, dict) else None
            raise RejectedMutation(resp.status_code, code, str(message or f"HTTP {resp.status_code}"), body)
        return resp.json()

    async def submit(self, mutation_type: str, payload: Dict[str, Any], client_request_id: str) -> Dict[str, Any]:
        if mutation_type not in ROUTES:
            raise ValueError(f"no route for mutation type {mutation_type}")
        method, template = ROUTES[mutation_type]
        path = template.format(**{k: payload[k] for k in PATH_KEYS if k in payload})
        body = {k: v for k, v in payload.items() if k not in PATH_KEYS}
        if method == "DELETE":
            return await self._send(method, path, params={"client_request_id": client_request_id})
        body["client_request_id"] = client_request_id
        return await self._send(method, path, json=body)

    async def register_terminal(self, code: str, name: Optional[str] = None,
                                type: Optional[str] = None) -> Dict[str, Any]:
        return await self._send("POST", "/api/v1/terminals/register",
                                json={"code": code, "name": name, "type": type})
