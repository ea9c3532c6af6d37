"""Async HTTP client for the NSX manager REST API.

Covers the four calls the PROVISION_NETWORK sub-stage needs:
  POST /api/v1/fabric/nodes                  -> register fabric node
  GET  /api/v1/fabric/nodes/{id}/state       -> fabric node state
  POST /api/v1/transport-nodes               -> create transport node
  GET  /api/v1/transport-nodes/{id}/state    -> transport node state

Auth is HTTP basic with the deployment's network-manager credentials.
The host thumbprint is read directly from the host's TLS endpoint.
"""

from __future__ import annotations

import hashlib
import logging
import ssl
from typing import Any

import httpx

from ..provisioning.network_models import (
    FabricNodeCreateSpec,
    NodeState,
    TransportNodeCreateSpec,
)

logger = logging.getLogger(__name__)


class NsxApiError(Exception):
    """Non-success response from the NSX manager."""

    def __init__(self, status_code: int, message: str = "", *, path: str = "") -> None:
        self.status_code = status_code
        self.message = message
        self.path = path
        super().__init__(f"NSX API error {status_code} on {path}: {message}")


def certificate_thumbprint(der_certificate: bytes) -> str:
    """SHA-256 fingerprint as colon-separated upper-case hex."""
    digest = hashlib.sha256(der_certificate).hexdigest().upper()
    return ":".join(digest[i:i + 2] for i in range(0, len(digest), 2))


class NsxClient:
    """NetworkController backed by the NSX manager REST API."""

    def __init__(
        self,
        *,
        address: str,
        username: str,
        password: str,
        http_client: httpx.AsyncClient | None = None,
        verify_tls: bool = False,
        timeout_seconds: float = 30.0,
    ) -> None:
        if not address:
            raise ValueError("address is required")
        if "://" not in address:
            address = f"https://{address}"
        self._base_url = address.rstrip("/")
        self._auth = httpx.BasicAuth(username, password)
        self._client = http_client or httpx.AsyncClient(verify=verify_tls)
        self._timeout = float(timeout_seconds)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
    ) -> dict[str, Any]:
        resp = await self._client.request(
            method,
            f"{self._base_url}{path}",
            json=json,
            auth=self._auth,
            headers={"Accept": "application/json"},
            timeout=self._timeout,
        )
        if resp.status_code >= 400:
            body = resp.text
            message = body[:200] if body else f"HTTP {resp.status_code}"
            try:
                payload = resp.json()
                if isinstance(payload, dict):
                    message = payload.get("error_message", message)
            except ValueError:
                pass
            raise NsxApiError(resp.status_code, message, path=path)
        payload = resp.json()
        if not isinstance(payload, dict):
            raise NsxApiError(resp.status_code, "expected a JSON object", path=path)
        return payload

    async def register_fabric_node(self, spec: FabricNodeCreateSpec) -> str:
        payload = await self._request(
            "POST", "/api/v1/fabric/nodes", json=spec.to_payload(),
        )
        node_id = payload["id"]
        logger.info("Fabric node registration accepted: id=%s", node_id)
        return node_id

    async def get_fabric_node_state(self, node_id: str) -> NodeState:
        payload = await self._request(
            "GET", f"/api/v1/fabric/nodes/{node_id}/state",
        )
        return NodeState.parse(payload["state"])

    async def create_transport_node(self, spec: TransportNodeCreateSpec) -> str:
        payload = await self._request(
            "POST", "/api/v1/transport-nodes", json=spec.to_payload(),
        )
        node_id = payload["id"]
        logger.info("Transport node creation accepted: id=%s", node_id)
        return node_id

    async def get_transport_node_state(self, node_id: str) -> NodeState:
        payload = await self._request(
            "GET", f"/api/v1/transport-nodes/{node_id}/state",
        )
        return NodeState.parse(payload["state"])

    def get_host_thumbprint(self, address: str, port: int) -> str:
        pem = ssl.get_server_certificate((address, port))
        return certificate_thumbprint(ssl.PEM_cert_to_DER_cert(pem))


class NsxClientFactory:
    """Builds one NsxClient per (manager address, credentials).

    Every client shares one connection pool. The factory creates it on first
    use unless ``http_client`` is injected, and ``aclose`` only closes a
    pool the factory created itself.
    """

    def __init__(
        self,
        *,
        verify_tls: bool = False,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._verify_tls = verify_tls
        self._http_client = http_client
        self._owns_client = http_client is None

    def _shared_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(verify=self._verify_tls)
        return self._http_client

    def create(self, address: str, username: str, password: str) -> NsxClient:
        return NsxClient(
            address=address,
            username=username,
            password=password,
            http_client=self._shared_client(),
        )

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
