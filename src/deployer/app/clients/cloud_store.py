"""Async HTTP client for the cloud document store.

Documents are addressed by their self link (``/cloudstore/hosts/<id>``);
``get`` returns the JSON document and ``patch`` sends a field-level merge.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


class CloudStoreError(Exception):
    """Base error for document-store requests."""

    def __init__(self, status_code: int, message: str = "", *, ref: str = "") -> None:
        self.status_code = status_code
        self.message = message
        self.ref = ref
        super().__init__(f"Cloud store error {status_code} for {ref}: {message}")


class CloudStoreNotFoundError(CloudStoreError):
    """Document not found (404)."""

    def __init__(self, ref: str, message: str = "Document not found") -> None:
        super().__init__(404, message, ref=ref)


class CloudStoreClient:
    """Typed get/patch of documents held by the cloud store."""

    def __init__(
        self,
        *,
        base_url: str,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self._base_url = base_url.rstrip("/")
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)

    def _url(self, ref: str) -> str:
        return f"{self._base_url}/{ref.lstrip('/')}"

    def _raise_for_status(self, resp: httpx.Response, ref: str) -> None:
        if resp.status_code < 400:
            return

        body = resp.text
        message = body[:200] if body else f"HTTP {resp.status_code}"
        try:
            payload = resp.json()
            if isinstance(payload, dict):
                message = payload.get("message", message)
        except ValueError:
            pass

        if resp.status_code == 404:
            raise CloudStoreNotFoundError(ref, message)
        raise CloudStoreError(resp.status_code, message, ref=ref)

    async def get(self, ref: str) -> dict[str, Any]:
        resp = await self._client.request(
            "GET", self._url(ref), timeout=self._timeout,
        )
        self._raise_for_status(resp, ref)
        payload = resp.json()
        if not isinstance(payload, dict):
            raise CloudStoreError(500, "expected a JSON document", ref=ref)
        return payload

    async def patch(self, ref: str, data: dict[str, Any]) -> dict[str, Any]:
        resp = await self._client.request(
            "PATCH", self._url(ref), json=data, timeout=self._timeout,
        )
        self._raise_for_status(resp, ref)
        logger.info(
            "Document patched: ref=%s fields=%s",
            ref,
            sorted(data),
            extra={"ref": ref},
        )
        if not resp.content:
            return {}
        payload = resp.json()
        return payload if isinstance(payload, dict) else {}
