"""Unit tests for CloudStoreClient with a mocked httpx client."""

from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest

from deployer.app.clients.cloud_store import (
    CloudStoreClient,
    CloudStoreError,
    CloudStoreNotFoundError,
)


def _make_client(response: httpx.Response) -> tuple[CloudStoreClient, AsyncMock]:
    mock_http = AsyncMock()
    mock_http.request = AsyncMock(return_value=response)
    client = CloudStoreClient(
        base_url="http://cloudstore:19000/", http_client=mock_http,
    )
    return client, mock_http


@pytest.mark.asyncio
async def test_get_returns_document():
    client, mock_http = _make_client(
        httpx.Response(200, json={"hostAddress": "10.0.0.5", "state": "CREATING"})
    )

    doc = await client.get("/cloudstore/hosts/host-1")

    assert doc["hostAddress"] == "10.0.0.5"
    call = mock_http.request.call_args
    assert call.args == ("GET", "http://cloudstore:19000/cloudstore/hosts/host-1")
    assert call.kwargs["timeout"] == 30.0


@pytest.mark.asyncio
async def test_patch_sends_field_merge():
    client, mock_http = _make_client(httpx.Response(200, json={"state": "READY"}))

    result = await client.patch("/cloudstore/hosts/host-1", {"state": "READY"})

    assert result == {"state": "READY"}
    call = mock_http.request.call_args
    assert call.args[0] == "PATCH"
    assert call.kwargs["json"] == {"state": "READY"}


@pytest.mark.asyncio
async def test_patch_with_empty_body_returns_empty_dict():
    client, _ = _make_client(httpx.Response(204))

    assert await client.patch("/cloudstore/hosts/host-1", {"state": "READY"}) == {}


@pytest.mark.asyncio
async def test_missing_document_raises_not_found():
    client, _ = _make_client(httpx.Response(404, json={"message": "no such host"}))

    with pytest.raises(CloudStoreNotFoundError) as exc_info:
        await client.get("/cloudstore/hosts/missing")

    assert exc_info.value.status_code == 404
    assert exc_info.value.ref == "/cloudstore/hosts/missing"
    assert exc_info.value.message == "no such host"


@pytest.mark.asyncio
async def test_server_error_raises_with_body_excerpt():
    client, _ = _make_client(httpx.Response(503, text="store overloaded"))

    with pytest.raises(CloudStoreError) as exc_info:
        await client.patch("/cloudstore/hosts/host-1", {"state": "READY"})

    assert exc_info.value.status_code == 503
    assert "store overloaded" in str(exc_info.value)


@pytest.mark.asyncio
async def test_non_object_document_is_rejected():
    client, _ = _make_client(httpx.Response(200, json=["not", "a", "document"]))

    with pytest.raises(CloudStoreError, match="expected a JSON document"):
        await client.get("/cloudstore/hosts/host-1")


def test_base_url_is_required():
    with pytest.raises(ValueError, match="base_url"):
        CloudStoreClient(base_url="")
