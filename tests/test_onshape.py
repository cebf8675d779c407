"""Tests for the Onshape REST client."""

import json

import httpx
import pytest

from shapesmith.clients.onshape import OnshapeClient, OnshapeConfig

API = "https://onshape.test/api/v12"


def onshape_handler(requests: list[httpx.Request], fail_on: str | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        path = request.url.path

        if fail_on and fail_on in path:
            return httpx.Response(403, text='{"message": "Forbidden"}')
        if path.endswith("/documents"):
            return httpx.Response(200, json={"id": "doc123", "defaultWorkspace": {"id": "ws456"}})
        if "/blobelements/" in path:
            return httpx.Response(200, json={"id": "blob789"})
        if path.endswith("/import"):
            return httpx.Response(200, json={"id": "translation1"})
        return httpx.Response(404)

    return handler


def make_client(requests, fail_on=None) -> OnshapeClient:
    transport = httpx.MockTransport(onshape_handler(requests, fail_on))
    return OnshapeClient(
        OnshapeConfig(api_url=API, access_key="access", secret_key="secret"),
        http_client=httpx.AsyncClient(transport=transport),
    )


class TestOnshapeClient:
    """Tests for the document/blob/import sequence."""

    def test_requires_keys(self):
        with pytest.raises(ValueError, match="ONSHAPE_ACCESS_KEY"):
            OnshapeClient(OnshapeConfig(api_url=API))

    @pytest.mark.asyncio
    async def test_import_stl_success(self):
        requests: list[httpx.Request] = []
        client = make_client(requests)

        outcome = await client.import_stl("solid x\nendsolid x\n", "Test Cube")

        assert outcome.ok
        assert outcome.document_id == "doc123"
        assert outcome.url == "https://cad.onshape.com/documents/doc123"
        assert [r.url.path for r in requests] == [
            "/api/v12/documents",
            "/api/v12/blobelements/d/doc123/w/ws456",
            "/api/v12/partstudios/d/doc123/w/ws456/import",
        ]

        create_body = json.loads(requests[0].content)
        assert create_body == {"name": "Test Cube", "public": False}

        assert requests[1].url.params["encodedFilename"] == "model.stl"
        assert b"solid x" in requests[1].content

        import_body = json.loads(requests[2].content)
        assert import_body == {
            "format": "STL",
            "blobElementId": "blob789",
            "importIntoPartStudio": True,
            "createNewPartStudio": False,
        }

        assert all(r.headers["authorization"].startswith("Basic ") for r in requests)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_failed_import_is_reported(self):
        requests: list[httpx.Request] = []
        client = make_client(requests, fail_on="/import")

        outcome = await client.import_stl("solid x\nendsolid x\n", "Test Cube")

        assert not outcome.ok
        assert outcome.document_id == "doc123"
        assert "403" in outcome.error
        assert "Failed to create 3D model 'Test Cube'" in outcome.render()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_failed_document_creation(self):
        requests: list[httpx.Request] = []
        client = make_client(requests, fail_on="/documents")

        outcome = await client.import_stl("solid x\nendsolid x\n", "Test Cube")

        assert not outcome.ok
        assert outcome.document_id is None
        assert outcome.url is None
        # Nothing is retried
        assert len(requests) == 1
        await client.aclose()
