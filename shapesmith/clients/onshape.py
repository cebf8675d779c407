"""Onshape REST client for creating documents from STL meshes."""

from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from shapesmith.config import Settings
from shapesmith.errors import CadServiceError
from shapesmith.models.tools import ImportOutcome
from shapesmith.utils.logging import get_logger

logger = get_logger(__name__)

ONSHAPE_DOCUMENT_URL = "https://cad.onshape.com/documents/{document_id}"


@dataclass
class OnshapeConfig:
    """Configuration for the Onshape API client."""

    api_url: str = "https://cad.onshape.com/api/v12"
    access_key: str = ""
    secret_key: str = ""
    timeout: float = 60.0


class OnshapeClient:
    """Thin async client for the Onshape document, blob and import endpoints.

    Create requests are not retried: a retried document creation would leave a
    duplicate document behind.
    """

    def __init__(self, config: OnshapeConfig, http_client: httpx.AsyncClient | None = None):
        """Initialize Onshape client.

        Args:
            config: API location and key pair
            http_client: Optional pre-built client (tests pass a mock transport)
        """
        if not config.access_key or not config.secret_key:
            raise ValueError(
                "Onshape API keys not set. Please set ONSHAPE_ACCESS_KEY and ONSHAPE_SECRET_KEY environment variables."
            )

        self.config = config
        self._http = http_client or httpx.AsyncClient(timeout=config.timeout)
        self._auth = httpx.BasicAuth(config.access_key, config.secret_key)

    @classmethod
    def from_settings(cls, settings: Settings) -> "OnshapeClient":
        """Build a client from application settings."""
        return cls(
            OnshapeConfig(
                api_url=settings.onshape_api_url,
                access_key=settings.onshape_access_key or "",
                secret_key=settings.onshape_secret_key or "",
            )
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._http.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self.config.api_url}{path}"
        logger.debug(f"Onshape {method} {path}")

        response = await self._http.request(
            method,
            url,
            json=json,
            files=files,
            auth=self._auth,
            headers={"Accept": "application/json"},
        )
        if response.is_error:
            raise CadServiceError(
                f"Onshape API Error {response.status_code}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        return response.json() if response.content else {}

    async def create_document(self, name: str) -> dict[str, Any]:
        """Create a private document and return its JSON description."""
        return await self._request("POST", "/documents", json={"name": name, "public": False})

    async def upload_blob(self, document_id: str, workspace_id: str, content: str, filename: str) -> dict[str, Any]:
        """Upload a file as a blob element of the workspace."""
        return await self._request(
            "POST",
            f"/blobelements/d/{document_id}/w/{workspace_id}?encodedFilename={quote(filename, safe='')}",
            files={"file": (filename, content.encode(), "application/octet-stream")},
        )

    async def import_into_part_studio(
        self, document_id: str, workspace_id: str, blob_element_id: str, create_new_part_studio: bool = False
    ) -> dict[str, Any]:
        """Translate an uploaded STL blob into parts."""
        return await self._request(
            "POST",
            f"/partstudios/d/{document_id}/w/{workspace_id}/import",
            json={
                "format": "STL",
                "blobElementId": blob_element_id,
                "importIntoPartStudio": True,
                "createNewPartStudio": create_new_part_studio,
            },
        )

    async def import_stl(
        self,
        stl: str,
        document_name: str,
        filename: str = "model.stl",
        create_new_part_studio: bool = False,
    ) -> ImportOutcome:
        """Create a document and import an ASCII STL mesh into it.

        Failures at any step are reported as a failure outcome carrying the
        document id if one was already created.
        """
        document_id: str | None = None
        try:
            document = await self.create_document(document_name)
            document_id = document["id"]
            workspace_id = document["defaultWorkspace"]["id"]

            blob = await self.upload_blob(document_id, workspace_id, stl, filename)
            await self.import_into_part_studio(document_id, workspace_id, blob["id"], create_new_part_studio)

        except (CadServiceError, httpx.HTTPError, KeyError) as e:
            logger.error(f"Onshape import of '{document_name}' failed: {e}")
            return ImportOutcome(
                status="failure",
                document_name=document_name,
                document_id=document_id,
                url=ONSHAPE_DOCUMENT_URL.format(document_id=document_id) if document_id else None,
                error=str(e),
            )

        logger.info(f"Imported STL into Onshape document {document_id} ('{document_name}')")
        return ImportOutcome(
            status="success",
            document_name=document_name,
            document_id=document_id,
            url=ONSHAPE_DOCUMENT_URL.format(document_id=document_id),
        )
