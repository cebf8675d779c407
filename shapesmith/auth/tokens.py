"""Verification of Cognito-issued bearer access tokens."""

from typing import Any

import httpx
import jwt
from pydantic import BaseModel, ConfigDict

from shapesmith.config import Settings
from shapesmith.errors import AuthError
from shapesmith.utils.logging import get_logger

logger = get_logger(__name__)


class TokenClaims(BaseModel):
    """Verified claims of an access token. Lives for one request only."""

    model_config = ConfigDict(extra="allow")

    iss: str
    sub: str | None = None
    client_id: str | None = None
    token_use: str | None = None
    scope: str | None = None
    exp: float | None = None


def extract_bearer_token(authorization: str | None) -> str | None:
    """Return the token of an ``Authorization: Bearer <token>`` header, if present and non-empty."""
    if not authorization or not authorization.startswith("Bearer "):
        return None

    token = authorization[len("Bearer ") :].strip()
    return token or None


class CognitoTokenVerifier:
    """Verifies RS256 access tokens against the issuer's published key set.

    The key set is fetched on every verification; nothing about a token or
    its keys is cached between requests.
    """

    def __init__(
        self,
        issuer: str,
        client_id: str | None,
        jwks_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        algorithms: tuple[str, ...] = ("RS256",),
    ):
        """Initialize the verifier.

        Args:
            issuer: Expected ``iss`` claim
            client_id: Expected ``client_id`` claim
            jwks_url: Key set location (defaults to the issuer's well-known path)
            http_client: Optional client used to fetch the key set
            algorithms: Accepted signature algorithms
        """
        self.issuer = issuer
        self.client_id = client_id
        self.jwks_url = jwks_url or f"{issuer}/.well-known/jwks.json"
        self.algorithms = list(algorithms)
        self._http = http_client

    @classmethod
    def from_settings(cls, settings: Settings) -> "CognitoTokenVerifier":
        """Build a verifier from application settings."""
        return cls(issuer=settings.issuer, client_id=settings.cognito_client_id, jwks_url=settings.jwks_url)

    async def _fetch_jwks(self) -> dict[str, Any]:
        if self._http is not None:
            response = await self._http.get(self.jwks_url)
        else:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.get(self.jwks_url)
        response.raise_for_status()
        return response.json()

    async def verify(self, token: str) -> TokenClaims:
        """Verify signature and claims of ``token``.

        Raises:
            AuthError: For any failure; callers must not reveal which check failed
        """
        try:
            return await self._verify(token)
        except AuthError:
            raise
        except Exception as e:
            # Malformed key sets and claims reject the token like any other failure
            raise AuthError(f"Token validation error: {e}") from e

    async def _verify(self, token: str) -> TokenClaims:
        header = jwt.get_unverified_header(token)
        kid = header.get("kid")
        if not kid:
            raise AuthError("Token header has no key id")

        jwks = await self._fetch_jwks()
        jwk_data = next((key for key in jwks.get("keys", []) if key.get("kid") == kid), None)
        if jwk_data is None:
            raise AuthError(f"No published key matches kid {kid}")

        signing_key = jwt.PyJWK(jwk_data)
        payload = jwt.decode(
            token,
            signing_key.key,
            algorithms=self.algorithms,
            issuer=self.issuer,
            options={"verify_aud": False, "require": ["exp", "iss"]},
        )

        # Cognito access tokens carry the client in client_id, not aud
        if payload.get("token_use") != "access":
            raise AuthError(f"Invalid token_use: {payload.get('token_use')}, expected: access")

        if payload.get("client_id") != self.client_id:
            raise AuthError(f"Invalid client_id: {payload.get('client_id')}, expected: {self.client_id}")

        return TokenClaims.model_validate(payload)
