"""
Keycloak Service for identity verification.
Handles authorization URL generation, code exchange, ID token verification
and attribute lookup through the admin API.
"""

import asyncio
import time
from typing import Any
from urllib.parse import urlencode

import httpx
import jwt
from jwt import PyJWKClient

from idlink.config import settings
from idlink.infrastructure.observability.logging import get_logger, preview
from idlink.models.domain.errors import ExternalProviderError
from idlink.models.domain.verification_domain import SubjectProfile, VerifiedIdentity

logger = get_logger(__name__)

OIDC_SCOPES = ["openid", "profile", "email"]
ID_TOKEN_ALGORITHMS = ["RS256", "ES256"]

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 10  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2  # 2, 4 seconds
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
ADMIN_TOKEN_LEEWAY = 30  # seconds


class KeycloakService:
    """
    Service for Keycloak OIDC operations.

    The member-facing flow uses the OIDC client (authorization code grant);
    attribute lookups use a separate service-account client (client
    credentials grant) against the admin REST API.
    """

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        jwk_client: PyJWKClient | None = None,
    ):
        self.client_id = settings.KEYCLOAK_OIDC_CLIENT_ID
        self.client_secret = settings.KEYCLOAK_OIDC_CLIENT_SECRET
        self.admin_client_id = settings.KEYCLOAK_ADMIN_CLIENT_ID
        self.admin_client_secret = settings.KEYCLOAK_ADMIN_CLIENT_SECRET
        self.redirect_uri = settings.oauth_redirect_uri()
        self.issuer = settings.keycloak_realm_url()
        self._transport = transport
        self._jwk_client = jwk_client
        self._admin_token: str | None = None
        self._admin_token_expires_at = 0.0

    def _validate_config(self) -> None:
        """Validate Keycloak configuration."""
        if not self.client_id:
            raise ExternalProviderError("KEYCLOAK_OIDC_CLIENT_ID not configured", "config_error")
        if not self.client_secret:
            raise ExternalProviderError(
                "KEYCLOAK_OIDC_CLIENT_SECRET not configured", "config_error"
            )

    def _validate_admin_config(self) -> None:
        if not self.admin_client_id or not self.admin_client_secret:
            raise ExternalProviderError("Keycloak admin client not configured", "config_error")

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=REQUEST_TIMEOUT, transport=self._transport)

    def _jwks(self) -> PyJWKClient:
        if self._jwk_client is None:
            self._jwk_client = PyJWKClient(settings.keycloak_jwks_url())
        return self._jwk_client

    async def _request_with_retry(
        self, method: str, url: str, operation: str, **kwargs: Any
    ) -> httpx.Response:
        """
        Perform a request with retry/backoff handling.

        Args:
            method: HTTP method
            url: Target URL
            operation: Operation name for logging context
        """
        last_error: Exception | None = None

        async with self._http_client() as client:
            for attempt in range(1, MAX_RETRIES + 1):
                try:
                    response = await client.request(method, url, **kwargs)

                    if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                        wait_time = BACKOFF_FACTOR**attempt
                        logger.warning(
                            "Keycloak transient status",
                            operation=operation,
                            status_code=response.status_code,
                            attempt=attempt,
                            wait_time=wait_time,
                        )
                        await asyncio.sleep(wait_time)
                        continue

                    return response

                except httpx.RequestError as exc:
                    last_error = exc

                    if attempt == MAX_RETRIES:
                        raise

                    wait_time = BACKOFF_FACTOR**attempt
                    logger.warning(
                        "Keycloak request error, retrying",
                        operation=operation,
                        attempt=attempt,
                        wait_time=wait_time,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    await asyncio.sleep(wait_time)

        if last_error:
            raise last_error
        raise ExternalProviderError(f"{operation} failed: Unknown error")

    def build_authorization_url(self, state: str) -> str:
        """
        Generate the Keycloak authorization URL for a verification session.

        Args:
            state: Provider state parameter (session token + oauth state)
        """
        self._validate_config()
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(OIDC_SCOPES),
            "response_type": "code",
            "state": state,
        }
        url = f"{settings.keycloak_authorize_url()}?{urlencode(params)}"

        logger.info(
            "Authorization URL generated",
            state_preview=preview(state),
            url_length=len(url),
        )
        return url

    async def exchange_code(self, authorization_code: str) -> VerifiedIdentity:
        """
        Exchange an authorization code for the verified identity.

        Args:
            authorization_code: Authorization code from the OAuth callback

        Returns:
            VerifiedIdentity: subject id from the verified ID token plus the
            user's attributes

        Raises:
            ExternalProviderError: on network, protocol or signature failures
        """
        self._validate_config()
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": authorization_code,
            "grant_type": "authorization_code",
            "redirect_uri": self.redirect_uri,
        }

        logger.info("Exchanging authorization code", code_preview=preview(authorization_code))

        try:
            response = await self._request_with_retry(
                "POST", settings.keycloak_token_url(), "code_exchange", data=data
            )
        except httpx.RequestError as e:
            logger.error(
                "Network error during code exchange",
                code_preview=preview(authorization_code),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ExternalProviderError(f"Network error during code exchange: {e}") from e

        token_data = self._handle_token_response(response, "code_exchange")
        id_token = token_data.get("id_token")
        if not id_token:
            raise ExternalProviderError("Token response did not include an ID token")

        claims = await self._verify_id_token(id_token)
        subject_id = claims.get("sub")
        if not subject_id:
            raise ExternalProviderError("ID token has no subject")

        attributes = await self.fetch_attributes(subject_id)
        logger.info(
            "Identity verified by Keycloak",
            subject_id=subject_id,
            attribute_names=sorted(attributes.keys()),
        )
        return VerifiedIdentity(subject_id=subject_id, attributes=attributes)

    async def _verify_id_token(self, id_token: str) -> dict:
        try:
            # PyJWKClient fetches keys with blocking I/O
            signing_key = await asyncio.to_thread(self._jwks().get_signing_key_from_jwt, id_token)
            return jwt.decode(
                id_token,
                signing_key.key,
                algorithms=ID_TOKEN_ALGORITHMS,
                audience=self.client_id,
                issuer=self.issuer,
                options={"verify_exp": True},
            )
        except jwt.PyJWTError as e:
            logger.error("ID token verification failed", error=str(e), error_type=type(e).__name__)
            raise ExternalProviderError(f"Invalid ID token: {e}", "invalid_id_token") from e

    def _handle_token_response(self, response: httpx.Response, operation: str) -> dict:
        """Parse a token endpoint response, raising on any error payload."""
        if not response.is_success:
            try:
                error_data = response.json()
            except ValueError:
                logger.error(
                    f"Keycloak {operation} failed with non-JSON response",
                    status_code=response.status_code,
                    response_text=response.text[:200],
                )
                raise ExternalProviderError(
                    f"Keycloak service error (HTTP {response.status_code})"
                ) from None

            error_code = error_data.get("error", "unknown_error")
            logger.error(
                f"Keycloak {operation} failed",
                status_code=response.status_code,
                error_code=error_code,
                error_description=error_data.get("error_description", "No description provided"),
            )
            raise ExternalProviderError(
                self._map_keycloak_error(error_code),
                error_code=error_code,
                response_data=error_data,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ExternalProviderError(f"Failed to parse Keycloak response: {e}") from e

    def _map_keycloak_error(self, error_code: str) -> str:
        error_messages = {
            "access_denied": "Sign-in was cancelled. Please open your verification link again.",
            "invalid_grant": "Sign-in expired. Please open your verification link again.",
            "invalid_client": "Verification is misconfigured. Please contact an administrator.",
            "unauthorized_client": "Verification is misconfigured. Please contact an administrator.",
        }
        return error_messages.get(
            error_code, f"Identity provider error ({error_code}). Please try again."
        )

    async def _get_admin_token(self) -> str:
        """Service-account token for the admin API, cached until shortly before expiry."""
        if self._admin_token and time.monotonic() < self._admin_token_expires_at:
            return self._admin_token

        self._validate_admin_config()
        data = {
            "client_id": self.admin_client_id,
            "client_secret": self.admin_client_secret,
            "grant_type": "client_credentials",
        }
        try:
            response = await self._request_with_retry(
                "POST", settings.keycloak_token_url(), "admin_token", data=data
            )
        except httpx.RequestError as e:
            raise ExternalProviderError(f"Network error fetching admin token: {e}") from e

        token_data = self._handle_token_response(response, "admin_token")
        access_token = token_data.get("access_token")
        if not access_token:
            raise ExternalProviderError("Admin token response did not include an access token")

        expires_in = int(token_data.get("expires_in", 60))
        self._admin_token = access_token
        self._admin_token_expires_at = time.monotonic() + max(expires_in - ADMIN_TOKEN_LEEWAY, 0)
        return access_token

    async def fetch_user(self, subject_id: str) -> dict[str, Any]:
        """
        Fetch a user representation from the admin API.

        Raises:
            ExternalProviderError: user missing or API unavailable
        """
        token = await self._get_admin_token()
        url = f"{settings.keycloak_admin_users_url()}/{subject_id}"

        try:
            response = await self._request_with_retry(
                "GET", url, "fetch_user", headers={"Authorization": f"Bearer {token}"}
            )
        except httpx.RequestError as e:
            logger.error("Network error fetching user", subject_id=subject_id, error=str(e))
            raise ExternalProviderError(f"Network error fetching user: {e}") from e

        if response.status_code == 404:
            raise ExternalProviderError(
                f"User {subject_id} does not exist in Keycloak", "subject_not_found"
            )
        if response.status_code == 401:
            # cached token was revoked early
            self._admin_token = None
        if not response.is_success:
            logger.error(
                "Keycloak user lookup failed",
                subject_id=subject_id,
                status_code=response.status_code,
            )
            raise ExternalProviderError(f"User lookup failed (HTTP {response.status_code})")

        try:
            user = response.json()
        except ValueError as e:
            raise ExternalProviderError(f"Failed to parse user representation: {e}") from e

        return user

    async def fetch_attributes(self, subject_id: str) -> dict[str, Any]:
        user = await self.fetch_user(subject_id)
        return user.get("attributes") or {}

    async def fetch_profile(self, subject_id: str) -> SubjectProfile:
        """
        Username, full name and email of a user.

        Raises:
            ExternalProviderError: user missing or API unavailable
        """
        user = await self.fetch_user(subject_id)
        full_name = " ".join(
            part for part in (user.get("firstName"), user.get("lastName")) if part
        )
        return SubjectProfile(
            subject_id=subject_id,
            username=user.get("username"),
            full_name=full_name or None,
            email=user.get("email"),
        )


# Singleton instance for application use
keycloak_service = KeycloakService()
