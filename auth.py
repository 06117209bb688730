import asyncio
import base64
import hashlib
import hmac
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode, urlsplit

from fastapi import HTTPException, Request
from pydantic import ValidationError as PydanticValidationError

from config import Config
from database import OAuthAccessToken, OAuthClient
from errors import (
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    UnsupportedGrantTypeError,
)
from models import (
    GRANT_TYPE_AUTHORIZATION_CODE,
    AuthorizationParams,
    AuthorizationServerMetadata,
    ClientRegistrationRequest,
    ClientRegistrationResponse,
    ProtectedResourceMetadata,
    TokenRequest,
    TokenResponse,
)
from stores import (
    AuthorizationRequestRecord,
    ClientRegistry,
    CodeStore,
    TokenStore,
    hash_secret,
    secrets_match,
)

logger = logging.getLogger(__name__)


def compute_code_challenge(code_verifier: str) -> str:
    """S256: base64url(sha256(verifier)) without padding"""
    digest = hashlib.sha256(code_verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


def verify_pkce(code_verifier: str, code_challenge: str) -> bool:
    """Verify PKCE code challenge using constant-time comparison"""
    return hmac.compare_digest(compute_code_challenge(code_verifier).encode(), code_challenge.encode())


def build_redirect_uri(redirect_uri: str, **params: Optional[str]) -> str:
    """Append query parameters, dropping absent or empty ones"""
    query = urlencode({key: value for key, value in params.items() if value})
    if not query:
        return redirect_uri
    if redirect_uri.endswith(("?", "&")):
        return f"{redirect_uri}{query}"
    separator = "&" if urlsplit(redirect_uri).query else "?"
    return f"{redirect_uri}{separator}{query}"


def describe_validation_error(error: PydanticValidationError) -> str:
    fields = sorted({str(item["loc"][0]) for item in error.errors() if item.get("loc")})
    if not fields:
        return "The request is malformed."
    return f"Missing or invalid parameter(s): {', '.join(fields)}."


class AuthManager:
    """
    OAuth 2.1 authorization server: dynamic client registration, the
    consent-driven authorization endpoint and the token endpoint.
    """

    def __init__(
        self,
        config: Config,
        clients: ClientRegistry,
        codes: CodeStore,
        tokens: TokenStore,
        clock=time.time,
    ):
        self.config = config
        self.clients = clients
        self.codes = codes
        self.tokens = tokens
        self._clock = clock

    # Discovery
    def get_protected_resource_metadata(self) -> ProtectedResourceMetadata:
        return ProtectedResourceMetadata(
            resource=self.config.resource_url,
            authorization_server=self.config.endpoint("/.well-known/oauth-authorization-server"),
        )

    def get_authorization_server_metadata(self) -> AuthorizationServerMetadata:
        return AuthorizationServerMetadata(
            issuer=self.config.base_url,
            authorization_endpoint=self.config.endpoint("/oauth/authorize"),
            token_endpoint=self.config.endpoint("/oauth/token"),
            registration_endpoint=self.config.endpoint("/oauth/register"),
        )

    # Dynamic Client Registration
    async def register_client(self, registration: ClientRegistrationRequest) -> ClientRegistrationResponse:
        """Register a client; the plaintext secret is only ever in this response"""
        client, client_secret = await asyncio.to_thread(
            self.clients.register, registration.client_name, registration.redirect_uris
        )
        return ClientRegistrationResponse(
            client_id=client.id,
            client_secret=client_secret,
            client_name=client.name,
            redirect_uris=client.redirect_uris,
        )

    # Authorization endpoint
    async def validate_authorization_request(self, params: AuthorizationParams) -> OAuthClient:
        """
        Resolve the client and pin the redirect URI.

        Errors are reported to the browser rather than redirected, since the
        redirect URI has not been proven to belong to the client.
        """
        client = await asyncio.to_thread(self.clients.get, params.client_id)
        if not client:
            logger.warning(f"Authorization request for unknown client {params.client_id}")
            raise InvalidRequestError("Unknown client.")

        if not client.redirect_uri_allowed(params.redirect_uri):
            logger.warning(f"Authorization request with unregistered redirect_uri for client {client.id}")
            raise InvalidRequestError("Invalid redirect URI.")

        return client

    async def approve_authorization(self, params: AuthorizationParams, user_id: str) -> str:
        """Mint an authorization code for the consenting user and return the redirect URL"""
        client = await self.validate_authorization_request(params)

        record = AuthorizationRequestRecord(
            client_id=client.id,
            user_id=user_id,
            redirect_uri=params.redirect_uri,
            code_challenge=params.code_challenge,
            code_challenge_method=params.code_challenge_method,
        )
        code = await self.codes.put(record, self.config.oauth_code_expiry)

        logger.info(f"Authorization code created for client {client.id} (user {user_id})")
        return build_redirect_uri(params.redirect_uri, code=code, state=params.state)

    async def deny_authorization(self, params: AuthorizationParams) -> str:
        client = await self.validate_authorization_request(params)
        logger.info(f"Authorization denied for client {client.id}")
        return build_redirect_uri(params.redirect_uri, error="access_denied", state=params.state)

    # Token endpoint
    def parse_token_request(self, form_data: Dict[str, Any]) -> TokenRequest:
        grant_type = form_data.get("grant_type")
        if grant_type and grant_type != GRANT_TYPE_AUTHORIZATION_CODE:
            raise UnsupportedGrantTypeError("Only the authorization_code grant is supported.")
        try:
            return TokenRequest(**form_data)
        except PydanticValidationError as e:
            raise InvalidRequestError(describe_validation_error(e))

    async def authenticate_client(self, client_id: str, client_secret: Optional[str]) -> OAuthClient:
        """
        Resolve and authenticate the client.

        Unknown client and wrong secret produce the same error.
        """
        client = await asyncio.to_thread(self.clients.get, client_id)
        if not client:
            logger.warning(f"Token request for unknown client {client_id}")
            raise InvalidClientError("Client authentication failed.")

        if client.secret_hash:
            if not client_secret or not secrets_match(client.secret_hash, client_secret):
                logger.warning(f"Client authentication failed for {client_id}")
                raise InvalidClientError("Client authentication failed.")

        return client

    async def exchange_code_for_token(self, form_data: Dict[str, Any]) -> TokenResponse:
        """
        Exchange authorization code for access token with PKCE verification.

        The code is consumed before any binding checks run and is never
        restored, so a failed exchange means the authorization must be redone.
        """
        token_request = self.parse_token_request(form_data)
        client = await self.authenticate_client(token_request.client_id, token_request.client_secret)

        record = await self.codes.take(token_request.code)
        if record is None:
            logger.warning(f"Invalid, expired or reused authorization code presented by {client.id}")
            raise InvalidGrantError("Authorization code is invalid or expired.")

        client_matches = hmac.compare_digest(record.client_id.encode(), token_request.client_id.encode())
        redirect_matches = hmac.compare_digest(record.redirect_uri.encode(), token_request.redirect_uri.encode())
        if not (client_matches and redirect_matches):
            logger.warning(f"Authorization code binding mismatch for client {client.id}")
            raise InvalidGrantError("Client or redirect URI mismatch.")

        if not verify_pkce(token_request.code_verifier, record.code_challenge):
            logger.warning(f"PKCE verification failed for client {client.id}")
            raise InvalidGrantError("PKCE verification failed.")

        access_token, token = await asyncio.to_thread(
            self.tokens.mint, record.client_id, record.user_id, self.config.oauth_token_expiry
        )

        logger.info(f"Access token {token.id} issued for client {record.client_id} (user {record.user_id})")
        return TokenResponse(
            access_token=access_token,
            token_type="bearer",
            expires_in=self.config.oauth_token_expiry,
        )

    # Resource server side
    async def verify_token(self, token: str) -> Optional[OAuthAccessToken]:
        """Verify a bearer token and return its record if it is live"""
        if not token:
            return None

        record = await asyncio.to_thread(self.tokens.lookup, hash_secret(token))
        if record is None or record.is_expired(self._clock()):
            return None

        return record

    async def cleanup_expired_tokens(self):
        """Background task to clean up expired tokens and codes"""
        while True:
            try:
                expired_codes = await self.codes.purge_expired()
                expired_tokens = await asyncio.to_thread(self.tokens.purge_expired)

                if expired_codes or expired_tokens:
                    logger.info(f"Cleaned up {expired_codes} codes, {expired_tokens} tokens")

                await asyncio.sleep(self.config.cleanup_interval)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in cleanup task: {e}")
                await asyncio.sleep(60)  # Wait 1 minute on error


class BearerAuth:
    """
    FastAPI dependency guarding resource endpoints.

    Accepts the static MCP_API_KEY or a live OAuth access token and enforces
    the optional IP allowlist.
    """

    def __init__(self, auth_manager: AuthManager):
        self.auth_manager = auth_manager
        self.config = auth_manager.config

    def _unauthorized(self, error: str, message: str) -> HTTPException:
        return HTTPException(
            status_code=401,
            detail={"error": error, "message": message},
            headers={
                "WWW-Authenticate": f'Bearer resource_metadata="{self.config.resource_metadata_url}"'
            },
        )

    async def __call__(self, request: Request) -> Dict[str, Any]:
        client_ip = request.client.host if request.client else None
        allowed_ips = self.config.mcp_allowed_ips
        if allowed_ips and client_ip not in allowed_ips:
            logger.warning(f"Resource access denied, IP not in allowlist: {client_ip}")
            raise HTTPException(status_code=403, detail={"error": "forbidden", "message": "Forbidden"})

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            raise self._unauthorized("unauthorized", "Authentication required")

        token = auth_header[len("Bearer "):]
        if not token:
            raise self._unauthorized("unauthorized", "Authentication required")

        api_key = self.config.mcp_api_key
        if api_key and hmac.compare_digest(api_key.encode(), token.encode()):
            logger.info(f"Resource request authenticated via API key from {client_ip}")
            return {"auth_type": "api_key"}

        record = await self.auth_manager.verify_token(token)
        if record is None:
            logger.warning(f"Resource authentication failed from {client_ip}")
            raise self._unauthorized("invalid_token", "Invalid or expired token")

        logger.info(f"Resource request authenticated via OAuth for user {record.user_id}")
        return {
            "auth_type": "oauth",
            "client_id": record.client_id,
            "user_id": record.user_id,
            "expires_at": record.expires_at,
        }
