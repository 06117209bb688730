import uuid
from typing import Annotated, Dict, List, Literal, Optional
from urllib.parse import urlsplit

from pydantic import AfterValidator, BaseModel, Field, field_validator

# The only values this server accepts for each protocol switch
RESPONSE_TYPE_CODE = "code"
GRANT_TYPE_AUTHORIZATION_CODE = "authorization_code"
CODE_CHALLENGE_METHOD_S256 = "S256"
TOKEN_ENDPOINT_AUTH_METHOD = "client_secret_post"


def validate_redirect_uri(uri: str) -> str:
    """Require an absolute URI with scheme and authority and no fragment"""
    if not isinstance(uri, str) or not uri:
        raise ValueError("Redirect URI must be a non-empty string")
    try:
        parts = urlsplit(uri)
    except ValueError:
        raise ValueError(f"Invalid redirect URI: {uri}")
    if not parts.scheme or not parts.netloc:
        raise ValueError(f"Redirect URI must be absolute: {uri}")
    if parts.fragment:
        raise ValueError(f"Redirect URI must not contain a fragment: {uri}")
    return uri


def validate_client_id(value: str) -> str:
    try:
        uuid.UUID(value)
    except (TypeError, ValueError):
        raise ValueError("client_id must be a UUID")
    return value


def _required_text(value: str) -> str:
    if not value:
        raise ValueError("Field is required")
    return value


ClientId = Annotated[str, AfterValidator(validate_client_id)]
RedirectUri = Annotated[str, AfterValidator(validate_redirect_uri)]
RequiredText = Annotated[str, AfterValidator(_required_text)]


# Dynamic Client Registration
class ClientRegistrationRequest(BaseModel):
    """OAuth 2.1 Dynamic Client Registration Request"""
    client_name: str = Field(..., max_length=255, description="Human-readable client name")
    redirect_uris: List[str] = Field(..., min_length=1, description="Array of redirection URI strings")

    @field_validator("client_name")
    @classmethod
    def validate_client_name(cls, v):
        if not v.strip():
            raise ValueError("client_name must not be empty")
        return v

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v):
        return [validate_redirect_uri(uri) for uri in v]


class ClientRegistrationResponse(BaseModel):
    """OAuth 2.1 Dynamic Client Registration Response"""
    client_id: str
    client_secret: str
    client_name: str
    redirect_uris: List[str]


# Authorization endpoint
class AuthorizationParams(BaseModel):
    """Parameters shared by the consent page and the consent decision"""
    client_id: ClientId
    redirect_uri: RedirectUri
    code_challenge: RequiredText
    code_challenge_method: str
    state: Optional[str] = None

    @field_validator("code_challenge_method")
    @classmethod
    def validate_code_challenge_method(cls, v):
        if v != CODE_CHALLENGE_METHOD_S256:
            raise ValueError("code_challenge_method must be S256")
        return v


class AuthorizationRequest(AuthorizationParams):
    """GET /oauth/authorize query"""
    response_type: str

    @field_validator("response_type")
    @classmethod
    def validate_response_type(cls, v):
        if v != RESPONSE_TYPE_CODE:
            raise ValueError("response_type must be code")
        return v


class ConsentDecision(AuthorizationParams):
    """POST /oauth/authorize form"""
    action: Literal["approve", "deny"] = "approve"
    csrf_token: Optional[str] = None


# Token endpoint
class TokenRequest(BaseModel):
    """OAuth 2.1 Token Request (authorization_code grant only)"""
    grant_type: RequiredText
    code: RequiredText
    client_id: ClientId
    client_secret: Optional[str] = None
    code_verifier: RequiredText
    redirect_uri: RedirectUri


class TokenResponse(BaseModel):
    """OAuth 2.1 Token Response"""
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class OAuthErrorResponse(BaseModel):
    """RFC 6749 error body"""
    error: str
    error_description: Optional[str] = None


# Discovery documents
class ProtectedResourceMetadata(BaseModel):
    """Which authorization server protects this resource"""
    resource: str
    authorization_server: str


class AuthorizationServerMetadata(BaseModel):
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)"""
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str
    response_types_supported: List[str] = [RESPONSE_TYPE_CODE]
    code_challenge_methods_supported: List[str] = [CODE_CHALLENGE_METHOD_S256]
    grant_types_supported: List[str] = [GRANT_TYPE_AUTHORIZATION_CODE]
    token_endpoint_auth_methods_supported: List[str] = [TOKEN_ENDPOINT_AUTH_METHOD]


# API Response Models
class HealthCheckResponse(BaseModel):
    """Health Check Response"""
    status: str
    service: str
    version: str
    timestamp: str
    components: Dict[str, str]
    environment: str
