"""
OAuth 2.0 error taxonomy (RFC 6749 section 5.2) plus the registration
validation error (RFC 7591 section 3.2.2).

Descriptions stay coarse on purpose: callers learn the category of a failure,
never which secret, code or verifier was wrong.
"""

from typing import Dict, List, Optional


class OAuthError(Exception):
    """Base class for errors rendered as {"error", "error_description"}"""

    error = "server_error"
    status_code = 400

    def __init__(self, description: str, headers: Optional[Dict[str, str]] = None):
        super().__init__(description)
        self.description = description
        self.headers = headers

    def to_dict(self) -> Dict[str, str]:
        return {"error": self.error, "error_description": self.description}


class InvalidRequestError(OAuthError):
    error = "invalid_request"


class InvalidClientError(OAuthError):
    error = "invalid_client"
    status_code = 401


class InvalidGrantError(OAuthError):
    error = "invalid_grant"


class UnsupportedGrantTypeError(OAuthError):
    error = "unsupported_grant_type"


class LoginRequiredError(OAuthError):
    error = "login_required"
    status_code = 401


class ValidationError(Exception):
    """Client metadata failed validation; carries per-field messages"""

    error = "invalid_client_metadata"
    status_code = 422

    def __init__(self, errors: Dict[str, List[str]]):
        super().__init__("; ".join(f"{field}: {', '.join(msgs)}" for field, msgs in errors.items()))
        self.errors = errors

    def to_dict(self) -> Dict[str, object]:
        return {
            "error": self.error,
            "error_description": "The client metadata is invalid.",
            "errors": self.errors,
        }
