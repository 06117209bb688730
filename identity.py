"""
End-user identity providers.

The authorization server never authenticates end-users itself. It asks an
identity provider who is signed in when the consent decision is posted.
"""

import logging
from typing import Optional, Protocol

from fastapi import Request

logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    async def current_user_id(self, request: Request) -> Optional[str]:
        ...


class SessionIdentityProvider:
    """Reads the user id that the host application's login stored in the session"""

    def __init__(self, session_key: str = "user_id"):
        self.session_key = session_key

    async def current_user_id(self, request: Request) -> Optional[str]:
        user_id = request.session.get(self.session_key)
        return str(user_id) if user_id else None


class HeaderIdentityProvider:
    """
    Trusts a header set by an authenticating reverse proxy
    (oauth2-proxy, Cloudflare Access and the like).

    Only safe when the proxy strips the header from client requests.
    """

    def __init__(self, header_name: str):
        self.header_name = header_name

    async def current_user_id(self, request: Request) -> Optional[str]:
        user_id = request.headers.get(self.header_name, "").strip()
        return user_id or None


def create_identity_provider(config) -> IdentityProvider:
    if config.identity_header:
        logger.info(f"End-user identity taken from the {config.identity_header} header")
        return HeaderIdentityProvider(config.identity_header)
    return SessionIdentityProvider()
