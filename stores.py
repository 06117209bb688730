"""
Storage for the three kinds of OAuth state.

- ClientRegistry: registered clients (durable, SQLAlchemy)
- Code stores: in-flight authorization codes (short TTL, single use)
- TokenStore: issued access tokens, persisted by hash only (durable, SQLAlchemy)
"""

import hashlib
import hmac
import json
import logging
import secrets
import threading
import time
import uuid
from dataclasses import asdict, dataclass, replace
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import redis.asyncio as redis
from sqlalchemy import delete, select

from database import Database, OAuthAccessToken, OAuthClient
from errors import ValidationError
from models import validate_redirect_uri

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def hash_secret(value: str) -> str:
    """One-way hash used for client secrets and bearer tokens"""
    return hashlib.sha256(value.encode()).hexdigest()


def secrets_match(expected_hash: str, presented: str) -> bool:
    """Constant-time check of a plaintext value against its stored hash"""
    return hmac.compare_digest(expected_hash, hash_secret(presented))


def generate_code() -> str:
    return secrets.token_urlsafe(48)


class ClientRegistry:
    """Registered OAuth clients"""

    def __init__(self, database: Database):
        self.database = database

    def register(self, name: str, redirect_uris: List[str]) -> Tuple[OAuthClient, str]:
        """
        Create a client and return it with its plaintext secret.

        The secret is returned exactly once; only its hash is persisted.

        Raises:
            ValidationError: If the name or any redirect URI is malformed
        """
        errors: Dict[str, List[str]] = {}
        if not isinstance(name, str) or not name.strip():
            errors.setdefault("client_name", []).append("client_name is required")
        elif len(name) > 255:
            errors.setdefault("client_name", []).append("client_name must be at most 255 characters")

        if not isinstance(redirect_uris, list) or not redirect_uris:
            errors.setdefault("redirect_uris", []).append("At least one redirect URI is required")
        else:
            for index, uri in enumerate(redirect_uris):
                try:
                    validate_redirect_uri(uri)
                except ValueError as e:
                    errors.setdefault(f"redirect_uris.{index}", []).append(str(e))

        if errors:
            raise ValidationError(errors)

        plain_secret = secrets.token_urlsafe(48)
        client = OAuthClient(
            id=str(uuid.uuid4()),
            name=name,
            secret_hash=hash_secret(plain_secret),
            redirect_uris=list(redirect_uris),
            created_at=time.time(),
        )
        with self.database.session() as session:
            session.add(client)

        logger.info(f"Registered OAuth client {client.id} ({client.name})")
        return client, plain_secret

    def get(self, client_id: str) -> Optional[OAuthClient]:
        with self.database.session() as session:
            return session.get(OAuthClient, client_id)


@dataclass(frozen=True)
class AuthorizationRequestRecord:
    """An approved authorization request waiting to be exchanged"""

    client_id: str
    user_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str
    code: str = ""
    expires_at: float = 0.0


class CodeStore(Protocol):
    """Short-lived, single-use authorization codes"""

    async def put(self, record: AuthorizationRequestRecord, ttl: int) -> str:
        """Store the record under a fresh code and return the code"""
        ...

    async def take(self, code: str) -> Optional[AuthorizationRequestRecord]:
        """Atomically fetch and delete; None if unknown, consumed or expired"""
        ...

    async def purge_expired(self) -> int:
        ...

    async def close(self) -> None:
        ...


class MemoryCodeStore:
    """
    Lock-guarded in-process code store.

    Only correct when the whole server runs as a single process; use
    RedisCodeStore for multi-worker deployments.
    """

    def __init__(self, clock: Clock = time.time):
        self._records: Dict[str, AuthorizationRequestRecord] = {}
        self._lock = threading.Lock()
        self._clock = clock

    async def put(self, record: AuthorizationRequestRecord, ttl: int) -> str:
        with self._lock:
            code = generate_code()
            while code in self._records:
                code = generate_code()
            self._records[code] = replace(record, code=code, expires_at=self._clock() + ttl)
        return code

    async def take(self, code: str) -> Optional[AuthorizationRequestRecord]:
        with self._lock:
            record = self._records.pop(code, None)
        if record is None:
            return None
        if self._clock() >= record.expires_at:
            return None
        return record

    async def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [code for code, record in self._records.items() if now >= record.expires_at]
            for code in expired:
                del self._records[code]
        return len(expired)

    async def close(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        return len(self._records)


class RedisCodeStore:
    """
    Redis-backed code store.

    put uses SET NX EX so an existing key is never overwritten; take uses
    GETDEL so exactly one caller receives the record. Payloads are HMAC
    signed with the server secret; a payload that fails verification reads
    as not found.
    """

    key_prefix = "mcp-oauth-code:"
    max_put_attempts = 5

    def __init__(self, client: redis.Redis, secret_key: str, clock: Clock = time.time):
        self.client = client
        self._signing_key = secret_key.encode()
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, secret_key: str) -> "RedisCodeStore":
        return cls(redis.from_url(url, decode_responses=True), secret_key)

    def _key(self, code: str) -> str:
        return f"{self.key_prefix}{code}"

    def _sign(self, payload: str) -> str:
        return hmac.new(self._signing_key, payload.encode(), hashlib.sha256).hexdigest()

    def _dump(self, record: AuthorizationRequestRecord) -> str:
        payload = json.dumps(asdict(record), separators=(",", ":"), sort_keys=True)
        return f"{self._sign(payload)}.{payload}"

    def _load(self, raw: str) -> Optional[AuthorizationRequestRecord]:
        signature, _, payload = raw.partition(".")
        if not payload or not hmac.compare_digest(signature.encode(), self._sign(payload).encode()):
            logger.warning("Discarding authorization code with invalid signature")
            return None
        return AuthorizationRequestRecord(**json.loads(payload))

    async def put(self, record: AuthorizationRequestRecord, ttl: int) -> str:
        for _ in range(self.max_put_attempts):
            code = generate_code()
            stored = replace(record, code=code, expires_at=self._clock() + ttl)
            if await self.client.set(self._key(code), self._dump(stored), nx=True, ex=ttl):
                return code
        raise RuntimeError("Could not allocate a unique authorization code")

    async def take(self, code: str) -> Optional[AuthorizationRequestRecord]:
        raw = await self.client.getdel(self._key(code))
        if raw is None:
            return None
        record = self._load(raw)
        if record is None or self._clock() >= record.expires_at:
            return None
        return record

    async def purge_expired(self) -> int:
        # Redis evicts by TTL
        return 0

    async def close(self) -> None:
        await self.client.aclose()


class TokenStore:
    """Issued access tokens, keyed by the SHA-256 of the bearer value"""

    def __init__(self, database: Database, clock: Clock = time.time):
        self.database = database
        self._clock = clock

    def mint(self, client_id: str, user_id: str, ttl: int) -> Tuple[str, OAuthAccessToken]:
        """Create a token; the plaintext is returned here and nowhere else"""
        plain_token = secrets.token_urlsafe(60)
        now = self._clock()
        record = OAuthAccessToken(
            client_id=client_id,
            user_id=user_id,
            token_hash=hash_secret(plain_token),
            expires_at=now + ttl,
            created_at=now,
        )
        with self.database.session() as session:
            session.add(record)
        return plain_token, record

    def lookup(self, token_hash: str) -> Optional[OAuthAccessToken]:
        with self.database.session() as session:
            record = session.scalars(
                select(OAuthAccessToken).where(OAuthAccessToken.token_hash == token_hash)
            ).first()
        if record is None or not hmac.compare_digest(record.token_hash, token_hash):
            return None
        return record

    def purge_expired(self) -> int:
        with self.database.session() as session:
            result = session.execute(
                delete(OAuthAccessToken).where(OAuthAccessToken.expires_at <= self._clock())
            )
            return result.rowcount or 0
