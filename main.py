#!/usr/bin/env python3

import asyncio
import hmac
import logging
import secrets
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError as PydanticValidationError
from starlette.middleware.sessions import SessionMiddleware

from auth import AuthManager, BearerAuth, build_redirect_uri, describe_validation_error
from config import Config
from database import Database
from errors import InvalidRequestError, LoginRequiredError, OAuthError, ValidationError
from identity import IdentityProvider, create_identity_provider
from models import (
    RESPONSE_TYPE_CODE,
    AuthorizationRequest,
    ClientRegistrationRequest,
    ConsentDecision,
    HealthCheckResponse,
    OAuthErrorResponse,
)
from stores import ClientRegistry, CodeStore, MemoryCodeStore, RedisCodeStore, TokenStore

SERVICE_NAME = "mcp-oauth-server"
VERSION = "1.0.0"
CSRF_SESSION_KEY = "oauth_csrf_tokens"
MAX_PENDING_CONSENTS = 10

logger = logging.getLogger(__name__)

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))


def create_code_store(config: Config) -> CodeStore:
    if config.redis_url:
        logger.info("Authorization codes stored in Redis")
        return RedisCodeStore.from_url(config.redis_url, config.secret_key)
    logger.info("Authorization codes stored in process memory")
    return MemoryCodeStore()


def _pending_consents(request: Request) -> dict:
    """CSRF tokens of open consent pages, keyed by code_challenge"""
    pending = request.session.get(CSRF_SESSION_KEY)
    return dict(pending) if isinstance(pending, dict) else {}


def _registration_errors(error: PydanticValidationError) -> dict:
    errors = {}
    for item in error.errors():
        field = ".".join(str(part) for part in item.get("loc", ())) or "body"
        errors.setdefault(field, []).append(item.get("msg", "Invalid value"))
    return errors


def create_app(
    config: Config,
    database: Optional[Database] = None,
    code_store: Optional[CodeStore] = None,
    identity_provider: Optional[IdentityProvider] = None,
) -> FastAPI:
    """Build the authorization server with its stores wired in"""
    if database is None:
        database = Database(config.database_url)
    database.create_all()

    # Explicit None checks: an empty MemoryCodeStore is falsy
    if code_store is None:
        code_store = create_code_store(config)
    if identity_provider is None:
        identity_provider = create_identity_provider(config)
    auth_manager = AuthManager(config, ClientRegistry(database), code_store, TokenStore(database))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {SERVICE_NAME} v{VERSION}")
        logger.info(f"Environment: {config.environment}")
        logger.info(f"Base URL: {config.base_url}")

        cleanup_task = asyncio.create_task(auth_manager.cleanup_expired_tokens())
        yield
        cleanup_task.cancel()
        with suppress(asyncio.CancelledError):
            await cleanup_task

        logger.info(f"Shutting down {SERVICE_NAME}")
        await code_store.close()
        database.dispose()

    app = FastAPI(
        title="MCP OAuth Authorization Server",
        description="OAuth 2.1 Authorization Code + PKCE with Dynamic Client Registration",
        version=VERSION,
        docs_url="/docs" if config.is_development else None,
        redoc_url="/redoc" if config.is_development else None,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.auth_manager = auth_manager
    app.state.identity_provider = identity_provider
    app.state.require_bearer = BearerAuth(auth_manager)

    # Add security headers middleware
    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)

        # Security headers
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        # HTTPS enforcement in production
        if config.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response

    # Signed session cookie carries the consent CSRF token and, by default, the signed-in user
    app.add_middleware(
        SessionMiddleware,
        secret_key=config.secret_key,
        same_site="lax",
        https_only=config.is_production,
    )

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_credentials=config.allowed_origins != ["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["WWW-Authenticate"],
    )

    @app.exception_handler(OAuthError)
    async def oauth_error_handler(request: Request, exc: OAuthError):
        headers = {"Cache-Control": "no-store", "Pragma": "no-cache"}
        headers.update(exc.headers or {})
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # Health and discovery endpoints
    @app.get("/health", response_model=HealthCheckResponse)
    async def health_check():
        """Health check endpoint"""
        return HealthCheckResponse(
            status="healthy",
            service=SERVICE_NAME,
            version=VERSION,
            timestamp=datetime.now(timezone.utc).isoformat(),
            components={
                "database": database.engine.url.get_backend_name(),
                "code_store": "redis" if isinstance(code_store, RedisCodeStore) else "memory",
            },
            environment=config.environment,
        )

    # OAuth 2.0 Protected Resource Metadata
    @app.get("/.well-known/oauth-protected-resource")
    async def oauth_protected_resource_metadata():
        return auth_manager.get_protected_resource_metadata().model_dump()

    # OAuth 2.0 Authorization Server Metadata (RFC 8414)
    @app.get("/.well-known/oauth-authorization-server")
    async def oauth_authorization_server_metadata():
        return auth_manager.get_authorization_server_metadata().model_dump()

    # Dynamic Client Registration (RFC 7591)
    @app.post("/oauth/register", status_code=201)
    async def dynamic_client_registration(request: Request):
        """Dynamic Client Registration endpoint - required by MCP clients"""
        try:
            client_metadata = await request.json()
        except ValueError:
            raise ValidationError({"body": ["Request body must be valid JSON"]})
        if not isinstance(client_metadata, dict):
            raise ValidationError({"body": ["Request body must be a JSON object"]})

        try:
            registration = ClientRegistrationRequest(**client_metadata)
        except PydanticValidationError as e:
            raise ValidationError(_registration_errors(e))

        client_response = await auth_manager.register_client(registration)

        client_ip = request.client.host if request.client else "unknown"
        logger.info(f"Registered new client: {client_response.client_id} from {client_ip}")

        return JSONResponse(
            status_code=201,
            content=client_response.model_dump(),
            headers={"Cache-Control": "no-store", "Pragma": "no-cache"},
        )

    # OAuth Authorization endpoint: consent page
    @app.get("/oauth/authorize", responses={400: {"model": OAuthErrorResponse}})
    async def oauth_authorize(request: Request):
        """Validate the authorization request and show the consent page"""
        try:
            params = AuthorizationRequest(**dict(request.query_params))
        except PydanticValidationError as e:
            raise InvalidRequestError(describe_validation_error(e))

        client = await auth_manager.validate_authorization_request(params)

        # One token per pending request, oldest dropped past the cap
        csrf_token = secrets.token_urlsafe(32)
        pending = _pending_consents(request)
        pending.pop(params.code_challenge, None)
        pending[params.code_challenge] = csrf_token
        while len(pending) > MAX_PENDING_CONSENTS:
            pending.pop(next(iter(pending)))
        request.session[CSRF_SESSION_KEY] = pending

        return templates.TemplateResponse(
            request,
            "authorize.html",
            {
                "client_name": client.name,
                "client_id": client.id,
                "redirect_uri": params.redirect_uri,
                "code_challenge": params.code_challenge,
                "code_challenge_method": params.code_challenge_method,
                "state": params.state,
                "csrf_token": csrf_token,
                "authorize_url": "/oauth/authorize",
            },
            headers={"Cache-Control": "no-store"},
        )

    # OAuth Authorization endpoint: consent decision
    @app.post("/oauth/authorize", responses={400: {"model": OAuthErrorResponse}, 401: {"model": OAuthErrorResponse}})
    async def oauth_authorize_decision(request: Request):
        """Mint a code on approval, or report access_denied on denial"""
        form_data = await request.form()
        try:
            decision = ConsentDecision(**{key: value for key, value in form_data.items()})
        except PydanticValidationError as e:
            raise InvalidRequestError(describe_validation_error(e))

        # Never trust the echoed form alone
        await auth_manager.validate_authorization_request(decision)

        pending = _pending_consents(request)
        expected_csrf = pending.pop(decision.code_challenge, None)
        request.session[CSRF_SESSION_KEY] = pending
        if not expected_csrf or not decision.csrf_token or not hmac.compare_digest(
            expected_csrf.encode(), decision.csrf_token.encode()
        ):
            logger.warning(f"Consent decision for client {decision.client_id} failed CSRF check")
            raise InvalidRequestError("The consent form has expired. Please start the authorization again.")

        if decision.action == "deny":
            return RedirectResponse(url=await auth_manager.deny_authorization(decision), status_code=302)

        user_id = await identity_provider.current_user_id(request)
        if not user_id:
            if config.login_url:
                query = decision.model_dump(
                    include={"client_id", "redirect_uri", "code_challenge", "code_challenge_method", "state"},
                    exclude_none=True,
                )
                query["response_type"] = RESPONSE_TYPE_CODE
                resume_url = f"/oauth/authorize?{urlencode(query)}"
                return RedirectResponse(url=build_redirect_uri(config.login_url, next=resume_url), status_code=302)
            raise LoginRequiredError("Sign in to approve this authorization request.")

        redirect_url = await auth_manager.approve_authorization(decision, user_id)
        return RedirectResponse(url=redirect_url, status_code=302)

    # OAuth Token endpoint
    @app.post("/oauth/token", responses={400: {"model": OAuthErrorResponse}, 401: {"model": OAuthErrorResponse}})
    async def oauth_token(request: Request):
        """OAuth 2.1 Token endpoint with PKCE verification"""
        if request.headers.get("content-type", "").startswith("application/json"):
            try:
                form_data = await request.json()
            except ValueError:
                raise InvalidRequestError("Request body must be valid JSON.")
            if not isinstance(form_data, dict):
                raise InvalidRequestError("Request body must be a JSON object.")
        else:
            form_data = {key: value for key, value in (await request.form()).items()}

        token_response = await auth_manager.exchange_code_for_token(form_data)

        return JSONResponse(
            content=token_response.model_dump(),
            headers={"Cache-Control": "no-store", "Pragma": "no-cache"},
        )

    return app


# Initialize configuration
config = Config()

# Configure logging
logging.basicConfig(level=config.log_level, format=config.log_format)

app = create_app(config)

if __name__ == "__main__":
    print(f"🚀 Starting {SERVICE_NAME} v{VERSION}")
    print(f"📊 Environment: {config.environment}")
    print(f"🌐 Base URL: {config.base_url}")
    print("🔧 OAuth 2.1 with PKCE and Dynamic Client Registration enabled")
    print(f"💚 Health check: {config.base_url}/health")

    uvicorn.run(
        "main:app" if config.is_development else app,
        host=config.host,
        port=config.port,
        reload=config.is_development,
        log_level=config.log_level.lower(),
        access_log=True,
    )
