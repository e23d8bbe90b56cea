#!/usr/bin/env python3

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from auth import AuthManager, InvalidRequestError, OAuthError
from config import Config
from identity_client import IdentityClient
from models import (
    AuthorizationServerMetadata,
    ClientRegistrationResponse,
    HealthCheckResponse,
    ProtectedResourceMetadata,
    TokenResponse,
)
from store import OAuthStore

logger = logging.getLogger(__name__)

# Receives the resolved identity token and does the actual MCP work
ToolRouter = Callable[[Request, str], Awaitable[Response]]

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}

router = APIRouter()


def get_auth_manager(request: Request) -> AuthManager:
    return request.app.state.auth_manager


def get_config(request: Request) -> Config:
    return request.app.state.config


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return auth_header[7:].strip() or None


async def _read_params(request: Request) -> Dict[str, str]:
    """Form-encoded body per OAuth; JSON accepted as a fallback"""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except ValueError:
            raise InvalidRequestError("Malformed JSON body")
        if not isinstance(data, dict):
            raise InvalidRequestError("Request body must be an object")
        return {key: str(value) for key, value in data.items() if value is not None}

    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


# Health and discovery endpoints
@router.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request, config: Config = Depends(get_config)):
    """Health check endpoint with component status"""
    return HealthCheckResponse(
        status="healthy",
        service=config.service_name,
        version=config.service_version,
        timestamp=datetime.now(timezone.utc).isoformat(),
        components={
            "auth": "ready",
            "identity_exchange": "configured" if config.identity_api_key else "not_configured",
            "tool_router": "configured" if request.app.state.tool_router else "not_configured",
        },
        environment=config.environment,
    )

@router.get("/")
async def root(config: Config = Depends(get_config)):
    """Root endpoint with server information"""
    return {
        "name": config.service_name,
        "version": config.service_version,
        "authentication": "OAuth 2.1 with Dynamic Client Registration and PKCE",
        "endpoints": {
            "mcp": config.mcp_resource,
            "oauth_metadata": f"{config.base_url}/.well-known/oauth-authorization-server",
            "protected_resource_metadata": f"{config.base_url}/.well-known/oauth-protected-resource",
            "registration": f"{config.base_url}/oauth/register",
            "authorization": f"{config.base_url}/oauth/authorize",
            "token": f"{config.base_url}/oauth/token",
            "revocation": f"{config.base_url}/oauth/revoke",
        },
    }

# OAuth 2.0 Protected Resource Metadata (RFC 9728)
@router.get("/.well-known/oauth-protected-resource", response_model=ProtectedResourceMetadata)
async def oauth_protected_resource_metadata(auth_manager: AuthManager = Depends(get_auth_manager)):
    return auth_manager.protected_resource_metadata()

# OAuth 2.1 Authorization Server Metadata (RFC 8414)
@router.get("/.well-known/oauth-authorization-server", response_model=AuthorizationServerMetadata)
async def oauth_authorization_server_metadata(auth_manager: AuthManager = Depends(get_auth_manager)):
    return auth_manager.authorization_server_metadata()

# Dynamic Client Registration (RFC 7591)
@router.post("/oauth/register", status_code=201, response_model=ClientRegistrationResponse)
async def dynamic_client_registration(request: Request, auth_manager: AuthManager = Depends(get_auth_manager)):
    """Open or admin-token-gated registration of public clients"""
    try:
        client_metadata = await request.json()
    except ValueError:
        client_metadata = {}

    client_ip = request.client.host if request.client else "unknown"
    return auth_manager.register_client(
        client_metadata,
        admin_token=_bearer_token(request),
        client_ip=client_ip
    )

# OAuth Authorization endpoint
@router.get("/oauth/authorize")
async def oauth_authorize(request: Request, auth_manager: AuthManager = Depends(get_auth_manager)):
    """Validate the request and hand the user to the consent surface"""
    consent_url = auth_manager.authorize(request.query_params)
    return RedirectResponse(url=consent_url, status_code=302)

# Consent surface callback
@router.get("/oauth/callback")
async def oauth_callback(request: Request, auth_manager: AuthManager = Depends(get_auth_manager)):
    redirect_url = auth_manager.handle_callback(request.query_params)
    return RedirectResponse(url=redirect_url, status_code=302)

# OAuth Token endpoint
@router.post("/oauth/token", response_model=TokenResponse, response_model_exclude_none=True)
async def oauth_token(request: Request, auth_manager: AuthManager = Depends(get_auth_manager)):
    """Authorization code redemption (PKCE) and refresh token rotation"""
    form_data = await _read_params(request)
    token_response = await auth_manager.exchange_token(form_data)
    return JSONResponse(
        token_response.model_dump(exclude_none=True),
        headers=NO_STORE_HEADERS
    )

# Token revocation endpoint (RFC 7009)
@router.post("/oauth/revoke")
async def token_revocation(request: Request, auth_manager: AuthManager = Depends(get_auth_manager)):
    form_data = await _read_params(request)
    token = form_data.get("token")

    if not token:
        raise InvalidRequestError("token parameter required")

    return {"revoked": auth_manager.revoke_token(token)}

# Protected MCP endpoint
@router.api_route("/mcp", methods=["GET", "POST"])
async def mcp_endpoint(
    request: Request,
    auth_manager: AuthManager = Depends(get_auth_manager),
    config: Config = Depends(get_config)
):
    """Resolve the bearer token to an identity token and delegate to the tool router"""
    resource_metadata = f"{config.base_url}/.well-known/oauth-protected-resource"

    token = _bearer_token(request)
    if not token:
        return JSONResponse(
            status_code=401,
            content={"error": "invalid_token", "error_description": "Authentication required"},
            headers={"WWW-Authenticate": f'Bearer resource_metadata="{resource_metadata}"'}
        )

    identity_token = auth_manager.resolve_identity_token(token)
    if identity_token is None:
        return JSONResponse(
            status_code=401,
            content={"error": "invalid_token", "error_description": "Invalid or expired token"},
            headers={
                "WWW-Authenticate": f'Bearer error="invalid_token", resource_metadata="{resource_metadata}"'
            }
        )

    tool_router: Optional[ToolRouter] = request.app.state.tool_router
    if tool_router is None:
        return JSONResponse(
            status_code=501,
            content={"error": "not_implemented", "error_description": "No tool router configured"}
        )

    return await tool_router(request, identity_token)


def create_app(
    config: Optional[Config] = None,
    store: Optional[OAuthStore] = None,
    identity_client: Optional[Any] = None,
    tool_router: Optional[ToolRouter] = None
) -> FastAPI:
    """Build the gateway app; unspecified collaborators are created from config"""
    config = config or Config()
    store = store or OAuthStore(pending_auth_ttl=config.pending_auth_ttl)
    identity_client = identity_client or IdentityClient(config)
    auth_manager = AuthManager(config, store, identity_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {config.service_name} v{config.service_version}")
        logger.info(f"Environment: {config.environment}")
        logger.info(f"Base URL: {config.base_url}")
        logger.info(f"Registration policy: {config.registration_policy}")
        auth_manager.start_cleanup()
        try:
            yield
        finally:
            logger.info(f"Shutting down {config.service_name}")
            await auth_manager.stop_cleanup()
            close = getattr(identity_client, "close", None)
            if close is not None:
                await close()

    app = FastAPI(
        title="MCP OAuth Gateway",
        description="OAuth 2.1 authorization server in front of an MCP tool router",
        version=config.service_version,
        docs_url="/docs" if config.is_development else None,
        redoc_url="/redoc" if config.is_development else None,
        lifespan=lifespan
    )
    app.state.config = config
    app.state.store = store
    app.state.auth_manager = auth_manager
    app.state.tool_router = tool_router

    # Add security headers middleware
    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        # HTTPS enforcement in production
        if config.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response

    @app.exception_handler(OAuthError)
    async def oauth_error_handler(request: Request, exc: OAuthError):
        if exc.status_code >= 500:
            logger.error(f"{request.url.path}: {exc.error}: {exc.error_description}")
        else:
            logger.warning(f"{request.url.path}: {exc.error}: {exc.error_description}")
        headers = dict(NO_STORE_HEADERS)
        if exc.status_code == 401:
            headers["WWW-Authenticate"] = f'Bearer error="{exc.error}"'
        return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["Mcp-Session-Id", "WWW-Authenticate"]
    )

    app.include_router(router)
    return app


if __name__ == "__main__":
    config = Config()

    logging.basicConfig(level=config.log_level, format=config.log_format)

    logger.info(f"OAuth 2.1 with Dynamic Client Registration enabled at {config.base_url}")
    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        log_level="info",
        access_log=True
    )
