import asyncio
import hmac
import logging
import threading
import time
import uuid
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pydantic import ValidationError

import pkce
from config import Config
from identity_client import IdentityExchangeError
from models import (
    AuthorizationCode,
    AuthorizationServerMetadata,
    ClientRegistrationRequest,
    ClientRegistrationResponse,
    PendingAuthorization,
    ProtectedResourceMetadata,
    RegisteredClient,
    TokenEntry,
    TokenResponse,
    is_valid_redirect_uri,
)
from store import OAuthStore

logger = logging.getLogger(__name__)

# OAuth error taxonomy
class OAuthError(Exception):
    """Protocol error reported to the caller as {"error", "error_description"}"""
    error = "invalid_request"
    status_code = 400

    def __init__(self, error_description: Optional[str] = None):
        super().__init__(error_description or self.error)
        self.error_description = error_description

    def to_dict(self) -> Dict[str, str]:
        body = {"error": self.error}
        if self.error_description:
            body["error_description"] = self.error_description
        return body

class InvalidRequestError(OAuthError):
    error = "invalid_request"

class InvalidClientError(OAuthError):
    error = "invalid_client"

class InvalidClientMetadataError(OAuthError):
    error = "invalid_client_metadata"

class UnsupportedResponseTypeError(OAuthError):
    error = "unsupported_response_type"

class UnsupportedGrantTypeError(OAuthError):
    error = "unsupported_grant_type"

class InvalidGrantError(OAuthError):
    error = "invalid_grant"

class InvalidTokenError(OAuthError):
    error = "invalid_token"
    status_code = 401

class RateLimitExceededError(OAuthError):
    error = "rate_limit_exceeded"
    status_code = 429

class ServerError(OAuthError):
    error = "server_error"
    status_code = 500


def _redact(value: Optional[str]) -> str:
    return f"{value[:8]}..." if value else "<empty>"


def _append_query(url: str, params: Dict[str, str]) -> str:
    """Add query parameters to a URL, keeping any it already carries"""
    scheme, netloc, path, query, fragment = urlsplit(url)
    query_items = parse_qsl(query, keep_blank_values=True)
    query_items.extend(params.items())
    return urlunsplit((scheme, netloc, path, urlencode(query_items), fragment))


class RateLimiter:
    """Sliding-window request counter keyed by caller"""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._lock = threading.Lock()
        self._hits: Dict[str, List[float]] = {}

    def allow(self, key: str, max_requests: int, window_seconds: int) -> bool:
        """Check if a request is within rate limits, recording it if so"""
        if not self.enabled:
            return True

        now = time.time()
        window_start = now - window_seconds

        with self._lock:
            hits = [timestamp for timestamp in self._hits.get(key, []) if timestamp > window_start]
            if len(hits) >= max_requests:
                self._hits[key] = hits
                return False
            hits.append(now)
            self._hits[key] = hits
            return True

    def prune(self, window_seconds: int) -> None:
        """Drop timestamps older than the window"""
        cutoff = time.time() - window_seconds
        with self._lock:
            for key in list(self._hits.keys()):
                self._hits[key] = [timestamp for timestamp in self._hits[key] if timestamp > cutoff]
                if not self._hits[key]:
                    del self._hits[key]


class AuthManager:
    """
    OAuth 2.1 authorization server for the MCP gateway.

    Flow: a client registers once, /authorize parks a PendingAuthorization and
    sends the user to the external consent surface, the consent callback turns
    it into a single-use AuthorizationCode, and /token redeems the code
    (PKCE-checked) for an access/refresh pair bound to an identity token from
    the upstream identity exchange. Refresh rotates the pair and reuses that
    identity token until it expires, after which the user must authorize again.
    """

    def __init__(self, config: Config, store: OAuthStore, identity_client):
        self.config = config
        self.store = store
        self.identity_client = identity_client
        self.rate_limiter = RateLimiter(enabled=config.rate_limit_enabled)
        self._cleanup_task: Optional[asyncio.Task] = None

    # Discovery

    def protected_resource_metadata(self) -> ProtectedResourceMetadata:
        """OAuth 2.0 Protected Resource Metadata for the MCP endpoint"""
        return ProtectedResourceMetadata(
            resource=self.config.mcp_resource,
            authorization_servers=[self.config.base_url],
            scopes_supported=[self.config.default_scope],
        )

    def authorization_server_metadata(self) -> AuthorizationServerMetadata:
        """OAuth 2.1 Authorization Server Metadata"""
        base_url = self.config.base_url
        return AuthorizationServerMetadata(
            issuer=base_url,
            authorization_endpoint=f"{base_url}/oauth/authorize",
            token_endpoint=f"{base_url}/oauth/token",
            registration_endpoint=f"{base_url}/oauth/register",
            revocation_endpoint=f"{base_url}/oauth/revoke",
            scopes_supported=[self.config.default_scope],
        )

    # Dynamic Client Registration (RFC 7591)

    def register_client(
        self,
        client_metadata: Any,
        admin_token: Optional[str] = None,
        client_ip: str = "unknown"
    ) -> ClientRegistrationResponse:
        """Register a public client; no client_secret is issued"""
        if self.config.registration_requires_admin_token:
            expected = self.config.registration_admin_token.encode()
            if not admin_token or not hmac.compare_digest(admin_token.encode(), expected):
                logger.warning(f"Registration rejected from {client_ip}: missing or invalid admin token")
                raise InvalidTokenError("Client registration requires a valid admin token")

        if not self.rate_limiter.allow(
            f"register:{client_ip}",
            max_requests=self.config.rate_limit_register_requests,
            window_seconds=self.config.rate_limit_register_window
        ):
            logger.warning(f"Registration rate limit exceeded for {client_ip}")
            raise RateLimitExceededError("Too many registration requests")

        try:
            request = ClientRegistrationRequest.model_validate(client_metadata)
        except ValidationError as e:
            raise InvalidClientMetadataError(f"Invalid client metadata: {e.errors()[0]['msg']}")

        client = RegisteredClient(
            client_id=str(uuid.uuid4()),
            client_name=request.client_name or "Unknown Client",
            redirect_uris=request.redirect_uris or [],
            grant_types=request.grant_types or ["authorization_code"],
            response_types=request.response_types or ["code"],
            token_endpoint_auth_method=request.token_endpoint_auth_method or "none",
            client_id_issued_at=int(time.time()),
        )
        self.store.save_client(client)

        logger.info(f"Registered client {client.client_id} ({client.client_name}) from {client_ip}")
        return ClientRegistrationResponse(**client.model_dump())

    # Authorization endpoint

    def authorize(self, params: Mapping[str, str]) -> str:
        """Validate an authorize request, park it, and return the consent surface URL"""
        client_id = params.get("client_id")
        redirect_uri = params.get("redirect_uri")
        response_type = params.get("response_type")
        scope = params.get("scope") or self.config.default_scope
        state = params.get("state")
        code_challenge = params.get("code_challenge")
        code_challenge_method = params.get("code_challenge_method")
        resource = params.get("resource") or self.config.mcp_resource

        if not client_id:
            raise InvalidRequestError("Missing client_id")

        if not redirect_uri:
            raise InvalidRequestError("Missing redirect_uri")

        if response_type != "code":
            raise UnsupportedResponseTypeError("Only 'code' response type is supported")

        if not state:
            raise InvalidRequestError("Missing state parameter")

        if not code_challenge or not code_challenge_method:
            raise InvalidRequestError("PKCE required (code_challenge and code_challenge_method)")

        if code_challenge_method != pkce.S256:
            raise InvalidRequestError("Only S256 code_challenge_method is supported")

        client = self.store.get_client(client_id)
        if client is None:
            raise InvalidClientError("Unknown client_id")

        if not is_valid_redirect_uri(redirect_uri) or not client.allows_redirect_uri(redirect_uri):
            raise InvalidRequestError("Invalid redirect_uri")

        pending = PendingAuthorization(
            state=pkce.generate_random_token(32),
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=scope,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            resource=resource,
            client_state=state,
            created_at=time.time(),
        )
        self.store.save_pending_auth(pending)

        logger.info(f"Authorization pending consent for client {client_id}")
        return _append_query(f"{self.config.consent_url}/oauth/consent", {
            "callback_url": f"{self.config.base_url}/oauth/callback",
            "state": pending.state,
            "app_name": client.client_name or "MCP Client",
        })

    # Consent callback

    def handle_callback(self, params: Mapping[str, str]) -> str:
        """Resolve a pending authorization; returns the client redirect URL"""
        state = params.get("state")
        error = params.get("error")
        error_description = params.get("error_description")
        assertion = params.get("id_token") or params.get("google_id_token")

        if error:
            pending = self.store.take_pending_auth(state) if state else None
            if pending is None:
                # No trusted redirect target is known
                raise InvalidRequestError(f"Invalid or expired state (consent error: {error})")

            logger.info(f"Consent for client {pending.client_id} ended with error: {error}")
            redirect_params = {"error": error}
            if error_description:
                redirect_params["error_description"] = error_description
            redirect_params["state"] = pending.client_state
            return _append_query(pending.redirect_uri, redirect_params)

        if not state:
            raise InvalidRequestError("Missing state")

        if not assertion:
            raise InvalidRequestError("Missing id_token")

        pending = self.store.take_pending_auth(state)
        if pending is None:
            raise InvalidRequestError("Invalid or expired state")

        auth_code = AuthorizationCode(
            code=pkce.generate_random_token(64),
            client_id=pending.client_id,
            redirect_uri=pending.redirect_uri,
            scope=pending.scope,
            code_challenge=pending.code_challenge,
            code_challenge_method=pending.code_challenge_method,
            upstream_assertion=assertion,
            resource=pending.resource,
            client_state=pending.client_state,
            expires_at=time.time() + self.config.auth_code_ttl,
        )
        self.store.save_auth_code(auth_code)

        logger.info(f"Authorization code issued for client {pending.client_id}")
        return _append_query(pending.redirect_uri, {
            "code": auth_code.code,
            "state": pending.client_state,
        })

    # Token endpoint

    async def exchange_token(self, form_data: Mapping[str, str]) -> TokenResponse:
        """Dispatch a token request by grant_type"""
        grant_type = form_data.get("grant_type")

        if not grant_type:
            raise InvalidRequestError("Missing grant_type")

        if grant_type == "authorization_code":
            return await self._authorization_code_grant(form_data)
        if grant_type == "refresh_token":
            return self._refresh_token_grant(form_data)

        raise UnsupportedGrantTypeError("Only authorization_code and refresh_token grants are supported")

    async def _authorization_code_grant(self, form_data: Mapping[str, str]) -> TokenResponse:
        """Redeem a single-use code (PKCE-checked) for a new token pair"""
        code = form_data.get("code")
        redirect_uri = form_data.get("redirect_uri")
        client_id = form_data.get("client_id")
        code_verifier = form_data.get("code_verifier")

        if not code:
            raise InvalidRequestError("Missing code")

        if not code_verifier:
            raise InvalidRequestError("Missing code_verifier")

        # Checking the used flag and marking the code used must be one critical section
        with self.store.locked():
            auth_code = self.store.get_auth_code(code)
            if auth_code is None:
                raise InvalidGrantError("Invalid or expired authorization code")

            if auth_code.used:
                self.store.delete_auth_code(code)
                logger.warning(f"Replay of used authorization code {_redact(code)}")
                raise InvalidGrantError("Authorization code already used")

            if auth_code.is_expired(time.time()):
                self.store.delete_auth_code(code)
                raise InvalidGrantError("Authorization code expired")

            if client_id and client_id != auth_code.client_id:
                raise InvalidGrantError("client_id mismatch")

            if redirect_uri and redirect_uri != auth_code.redirect_uri:
                raise InvalidGrantError("redirect_uri mismatch")

            if not pkce.verify(code_verifier, auth_code.code_challenge, auth_code.code_challenge_method):
                raise InvalidGrantError("Invalid code_verifier")

            self.store.mark_auth_code_used(code)

        try:
            identity = await self.identity_client.exchange(auth_code.upstream_assertion)
        except IdentityExchangeError as e:
            logger.warning(f"Identity exchange failed for client {auth_code.client_id}: {e}")
            raise ServerError(str(e))
        finally:
            self.store.delete_auth_code(code)

        entry = TokenEntry(
            access_token=pkce.generate_random_token(64),
            refresh_token=pkce.generate_random_token(64),
            client_id=auth_code.client_id,
            scope=auth_code.scope,
            identity_token=identity.identity_token,
            identity_token_expires_at=identity.expires_at,
            resource=auth_code.resource,
            created_at=time.time(),
        )
        self.store.save_token(entry)

        logger.info(f"Access token issued for client {entry.client_id}")
        return self._token_response(entry)

    def _refresh_token_grant(self, form_data: Mapping[str, str]) -> TokenResponse:
        """Rotate an access/refresh pair, keeping the bound identity token"""
        refresh_token = form_data.get("refresh_token")
        client_id = form_data.get("client_id")

        if not refresh_token:
            raise InvalidRequestError("Missing refresh_token")

        # Old pair is deleted before the new one is stored, under one lock
        with self.store.locked():
            entry = self.store.get_token_by_refresh_token(refresh_token)
            if entry is None:
                raise InvalidGrantError("Invalid refresh_token")

            if client_id and client_id != entry.client_id:
                raise InvalidGrantError("client_id mismatch")

            if entry.is_expired(time.time()):
                # Identity token is gone; only a new authorization can get another
                self.store.delete_token(entry.access_token)
                logger.info(f"Session expired for client {entry.client_id}; re-authorization required")
                raise InvalidGrantError("Session expired, please re-authenticate")

            self.store.delete_token(entry.access_token)

            new_entry = entry.model_copy(update={
                "access_token": pkce.generate_random_token(64),
                "refresh_token": pkce.generate_random_token(64),
                "created_at": time.time(),
            })
            self.store.save_token(new_entry)

        logger.info(f"Tokens rotated for client {new_entry.client_id}")
        return self._token_response(new_entry)

    def _token_response(self, entry: TokenEntry) -> TokenResponse:
        """expires_in follows the identity token, capped at the nominal lifetime"""
        remaining = int(entry.identity_token_expires_at - time.time())
        return TokenResponse(
            access_token=entry.access_token,
            expires_in=max(0, min(self.config.token_lifetime, remaining)),
            refresh_token=entry.refresh_token,
            scope=entry.scope,
        )

    # Revocation (RFC 7009)

    def revoke_token(self, token: str) -> bool:
        """Revoke an access or refresh token together with its pair"""
        if self.store.delete_token(token):
            logger.info(f"Access token revoked: {_redact(token)}")
            return True

        if self.store.delete_token_by_refresh_token(token):
            logger.info(f"Refresh token revoked: {_redact(token)}")
            return True

        return False

    # Protected resource boundary

    def resolve_identity_token(self, access_token: str) -> Optional[str]:
        """Identity token bound to a bearer access token, or None if unknown or expired"""
        with self.store.locked():
            entry = self.store.get_token(access_token)
            if entry is None:
                return None

            if entry.is_expired(time.time()):
                self.store.delete_token(access_token)
                return None

            return entry.identity_token

    # Background cleanup

    def cleanup_expired(self) -> Dict[str, int]:
        """Sweep expired OAuth state and stale rate limit windows"""
        removed = self.store.sweep()
        self.rate_limiter.prune(self.config.rate_limit_register_window)
        return removed

    async def run_cleanup(self):
        """Periodically reclaim expired records; every read path re-checks expiry regardless"""
        while True:
            try:
                await asyncio.sleep(self.config.cleanup_interval)
                self.cleanup_expired()
            except Exception as e:
                logger.error(f"Error in cleanup task: {e}")
                await asyncio.sleep(60)  # Wait 1 minute on error

    def start_cleanup(self) -> None:
        """Start the background cleanup task"""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self.run_cleanup())

    async def stop_cleanup(self) -> None:
        """Cancel the background cleanup task and wait for it"""
        if self._cleanup_task is None:
            return

        self._cleanup_task.cancel()
        try:
            await self._cleanup_task
        except asyncio.CancelledError:
            pass
        self._cleanup_task = None
