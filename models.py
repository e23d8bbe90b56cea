from typing import Dict, List, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, Field, field_validator

def is_valid_redirect_uri(uri: str) -> bool:
    """Absolute URI: https, loopback http, or a custom scheme for native apps"""
    try:
        parts = urlsplit(uri)
    except ValueError:
        return False

    if not parts.scheme or "://" not in uri or parts.fragment:
        return False

    if parts.scheme in ("http", "https"):
        if not parts.hostname:
            return False
        if parts.scheme == "http" and parts.hostname not in ("localhost", "127.0.0.1"):
            return False
    return True


# OAuth state records (owned by OAuthStore)
class RegisteredClient(BaseModel):
    """Client registered through Dynamic Client Registration (RFC 7591)"""
    client_id: str
    client_name: str
    redirect_uris: List[str] = Field(default_factory=list)
    grant_types: List[str] = Field(default_factory=lambda: ["authorization_code"])
    response_types: List[str] = Field(default_factory=lambda: ["code"])
    token_endpoint_auth_method: str = "none"
    client_id_issued_at: int

    def allows_redirect_uri(self, redirect_uri: str) -> bool:
        """A client that registered no redirect URIs accepts any"""
        return not self.redirect_uris or redirect_uri in self.redirect_uris

class PendingAuthorization(BaseModel):
    """Authorize request parked until the consent surface calls back"""
    state: str = Field(..., description="Internal correlation value sent to the consent surface")
    client_id: str
    redirect_uri: str
    scope: str
    code_challenge: str
    code_challenge_method: str
    resource: str
    client_state: str = Field(..., description="The client's own opaque state, echoed on redirect")
    created_at: float

    def is_expired(self, now: float, ttl: float) -> bool:
        return now - self.created_at > ttl

class AuthorizationCode(BaseModel):
    """Single-use code proving the user consented"""
    code: str
    client_id: str
    redirect_uri: str
    scope: str
    code_challenge: str
    code_challenge_method: str
    upstream_assertion: str
    resource: str
    client_state: str
    expires_at: float
    used: bool = False

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

class TokenEntry(BaseModel):
    """Access/refresh pair bound to an exchanged identity token"""
    access_token: str
    refresh_token: Optional[str] = None
    client_id: str
    scope: str
    identity_token: str
    identity_token_expires_at: float
    resource: str
    created_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.identity_token_expires_at

class IdentityToken(BaseModel):
    """Result of the upstream identity exchange"""
    identity_token: str
    expires_at: float

# OAuth wire models
class ClientRegistrationRequest(BaseModel):
    """OAuth 2.1 Dynamic Client Registration Request"""
    client_name: Optional[str] = Field(None, description="Human-readable client name")
    redirect_uris: Optional[List[str]] = Field(None, description="Array of redirection URI strings")
    grant_types: Optional[List[str]] = Field(None, description="Grant types")
    response_types: Optional[List[str]] = Field(None, description="Response types")
    token_endpoint_auth_method: Optional[str] = Field(None, description="Authentication method")

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v):
        for uri in v or []:
            if not is_valid_redirect_uri(uri):
                raise ValueError(f"Invalid redirect URI: {uri}")
        return v

class ClientRegistrationResponse(BaseModel):
    """OAuth 2.1 Dynamic Client Registration Response"""
    client_id: str
    client_name: str
    redirect_uris: List[str]
    grant_types: List[str]
    response_types: List[str]
    token_endpoint_auth_method: str
    client_id_issued_at: int

class TokenResponse(BaseModel):
    """OAuth 2.1 Token Response"""
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    scope: Optional[str] = None

class ProtectedResourceMetadata(BaseModel):
    """OAuth 2.0 Protected Resource Metadata (RFC 9728)"""
    resource: str
    authorization_servers: List[str]
    scopes_supported: List[str]
    bearer_methods_supported: List[str] = ["header"]

class AuthorizationServerMetadata(BaseModel):
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)"""
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str
    revocation_endpoint: str
    response_types_supported: List[str] = ["code"]
    response_modes_supported: List[str] = ["query"]
    grant_types_supported: List[str] = ["authorization_code", "refresh_token"]
    code_challenge_methods_supported: List[str] = ["S256"]
    token_endpoint_auth_methods_supported: List[str] = ["none"]
    revocation_endpoint_auth_methods_supported: List[str] = ["none"]
    scopes_supported: List[str]

# API Response Models
class HealthCheckResponse(BaseModel):
    """Health Check Response"""
    status: str
    service: str
    version: str
    timestamp: str
    components: Dict[str, str]
    environment: str
