import os
from typing import List

REGISTRATION_POLICIES = ("open", "require-admin-token")

class Config:
    """Configuration management for the MCP OAuth gateway"""

    def __init__(self):
        # Server configuration
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = int(os.getenv("PORT", 3001))
        self.environment = os.getenv("ENVIRONMENT", "development")
        self.base_url = os.getenv("BASE_URL", "http://localhost:3001").rstrip("/")
        self.consent_url = os.getenv("CONSENT_URL", "https://graffiticode.org").rstrip("/")
        self.allowed_origins = self._parse_allowed_origins()

        # OAuth configuration
        self.default_scope = os.getenv("OAUTH_DEFAULT_SCOPE", "mcp")
        self.pending_auth_ttl = int(os.getenv("OAUTH_PENDING_AUTH_TTL", 600))  # 10 minutes
        self.auth_code_ttl = int(os.getenv("OAUTH_CODE_EXPIRY", 600))  # 10 minutes
        self.token_lifetime = int(os.getenv("OAUTH_TOKEN_LIFETIME", 3300))  # 55 minutes

        # Registration configuration
        self.registration_policy = os.getenv("REGISTRATION_POLICY", "open").lower()
        self.registration_admin_token = os.getenv("REGISTRATION_ADMIN_TOKEN")

        # Rate limiting configuration
        self.rate_limit_enabled = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
        self.rate_limit_register_requests = int(os.getenv("RATE_LIMIT_REGISTER_REQUESTS", 10))
        self.rate_limit_register_window = int(os.getenv("RATE_LIMIT_REGISTER_WINDOW", 300))  # 5 minutes

        # Cleanup configuration
        self.cleanup_interval = int(os.getenv("CLEANUP_INTERVAL", 300))  # 5 minutes

        # Identity exchange configuration
        self.identity_auth_url = os.getenv("IDENTITY_AUTH_URL", "https://auth.graffiticode.org").rstrip("/")
        self.identity_toolkit_url = os.getenv("IDENTITY_TOOLKIT_URL", "https://identitytoolkit.googleapis.com").rstrip("/")
        self.identity_api_key = os.getenv("IDENTITY_API_KEY")
        self.identity_timeout = int(os.getenv("IDENTITY_TIMEOUT", 30))

        # Service configuration
        self.service_name = os.getenv("SERVICE_NAME", "mcp-oauth-gateway")
        self.service_version = os.getenv("SERVICE_VERSION", "1.0.0")

        # Logging configuration
        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.log_format = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        self._validate_config()

    def _parse_allowed_origins(self) -> List[str]:
        """Parse allowed origins from environment variable"""
        origins_str = os.getenv("ALLOWED_ORIGINS", "*")
        if origins_str == "*":
            return ["*"]
        return [origin.strip() for origin in origins_str.split(",")]

    def _validate_config(self):
        """Validate configuration values"""
        if self.registration_policy not in REGISTRATION_POLICIES:
            raise ValueError(f"REGISTRATION_POLICY must be one of {', '.join(REGISTRATION_POLICIES)}")

        if self.registration_policy == "require-admin-token" and not self.registration_admin_token:
            raise ValueError("REGISTRATION_ADMIN_TOKEN must be set when REGISTRATION_POLICY is require-admin-token")

        if self.environment == "production":
            if not self.base_url.startswith("https://"):
                raise ValueError("BASE_URL must use HTTPS in production")

        if self.auth_code_ttl < 30 or self.auth_code_ttl > 600:
            raise ValueError("OAUTH_CODE_EXPIRY must be between 30 and 600 seconds")

        if self.token_lifetime < 60 or self.token_lifetime > 3600:
            raise ValueError("OAUTH_TOKEN_LIFETIME must be between 60 and 3600 seconds")

        if self.pending_auth_ttl <= 0:
            raise ValueError("OAUTH_PENDING_AUTH_TTL must be positive")

        if self.cleanup_interval <= 0:
            raise ValueError("CLEANUP_INTERVAL must be positive")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode"""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode"""
        return self.environment == "production"

    @property
    def registration_requires_admin_token(self) -> bool:
        return self.registration_policy == "require-admin-token"

    @property
    def mcp_resource(self) -> str:
        """Resource indicator for the protected MCP endpoint"""
        return f"{self.base_url}/mcp"

