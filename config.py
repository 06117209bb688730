import os
from typing import List

DEFAULT_SECRET_KEY = "your-secret-key-change-in-production"


class Config:
    """Configuration management for the OAuth authorization server"""

    def __init__(self):
        # Server configuration
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = int(os.getenv("PORT", 8000))
        self.environment = os.getenv("ENVIRONMENT", "production")
        self.base_url = os.getenv("BASE_URL", "http://localhost:8000").rstrip("/")
        self.resource_url = os.getenv("RESOURCE_URL", self.base_url).rstrip("/")

        # Security configuration
        self.secret_key = os.getenv("SECRET_KEY", DEFAULT_SECRET_KEY)
        self.allowed_origins = self._parse_list("ALLOWED_ORIGINS", "*")

        # OAuth configuration
        self.oauth_code_expiry = int(os.getenv("OAUTH_CODE_EXPIRY", 300))  # 5 minutes
        self.oauth_token_expiry = int(os.getenv("OAUTH_TOKEN_EXPIRY", 30 * 24 * 60 * 60))  # 30 days

        # Storage configuration
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./oauth.db")
        self.redis_url = os.getenv("REDIS_URL")  # Optional Redis for authorization codes

        # Cleanup configuration
        self.cleanup_interval = int(os.getenv("CLEANUP_INTERVAL", 300))  # 5 minutes

        # End-user identity
        self.identity_header = os.getenv("IDENTITY_HEADER")  # e.g. X-Forwarded-User behind an auth proxy
        self.login_url = os.getenv("LOGIN_URL")

        # Resource server guard
        self.mcp_api_key = os.getenv("MCP_API_KEY")
        self.mcp_allowed_ips = self._parse_list("MCP_ALLOWED_IPS", "")

        # Logging configuration
        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.log_format = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        self._validate_config()

    def _parse_list(self, name: str, default: str) -> List[str]:
        """Parse a comma-separated environment variable"""
        raw = os.getenv(name, default)
        if raw == "*":
            return ["*"]
        return [item.strip() for item in raw.split(",") if item.strip()]

    def _validate_config(self):
        """Validate configuration values"""
        if self.environment == "production":
            if self.secret_key == DEFAULT_SECRET_KEY:
                raise ValueError("SECRET_KEY must be set in production")

            if not self.base_url.startswith("https://"):
                raise ValueError("BASE_URL must use HTTPS in production")

        if self.oauth_code_expiry < 30 or self.oauth_code_expiry > 600:
            raise ValueError("OAUTH_CODE_EXPIRY must be between 30 and 600 seconds")

        if self.oauth_token_expiry < 300:  # 5 minutes minimum
            raise ValueError("OAUTH_TOKEN_EXPIRY must be at least 300 seconds")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode"""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode"""
        return self.environment == "production"

    @property
    def resource_metadata_url(self) -> str:
        return f"{self.base_url}/.well-known/oauth-protected-resource"

    def endpoint(self, path: str) -> str:
        """Absolute URL for a path on this server"""
        return f"{self.base_url}/{path.lstrip('/')}"
