from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"

DEFAULT_LEVEL_NAMES = ["Undergrad", "Graduate"]
DEFAULT_CLASS_NAMES = [
    "First-Year",
    "Sophomore",
    "Junior",
    "Senior",
    "Fifth-Year Senior",
    "Masters",
    "Doctoral",
]


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Public base URL of this service (verification links and OAuth callback)
    APP_URL: str = "http://localhost:3000"
    PORT: int = 3000

    # Redis settings
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 20

    # Discord settings
    DISCORD_TOKEN: str | None = None
    DISCORD_API_BASE: str = "https://discord.com/api/v10"

    # Keycloak settings
    KEYCLOAK_URL: str = "http://localhost:8080"
    KEYCLOAK_REALM: str = "master"
    KEYCLOAK_OIDC_CLIENT_ID: str | None = None
    KEYCLOAK_OIDC_CLIENT_SECRET: str | None = None
    KEYCLOAK_ADMIN_CLIENT_ID: str | None = None
    KEYCLOAK_ADMIN_CLIENT_SECRET: str | None = None

    # Shared secret used by the chat bot process to call the internal API
    INTERNAL_API_TOKEN: str | None = None

    # =================================================================
    # VERIFICATION SETTINGS
    # =================================================================
    VERIFICATION_TTL_SECONDS: int = 600  # 10 minutes
    LEVEL_NAMES: list[str] = Field(default_factory=lambda: list(DEFAULT_LEVEL_NAMES))
    CLASS_NAMES: list[str] = Field(default_factory=lambda: list(DEFAULT_CLASS_NAMES))

    # role_resync worker job: guild and comma-separated member ids
    RESYNC_GUILD_ID: str | None = None
    RESYNC_MEMBER_IDS: str | None = None

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # derive sensible defaults if not provided
    def app_base_url(self) -> str:
        return self.APP_URL.rstrip("/")

    def verify_url(self, token: str) -> str:
        """Link handed to the member to begin the identity provider flow."""
        return f"{self.app_base_url()}/verify?state={token}"

    def oauth_redirect_uri(self) -> str:
        return f"{self.app_base_url()}/auth/callback"

    def keycloak_realm_url(self) -> str:
        base = self.KEYCLOAK_URL.rstrip("/")
        return f"{base}/realms/{self.KEYCLOAK_REALM}"

    def keycloak_authorize_url(self) -> str:
        return f"{self.keycloak_realm_url()}/protocol/openid-connect/auth"

    def keycloak_token_url(self) -> str:
        return f"{self.keycloak_realm_url()}/protocol/openid-connect/token"

    def keycloak_jwks_url(self) -> str:
        return f"{self.keycloak_realm_url()}/protocol/openid-connect/certs"

    def keycloak_admin_users_url(self) -> str:
        base = self.KEYCLOAK_URL.rstrip("/")
        return f"{base}/admin/realms/{self.KEYCLOAK_REALM}/users"


settings = Settings()
