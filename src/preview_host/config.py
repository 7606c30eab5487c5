"""Preview host configuration."""

from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings

# Paths used when running inside the hosted (Railway) container image
HOSTED_FARCASTER_TEMPLATE = "/srv/boilerplate-farcaster"
HOSTED_WEB3_TEMPLATE = "/srv/boilerplate-web3"
HOSTED_PREVIEWS_ROOT = "/tmp/previews"  # noqa: S108
HOSTED_PACKAGE_STORE = "/tmp/.pnpm-store"  # noqa: S108
LOCAL_PREVIEWS_ROOT = "/srv/previews"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Variable names match the ones the preview host has always read
    (``PORT``, ``PREVIEW_AUTH_TOKEN``, ``ENABLE_VERCEL_DEPLOYMENT`` ...).
    """

    # Service
    environment: Literal["development", "staging", "production", "test"] = "development"
    debug: bool = False
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080
    shutdown_timeout: int = 30

    # Bearer token for management endpoints. Empty disables auth.
    preview_auth_token: str = ""

    # Hosted environment detection
    railway_environment: bool = False
    force_external_deployment: bool = False

    # Templates ("boilerplates") per app family
    farcaster_boilerplate_dir: str | None = None
    web3_boilerplate_dir: str | None = None

    # Disk layout
    previews_root: str | None = None
    pnpm_store_dir: str | None = None

    # Port allocation window
    base_port: int = 4000
    port_window: int = 2000

    # Dev server
    dev_command: list[str] = ["npx", "next", "dev", "-p", "{port}", "-H", "127.0.0.1"]
    readiness_timeout_seconds: float = 1000.0
    restart_readiness_timeout_seconds: float = 60.0
    readiness_poll_interval_seconds: float = 0.3
    stop_grace_seconds: float = 1.0

    # Dependency install
    install_program: str = "npm"
    install_args: list[str] = ["install", "--prefer-offline", "--legacy-peer-deps"]
    install_artifact: str = "node_modules/.bin/next"
    install_timeout_seconds: float = 120.0
    hosted_install_timeout_seconds: float = 300.0

    # Directory cleanup
    dir_remove_attempts: int = 3
    dir_remove_backoff_seconds: float = 1.0

    # Idle reaping and job retention
    reaper_interval_seconds: float = 60.0
    idle_timeout_seconds: float = 30 * 60
    job_ttl_seconds: float = 24 * 60 * 60

    # Log buffers
    log_ring_capacity: int = 4000
    log_tail_chars: int = 4000

    # Read-only command execution inside previews
    execute_timeout_seconds: float = 30.0

    # External deployments
    deploy_response_threshold_seconds: float = 120.0
    enable_vercel_deployment: bool = False
    enable_netlify_deployment: bool = False
    deployment_token_secret: str = ""
    netlify_token: str = ""
    vercel_team_id: str | None = Field(
        default=None, validation_alias=AliasChoices("VERCEL_TEAM_ID", "VERCEL_ORG_ID")
    )
    vercel_api_url: str = "https://api.vercel.com"

    # Custom domains
    custom_domain_base: str = "minidev.fun"
    enable_custom_domains: bool = False

    # Smart contracts
    enable_contract_deployment: bool = False
    private_key: str = ""
    base_sepolia_rpc_url: str = "https://sepolia.base.org"

    # Job tracking service that receives failure callbacks
    miniapp_creator_url: str = Field(
        default="http://localhost:3000",
        validation_alias=AliasChoices("MINIAPP_CREATOR_URL", "NEXT_PUBLIC_APP_URL"),
    )
    callback_timeout_seconds: float = 10.0

    # Sentry
    sentry_dsn: str | None = None
    sentry_traces_sample_rate: float = 0.2
    sentry_profiles_sample_rate: float = 0.1

    model_config = {"env_prefix": "", "case_sensitive": False, "populate_by_name": True}

    @property
    def is_hosted(self) -> bool:
        """Running in the hosted environment (or forced to behave like it)."""
        return self.railway_environment or self.force_external_deployment

    @property
    def external_only(self) -> bool:
        """All deployments go to an external platform; no local previews."""
        return self.is_hosted and self.force_external_deployment

    @property
    def previews_path(self) -> Path:
        if self.previews_root:
            return Path(self.previews_root)
        return Path(HOSTED_PREVIEWS_ROOT if self.is_hosted else LOCAL_PREVIEWS_ROOT)

    @property
    def package_store_path(self) -> Path:
        if self.pnpm_store_dir:
            return Path(self.pnpm_store_dir)
        if self.is_hosted:
            return Path(HOSTED_PACKAGE_STORE)
        return self.previews_path / ".pnpm-store"

    @property
    def farcaster_template_path(self) -> Path:
        if self.farcaster_boilerplate_dir:
            return Path(self.farcaster_boilerplate_dir)
        if self.is_hosted:
            return Path(HOSTED_FARCASTER_TEMPLATE)
        return Path.cwd().parent / "boilerplate"

    @property
    def web3_template_path(self) -> Path:
        if self.web3_boilerplate_dir:
            return Path(self.web3_boilerplate_dir)
        if self.is_hosted:
            return Path(HOSTED_WEB3_TEMPLATE)
        return Path.cwd().parent.parent / "web3-boilerplate"

    def template_path(self, is_web3: bool = False) -> Path:
        """Template directory for the requested app family."""
        return self.web3_template_path if is_web3 else self.farcaster_template_path

    @property
    def effective_install_timeout(self) -> float:
        if self.is_hosted:
            return self.hosted_install_timeout_seconds
        return self.install_timeout_seconds

    @property
    def vercel_enabled(self) -> bool:
        return self.enable_vercel_deployment and bool(self.deployment_token_secret)

    @property
    def netlify_enabled(self) -> bool:
        return self.enable_netlify_deployment and bool(self.netlify_token)

    @property
    def contracts_enabled(self) -> bool:
        return self.enable_contract_deployment and bool(self.private_key)


settings = Settings()
