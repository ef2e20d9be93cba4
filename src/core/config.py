"""Entra Graph Samples — Configuration loader.

Loads settings from environment variables (sourced from .env or App Service
configuration). Uses pydantic-settings for validation and type coercion.
"""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application-wide settings, loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Entra ID app registration ─────────────────────────
    azure_tenant_id: str = ""
    azure_client_id: str = ""
    azure_client_secret: str = ""  # blank → use Managed Identity

    # ── Microsoft Graph API ───────────────────────────────
    graph_scopes: str = "User.Read,User.ReadBasic.All,Group.Read.All"
    graph_collection_max_rows: int = 50
    graph_page_timeout_seconds: float = 0.0  # 0 → no per-page timeout

    # ── Azure Application Insights ────────────────────────
    applicationinsights_connection_string: str = ""

    # ── App Settings ──────────────────────────────────────
    log_level: str = "INFO"
    environment: str = "development"
    port: int = 8000

    @property
    def graph_scope_list(self) -> list[str]:
        """Parse comma-separated Graph scopes into a list."""
        return [s.strip() for s in self.graph_scopes.split(",") if s.strip()]

    @property
    def graph_page_timeout(self) -> float | None:
        if self.graph_page_timeout_seconds <= 0:
            return None
        return self.graph_page_timeout_seconds

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def use_managed_identity(self) -> bool:
        """Use Managed Identity when no client secret is set."""
        return not self.azure_client_secret


# Singleton — import this from anywhere
settings = Settings()
