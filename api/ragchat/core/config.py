"""
Configuration module using Pydantic Settings.

Loads Azure service endpoints, resource names, inference parameters and
pipeline budgets from environment variables. Supports .env files for
local development.
"""

import re
import uuid
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Azure Storage queue names: 3-63 lowercase letters, digits and single hyphens.
QUEUE_NAME_PATTERN = re.compile(r"(?=.{3,63}\Z)[a-z0-9]+(?:-[a-z0-9]+)*")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Azure OpenAI
    azure_openai_endpoint: str
    azure_openai_chat_deployment: str = "gpt-4o"
    azure_openai_api_version: str = "2024-06-01"

    # Inference parameters (fixed per deployment)
    max_tokens: int = 2000
    temperature: float = 0.2
    top_p: float = 0.99
    stop_sequences: list[str] = ["Human: ", "Assistant: "]

    # Azure AI Search
    azure_search_endpoint: str
    azure_search_index_name: str = "documents-idx"
    azure_search_semantic_configuration: str = "default"
    azure_search_top_k: int = 5
    azure_search_content_field: str = "content"
    azure_search_source_field: str = "source_uri"
    azure_search_page_field: str = "page_number"

    # Azure Storage (chat history table + work queue)
    azure_storage_table_endpoint: str = ""
    azure_storage_queue_endpoint: str = ""
    chat_history_table_name: str = "ChatHistory"
    work_queue_name: str = "rag-work-items"
    # Sockets live in one process, so each instance reads its own queue.
    instance_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    queue_backend: str = "azure"

    # Pipeline
    memory_turns: int = 10
    pipeline_timeout_seconds: float = 120.0
    queue_visibility_timeout_seconds: int = 180
    visibility_safety_margin_seconds: int = 30
    queue_poll_interval_seconds: float = 1.0
    worker_count: int = 4

    # Authentication (Microsoft Entra ID)
    auth_enabled: bool = True
    entra_tenant_id: str = ""
    entra_audience: str = ""

    # Application Insights
    applicationinsights_connection_string: str = ""

    # App
    log_level: str = "INFO"
    allowed_origins: str = "http://localhost:3000"

    @model_validator(mode="after")
    def _check_visibility_budget(self) -> "Settings":
        """Redelivery must not happen while an item is still in flight."""
        required = self.pipeline_timeout_seconds + self.visibility_safety_margin_seconds
        if self.queue_visibility_timeout_seconds < required:
            raise ValueError(
                "queue_visibility_timeout_seconds must be at least "
                f"{required:.0f}s (pipeline timeout + safety margin)"
            )
        return self

    @model_validator(mode="after")
    def _check_instance_queue_name(self) -> "Settings":
        if not QUEUE_NAME_PATTERN.fullmatch(self.instance_queue_name):
            raise ValueError(
                f"Invalid queue name {self.instance_queue_name!r}; check "
                "work_queue_name and instance_id"
            )
        return self

    @property
    def instance_queue_name(self) -> str:
        """Work queue read by this instance's workers."""
        return f"{self.work_queue_name}-{self.instance_id}"

    @property
    def cors_origins(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def entra_issuer(self) -> str:
        return f"https://login.microsoftonline.com/{self.entra_tenant_id}/v2.0"

    @property
    def entra_jwks_url(self) -> str:
        return f"https://login.microsoftonline.com/{self.entra_tenant_id}/discovery/v2.0/keys"


@lru_cache
def get_settings() -> Settings:
    """Factory for cached settings instance."""
    return Settings()
