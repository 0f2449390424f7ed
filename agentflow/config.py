"""Process configuration, read once from the environment / ``.env``."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Language-model providers
    llm_provider: str = Field(default="openrouter", description="Provider used by the planning loop")
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    sambanova_api_key: str = ""
    sambanova_base_url: str = "https://cloud.sambanova.ai/apis"
    app_url: str = Field(
        default="http://localhost:3000",
        description="Sent as HTTP-Referer to OpenRouter",
    )

    # Workflow engine
    kestra_api_url: str = "http://localhost:8080/api/v1"
    kestra_api_key: str = ""
    llm_secret_name: str = Field(
        default="OPENROUTER_API_KEY",
        description="Name of the engine-side secret holding the provider key used by compiled flows",
    )

    # Runtime behaviour
    max_planning_iterations: int = Field(default=10, ge=1)
    http_timeout: float = Field(default=60.0, description="Total timeout in seconds for outbound HTTP calls")
    log_level: str = "INFO"

    def provider_base_url(self, provider: str) -> str:
        return self.sambanova_base_url if provider == "sambanova" else self.openrouter_base_url
