"""Application configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

DEFAULT_SYSTEM_PROMPT = (
    "You are a customer support assistant for TechBay, an online store that sells "
    "sports gear (including sports clothes), electronics and appliances, and travel "
    "bags and suitcases. Classify the customer query into one of these three "
    "categories and call the appropriate function."
)


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Main chat backend (OpenAI chat-completions protocol)
    upstream_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices(
            "OPENAI_API_KEY", "UPSTREAM_API_KEY", "upstream_api_key"
        ),
    )
    upstream_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.openai.com/v1"),
        validation_alias=AliasChoices(
            "UPSTREAM_BASE_URL", "OPENAI_BASE_URL", "upstream_base_url"
        ),
    )
    upstream_model: str = Field(
        default="gpt-3.5-turbo",
        validation_alias=AliasChoices("UPSTREAM_MODEL", "upstream_model"),
    )
    upstream_timeout: float = Field(
        default=60.0,
        validation_alias=AliasChoices("UPSTREAM_TIMEOUT", "upstream_timeout"),
        ge=1,
    )
    classifier_mode: Literal["streaming", "single_shot"] = Field(
        default="streaming",
        validation_alias=AliasChoices("CLASSIFIER_MODE", "classifier_mode"),
    )
    system_prompt: str = Field(
        default=DEFAULT_SYSTEM_PROMPT,
        validation_alias=AliasChoices("SUPPORT_SYSTEM_PROMPT", "system_prompt"),
    )

    # Follow-up turns after department calls
    summarize_after_tools: bool = Field(
        default=True,
        validation_alias=AliasChoices(
            "SUMMARIZE_AFTER_TOOLS", "summarize_after_tools"
        ),
    )
    summary_prompt: str = Field(
        default="Summarize the current status for the customer.",
        validation_alias=AliasChoices("SUMMARY_PROMPT", "summary_prompt"),
    )
    max_summary_turns: int = Field(
        default=3,
        ge=0,
        validation_alias=AliasChoices("MAX_SUMMARY_TURNS", "max_summary_turns"),
    )

    # Department pipes
    department_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.langbase.com/beta/generate"),
        validation_alias=AliasChoices("LANGBASE_GENERATE_URL", "department_url"),
    )
    langbase_sports_pipe_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices(
            "LANGBASE_SPORTS_PIPE_API_KEY", "langbase_sports_pipe_api_key"
        ),
    )
    langbase_electronics_pipe_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices(
            "LANGBASE_ELECTRONICS_PIPE_API_KEY", "langbase_electronics_pipe_api_key"
        ),
    )
    langbase_travel_pipe_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices(
            "LANGBASE_TRAVEL_PIPE_API_KEY", "langbase_travel_pipe_api_key"
        ),
    )
    department_streaming: bool = Field(
        default=False,
        validation_alias=AliasChoices("DEPARTMENT_STREAMING", "department_streaming"),
    )
    department_timeout: float = Field(
        default=30.0,
        validation_alias=AliasChoices("DEPARTMENT_TIMEOUT", "department_timeout"),
        ge=1,
    )

    # Browser clients
    allowed_origin: str = Field(
        default="http://localhost:3000",
        validation_alias=AliasChoices("ALLOWED_ORIGIN", "allowed_origin"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["Settings", "get_settings"]
