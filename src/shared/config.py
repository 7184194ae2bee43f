"""Configuration management for the Bedrock chat core.

Supports YAML configuration files and environment variable overrides.
Configuration is loaded once and cached for performance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_REGION = "us-east-1"
DEFAULT_MODEL_ID = "anthropic.claude-v2:1"


class AWSSettings(BaseSettings):
    """AWS region and credential source."""
    region: str = Field(default=DEFAULT_REGION)
    credential_provider: str = Field(
        default="boto3",
        description="Credential source: boto3, cognito, static"
    )
    profile_name: Optional[str] = Field(default=None, description="Named boto3 profile")
    identity_pool_id: Optional[str] = Field(default=None, description="Cognito identity pool")
    access_key_id: Optional[str] = Field(default=None)
    secret_access_key: Optional[str] = Field(default=None)
    session_token: Optional[str] = Field(default=None)

    model_config = SettingsConfigDict(
        env_prefix="CHAT_AWS_",
        env_file=".env",
        extra="ignore"
    )


class ModelSettings(BaseSettings):
    """Text-generation model configuration."""
    provider: str = Field(default="bedrock", description="Model provider: bedrock, mock")
    model_id: str = Field(default=DEFAULT_MODEL_ID)
    streaming: bool = Field(default=True)
    max_tokens: int = Field(default=4096, gt=0)
    temperature: float = Field(default=0.8, ge=0, le=1)
    top_p: float = Field(default=0.32, ge=0, le=1)
    top_k: int = Field(default=175, ge=0)
    stop_sequences: list[str] = Field(default_factory=list)

    model_config = SettingsConfigDict(
        env_prefix="CHAT_MODEL_",
        env_file=".env",
        extra="ignore",
        protected_namespaces=()
    )


class RetrievalSettings(BaseSettings):
    """Result counts and generation target for retrieval paths."""
    vector_store_k: int = Field(default=4, gt=0)
    knowledge_base_k: int = Field(default=10, gt=0)
    direct_retrieve_k: int = Field(default=5, gt=0)
    return_source_documents: bool = Field(default=False)
    generation_model_arn: str = Field(
        default=f"arn:aws:bedrock:{DEFAULT_REGION}::foundation-model/{DEFAULT_MODEL_ID}"
    )

    model_config = SettingsConfigDict(
        env_prefix="CHAT_RETRIEVAL_",
        env_file=".env",
        extra="ignore"
    )


class PersonaSettings(BaseSettings):
    """Persona of the retrieval assistant."""
    assistant_name: str = Field(default="Claudia")
    organization: str = Field(default="Bina Nusantara university")
    topics: str = Field(default="Bina Nusantara, Binus, university, students, or staffs")
    language: str = Field(default="Bahasa Indonesia")
    fallback_answer: str = Field(
        default="Maaf, saya tidak tahu jawabannya. Silakan hubungi tim Binus Support."
    )

    model_config = SettingsConfigDict(
        env_prefix="CHAT_PERSONA_",
        env_file=".env",
        extra="ignore"
    )


class APISettings(BaseSettings):
    """HTTP API and session configuration."""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    # Sessions
    max_turns: Optional[int] = Field(default=50)
    session_ttl_minutes: int = Field(default=60)
    cleanup_interval_seconds: int = Field(default=300)

    # Caller-side retry for idempotent knowledge base listing
    kb_list_retry_attempts: int = Field(default=3, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="CHAT_API_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    library_log_level: str = Field(default="WARNING", description="Floor for boto3/botocore/HTTP client logs")

    # Component settings
    aws: AWSSettings = Field(default_factory=AWSSettings)
    model: ModelSettings = Field(default_factory=ModelSettings)
    retrieval: RetrievalSettings = Field(default_factory=RetrievalSettings)
    persona: PersonaSettings = Field(default_factory=PersonaSettings)
    api: APISettings = Field(default_factory=APISettings)

    model_config = SettingsConfigDict(
        env_prefix="CHAT_",
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        return cls(**load_yaml_config(path))


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file."""
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("CHAT_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
