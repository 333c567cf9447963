from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8"
    )

    project_id: str = Field(default="local-dev", alias="GCP_PROJECT")
    region: str = Field(default="asia-northeast1", alias="GCP_REGION")
    firestore_enabled: bool = Field(default=False, alias="FIRESTORE_ENABLED")
    firestore_namespace: Optional[str] = Field(default=None, alias="FIRESTORE_NAMESPACE")
    storage_enabled: bool = Field(default=False, alias="STORAGE_ENABLED")
    assets_bucket: str = Field(default="long-form-drafter-dev", alias="ASSETS_BUCKET")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    llm_provider: str = Field(default="openai", alias="LLM_PROVIDER")
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    openai_model: str = Field(default="gpt-5", alias="OPENAI_MODEL")
    openai_image_model: str = Field(default="gpt-image-1", alias="OPENAI_IMAGE_MODEL")
    anthropic_api_key: Optional[str] = Field(default=None, alias="ANTHROPIC_API_KEY")
    anthropic_model: str = Field(default="claude-sonnet-4-5", alias="ANTHROPIC_MODEL")
    log_prompts: bool = Field(default=False, alias="LOG_PROMPTS")
    log_prompts_max_chars: int = Field(default=2000, alias="LOG_PROMPTS_MAX_CHARS")

    search_api_key: Optional[str] = Field(default=None, alias="SEARCH_API_KEY")
    search_engine_id: Optional[str] = Field(default=None, alias="SEARCH_ENGINE_ID")
    search_endpoint: str = Field(
        default="https://www.googleapis.com/customsearch/v1", alias="SEARCH_ENDPOINT"
    )
    search_locale: str = Field(default="ja", alias="SEARCH_LOCALE")
    extract_timeout_seconds: float = Field(default=30.0, alias="EXTRACT_TIMEOUT_SECONDS")
    extract_user_agent: str = Field(
        default="Mozilla/5.0 (compatible; LongFormDrafter/1.0)", alias="EXTRACT_USER_AGENT"
    )

    retry_attempts: int = Field(default=3, alias="RETRY_ATTEMPTS")
    retry_base_delay_seconds: float = Field(default=1.0, alias="RETRY_BASE_DELAY_SECONDS")
    retry_step_seconds: float = Field(default=1.5, alias="RETRY_STEP_SECONDS")
    max_sections_per_advance: int = Field(default=4, alias="MAX_SECTIONS_PER_ADVANCE")
    run_budget_seconds: float = Field(default=240.0, alias="RUN_BUDGET_SECONDS")
    max_transient_retries: int = Field(default=5, alias="MAX_TRANSIENT_RETRIES")
    event_log_size: int = Field(default=50, alias="EVENT_LOG_SIZE")
    padding_ratio: float = Field(default=0.88, alias="PADDING_RATIO")
    generate_banner: bool = Field(default=False, alias="GENERATE_BANNER")


@lru_cache
def get_settings() -> Settings:
    return Settings()
