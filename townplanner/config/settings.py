"""Application settings loaded from environment variables via pydantic-settings.

# ─── HOW SETTINGS WORK ─────────────────────────────────────────────────
#
# Values are resolved from (highest priority first):
#
#   1. Environment variables  -- e.g. OPENAI_API_KEY=sk-abc123
#   2. .env file              -- local development overrides
#   3. config/config.yaml     -- applied by townplanner.config.loader
#   4. The defaults below
#
# Field name `openai_api_key` maps to env var `OPENAI_API_KEY`.
# Empty strings mean "not configured": provider selection in main.py
# skips providers whose key is empty.
# ──────────────────────────────────────────────────────────────────────
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Town-planner pipeline settings."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # === App ===
    app_env: str = "development"
    log_level: str = "INFO"

    # === LLM Providers ===
    llm_provider: str = ""  # preferred provider name; empty = first available
    openai_api_key: str = ""
    openai_base_url: str = ""
    openai_text_model: str = ""
    openai_embedding_model: str = ""
    anthropic_api_key: str = ""
    anthropic_model: str = ""
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = ""
    ollama_embedding_model: str = ""
    embedding_provider: str = ""  # "openai" | "ollama"; empty = first available

    # === Document parsing ===
    llamacloud_api_key: str = ""
    llamacloud_base_url: str = "https://api.cloud.llamaindex.ai"
    parse_poll_interval_seconds: float = 5.0
    parse_poll_max_attempts: int = 60

    # === Timeouts (seconds) ===
    generation_timeout_seconds: float = 120.0
    embedding_timeout_seconds: float = 60.0
    parse_timeout_seconds: float = 60.0

    # === Retry ===
    retry_max_attempts: int = 3
    retry_interval_seconds: float = 2.0
    retry_backoff_factor: float = 2.0

    # === Chunking ===
    chunk_max_size: int = Field(default=1500, gt=0)
    chunk_min_paragraph_length: int = Field(default=20, ge=0)

    # === Metadata extraction ===
    metadata_max_chars: int = 8000
    metadata_fuzzy_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    metadata_confidence_strategy: str = "reported"
    metadata_temperature: float = 0.1

    # === Retrieval ===
    embedding_batch_size: int = 32
    retrieval_top_k: int = 5
    retrieval_similarity_threshold: float = 0.3
    retrieval_max_concurrency: int = 4

    # === Reports ===
    report_section_concurrency: int = 3
    report_completion_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    report_temperature: float = 0.3
    report_max_tokens: int = 2000
    report_output_dir: str = "data/reports"
    report_templates_path: str = "config/report_templates.yaml"

    # === Storage ===
    database_path: str = "data/townplanner.db"

    # === Notification ===
    webhook_url: str = ""
    outbox_max_attempts: int = 5
