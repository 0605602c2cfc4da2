"""
Visit Triage - Configuration Management

Centralized configuration using Pydantic Settings.
All secrets and environment-specific values are loaded from environment variables.
"""

from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Hierarchy (highest to lowest priority):
    1. Environment variables
    2. .env file
    3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: str = "development"
    app_debug: bool = True
    app_log_level: str = "INFO"
    log_json_format: bool = False

    # --- Server ---
    backend_host: str = "0.0.0.0"
    backend_port: int = 8001

    # --- Generative Model ---
    # "dummy" = canned keyword-driven responses (default, no network)
    # "gemini" = Google Gemini via google-genai (requires GEMINI_API_KEY)
    generation_backend: str = "dummy"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"

    # --- Embeddings ---
    # "dummy" = hashed bag-of-words vectors (default, no network)
    # "ollama" = Ollama embeddings endpoint
    embedding_backend: str = "dummy"
    ollama_url: str = "http://127.0.0.1:11434"
    embedding_model: str = "nomic-embed-text"
    embedding_dimensions: int = 256  # Only used by the dummy embedder

    # --- Translation ---
    # "dummy" = tags text with the target locale (default, no network)
    # "google" = Google Cloud Translation v2 REST API
    translation_backend: str = "dummy"
    google_translate_api_key: str = ""
    translation_source_locale: str = "en-US"
    default_language_prefix: str = "en"

    # --- Storage ---
    # "memory" = in-process stores (default, lost on restart)
    # "mongo" = MongoDB via motor (chunk search needs an Atlas vector index)
    storage_backend: str = "memory"
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "visit_triage"
    chunk_collection: str = "visit_chunks"
    session_collection: str = "chats"
    alert_collection: str = "alerts"
    vector_index_name: str = "chunk_vector_index"

    # --- Pipeline ---
    retrieval_top_k: int = 5
    follow_up_history_window: int = 3
    collaborator_timeout_seconds: float = 30.0

    # --- Privacy ---
    anonymize_logs: bool = True  # If True, logs mask visit ids and never contain message content

    # --- Security ---
    allowed_origins: str = "http://localhost:5173"

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse comma-separated origins into list."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings instance.

    Use dependency injection in routes:
        settings: Settings = Depends(get_settings)
    """
    return Settings()

