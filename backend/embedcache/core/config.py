"""Runtime configuration helpers.

Classes:
    Settings: Pydantic settings model capturing environment-driven defaults.

Functions:
    get_settings(): Return a cached Settings instance for dependency injection.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        protected_namespaces=("settings_",),
    )

    app_name: str = "Local Embedding Cache API"
    database_url: str = "sqlite+aiosqlite:///./data/embeddings.db"
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    embedding_dimensions: int = 384
    model_cache_dir: str = "./.embedcache/models"
    model_load_attempts: int = 3
    embedding_batch_size: int = 32
    normalize_embeddings: bool = True
    preload_model: bool = False


@lru_cache()
def get_settings() -> Settings:
    return Settings()
