# services/api/settings.py
from pydantic_settings import BaseSettings
from pydantic import ConfigDict, Field
from typing import List, Optional
from pathlib import Path

class Settings(BaseSettings):
    # Storage settings
    # Default to the local SQLite store; override via .env (STORAGE_BACKEND=supabase)
    storage_backend: str = "sqlite"
    db_url: str = "sqlite:///data/orders.db"
    json_data_dir: str = "data/json"

    # ===== Supabase (PostgREST + Storage) =====
    supabase_url: str = ""
    supabase_key: str = ""
    # Optional user JWT; falls back to the service key when empty
    supabase_access_token: Optional[str] = None

    # Timeout for every outbound HTTP call (seconds)
    http_timeout_s: float = 15.0

    # Blob storage for order attachments: "local" or "supabase"
    blob_backend: str = "local"
    blob_local_dir: str = "data/blobs"
    blob_public_base_url: str = "http://localhost:8000/blobs"
    blob_bucket: str = "orders-photos"

    # Realtime reconciliation
    # Events arriving within this window collapse into one refetch.
    realtime_debounce_ms: int = 250
    # With the supabase backend, listen to postgres_changes so edits from other devices arrive too
    supabase_realtime: bool = True

    # Engine caches (orders by id, executor display names by user id)
    order_cache_size: int = 500
    name_cache_size: int = 1000
    name_cache_ttl_s: int = 600

    # Viewer used by the HTTP surface when the caller sends no identity headers
    default_company_id: Optional[str] = Field(
        default=None,
        description="Company whose field settings drive the schema when none is given",
    )

    # CORS settings
    allowed_origins: str = "http://localhost:3000,http://localhost:8000,http://localhost:8081"

    log_level: str = "INFO"

    model_config = ConfigDict(
        # Always load .env from the same folder as this settings.py
        env_file=str(Path(__file__).resolve().parent / ".env"),
        extra="ignore",
    )

    def get_origins_list(self) -> List[str]:
        """Parse comma-separated origins into a list."""
        if not self.allowed_origins:
            return ["*"]
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    def resolved_supabase_token(self) -> str:
        """Bearer token for PostgREST/Storage calls."""
        return self.supabase_access_token or self.supabase_key


_settings_instance = None

def get_settings() -> Settings:
    """Singleton pattern for settings."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance
