from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ------------------------------------------------------------------
    # Connector mode
    # ------------------------------------------------------------------
    # "simulator": always use in-memory simulators (default, no external calls)
    # "hybrid":    use the real connector per kind when it is configured,
    #               fall back to the simulator when not
    # "real":      same routing as hybrid; signals intent to use real services
    connector_mode: Literal["simulator", "hybrid", "real"] = "simulator"

    # ------------------------------------------------------------------
    # Storage and engine limits
    # ------------------------------------------------------------------
    database_path: str = "./data/flowrunner.db"
    max_steps: int = 1000                   # goto cycles end the run after this many steps
    max_compensation_depth: int = 8
    http_timeout: float = 30.0              # seconds
    script_timeout: float = 30.0            # seconds

    # ------------------------------------------------------------------
    # Scripts (subprocess runner is off unless explicitly enabled)
    # ------------------------------------------------------------------
    allow_script_execution: bool = False

    # ------------------------------------------------------------------
    # CRUD databases and local files
    # ------------------------------------------------------------------
    crud_data_dir: str = "./data/crud"      # one SQLite file per database name
    file_root: str = "./data/files"

    # ------------------------------------------------------------------
    # S3 / MinIO object storage
    # ------------------------------------------------------------------
    s3_endpoint_url: Optional[str] = None
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None
    s3_region: str = "us-east-1"
    s3_bucket: Optional[str] = None         # used when an operation names no bucket

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True
    smtp_from: Optional[str] = None

    slack_bot_token: Optional[str] = None   # xoxb-...

    sms_gateway_url: Optional[str] = None   # POST {to, message}
    sms_api_key: Optional[str] = None       # Bearer token

    # ------------------------------------------------------------------
    # API
    # ------------------------------------------------------------------
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
