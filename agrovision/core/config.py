from pathlib import Path

from pydantic_settings import BaseSettings

_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    app_name: str = "AgroVision"
    debug: bool = False

    # Paths
    data_dir: Path = _ROOT / "data"
    database_url: str = f"sqlite:///{_ROOT / 'agrovision.db'}"

    # Auth
    jwt_secret: str = "change-me-agrovision-development-secret"
    jwt_algorithm: str = "HS256"
    token_expiry_days: int = 7

    # History service
    preview_length: int = 50

    # Client
    api_base_url: str = "http://localhost:8000"
    local_cache_path: Path = _ROOT / "data" / "local_storage.json"
    history_retry_attempts: int = 3
    history_retry_backoff: float = 1.0  # seconds, multiplied by the attempt number

    # Server
    cors_origins: list[str] = ["*"]

    model_config = {
        "env_file": str(_ROOT / ".env"),
        "env_prefix": "AGROVISION_",
    }


settings = Settings()
