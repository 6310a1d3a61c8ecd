# settings.py
from pydantic import BaseModel, Field
from dotenv import load_dotenv
import os

# Load variables from .env at import time
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


class Settings(BaseModel):
    # ---- Job API (fal queue + storage) ----
    fal_key: str = Field(default=os.getenv("FAL_KEY") or os.getenv("FAL_API_KEY", ""))
    fal_model_id: str = Field(default=os.getenv("FAL_MODEL_ID", "fal-ai/kling-video/v2.1/pro/image-to-video"))
    fal_queue_url: str = Field(default=os.getenv("FAL_QUEUE_URL", "https://queue.fal.run"))
    fal_storage_url: str = Field(default=os.getenv("FAL_STORAGE_URL", "https://rest.alpha.fal.ai"))

    # Generation defaults
    generation_duration: str = Field(default=os.getenv("GENERATION_DURATION", "5"))
    generation_aspect_ratio: str = Field(default=os.getenv("GENERATION_ASPECT_RATIO", "16:9"))
    generation_cfg_scale: float = Field(default=float(os.getenv("GENERATION_CFG_SCALE", "0.5")))

    # Polling / timeouts
    poll_interval_ms: int = Field(default=int(os.getenv("POLL_INTERVAL_MS", "2000")))
    poll_max_attempts: int = Field(default=int(os.getenv("POLL_MAX_ATTEMPTS", "450")))
    request_timeout_s: float = Field(default=float(os.getenv("REQUEST_TIMEOUT_S", "60")))
    attempt_ttl_s: float = Field(default=float(os.getenv("ATTEMPT_TTL_S", "3600")))

    # ---- Row store (GridDB Web API) ----
    griddb_webapi_url: str = Field(default=os.getenv("GRIDDB_WEBAPI_URL", ""))
    griddb_username: str = Field(default=os.getenv("GRIDDB_USERNAME", ""))
    griddb_password: str = Field(default=os.getenv("GRIDDB_PASSWORD", ""))
    griddb_container: str = Field(default=os.getenv("GRIDDB_CONTAINER", "camvidai"))
    verify_record_ids: bool = Field(default=_env_bool("VERIFY_RECORD_IDS", "true"))

    # ---- Asset storage: "fal" (job API storage) or "r2" ----
    storage: str = Field(default=os.getenv("STORAGE", "fal").lower())
    r2_access_key_id: str = Field(default=os.getenv("R2_ACCESS_KEY_ID", ""))
    r2_secret_access_key: str = Field(default=os.getenv("R2_SECRET_ACCESS_KEY", ""))
    r2_endpoint_url: str = Field(default=os.getenv("R2_ENDPOINT_URL", ""))
    r2_bucket: str = Field(default=os.getenv("R2_BUCKET", "camvid"))
    r2_public_base: str = Field(default=os.getenv("R2_PUBLIC_BASE", ""))

    # ---- App ----
    public_base_url: str = Field(default=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000"))
    cors_origins: str = Field(default=os.getenv("CORS_ORIGINS", "*"))
    debug: bool = Field(default=_env_bool("DEBUG", "false"))
    log_level: str = Field(default=os.getenv("LOG_LEVEL", "INFO"))

    @property
    def griddb_configured(self) -> bool:
        return bool(self.griddb_webapi_url and self.griddb_username and self.griddb_password)

    @property
    def webhook_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/api/fal-webhook"


settings = Settings()
