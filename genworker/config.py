"""
Worker configuration.

Settings come from environment variables (a local .env is loaded first via
python-dotenv) and are passed explicitly into the pipeline context; no module
reads the environment on its own.
"""

import os
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel


class HttpSettings(BaseModel):
    max_retries: int = 5
    base_delay: float = 2.0
    jitter_max: float = 1.0
    timeout: float = 60.0


class SweepSettings(BaseModel):
    batch_size: int = 20
    delay_ms: int = 100
    delay_jitter_ms: int = 100
    max_retries: int = 5
    provider_retry_limit: int = 3
    max_actions_per_instance: int = 4


class WorkerSettings(BaseModel):
    environment: str = "development"
    store_backend: Literal["supabase", "memory"] = "supabase"

    supabase_url: str = ""
    supabase_service_role_key: str = ""
    kie_api_key: str = ""
    fal_api_key: str = ""
    gemini_api_key: str = ""
    worker_shared_secret: str = ""

    http: HttpSettings = HttpSettings()
    sweep: SweepSettings = SweepSettings()

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def load_settings(env_file: Optional[str] = None) -> WorkerSettings:
    """Build WorkerSettings from the environment.

    Args:
        env_file: Optional path to a dotenv file. Defaults to `.env` lookup.
    """
    load_dotenv(env_file)

    return WorkerSettings(
        environment=os.getenv("ENVIRONMENT", "development"),
        store_backend=os.getenv("STORE_BACKEND", "supabase"),
        supabase_url=os.getenv("SUPABASE_URL") or os.getenv("NEXT_PUBLIC_SUPABASE_URL", ""),
        supabase_service_role_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""),
        kie_api_key=os.getenv("KIE_API_KEY", ""),
        fal_api_key=os.getenv("FAL_API_KEY") or os.getenv("FAL_KEY", ""),
        gemini_api_key=os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY", ""),
        worker_shared_secret=os.getenv("WORKER_SHARED_SECRET", ""),
        http=HttpSettings(
            max_retries=_env_int("HTTP_MAX_RETRIES", 5),
            base_delay=_env_float("HTTP_BASE_DELAY", 2.0),
            timeout=_env_float("HTTP_TIMEOUT", 60.0),
        ),
        sweep=SweepSettings(
            batch_size=_env_int("SWEEP_BATCH_SIZE", 20),
            delay_ms=_env_int("SWEEP_DELAY_MS", 100),
            max_retries=_env_int("SWEEP_MAX_RETRIES", 5),
        ),
    )
