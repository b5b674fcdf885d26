import os

import pytest

from genworker.config import WorkerSettings, load_settings
from genworker.fal import FalMergeProvider
from genworker.kie import KieImageProvider, KieVideoProvider
from genworker.pipeline.store import InMemoryStore
from genworker.provider_factory import ProviderFactory

ENV_KEYS = (
    "ENVIRONMENT", "STORE_BACKEND", "SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY", "KIE_API_KEY", "FAL_API_KEY", "FAL_KEY",
    "GEMINI_API_KEY", "GOOGLE_API_KEY", "WORKER_SHARED_SECRET",
    "SWEEP_BATCH_SIZE", "SWEEP_DELAY_MS", "SWEEP_MAX_RETRIES",
    "HTTP_MAX_RETRIES", "HTTP_BASE_DELAY", "HTTP_TIMEOUT",
)


@pytest.fixture
def clean_env(monkeypatch):
    # load_dotenv writes to os.environ; keep those writes out of other tests
    monkeypatch.setattr(os, "environ", {k: v for k, v in os.environ.items() if k not in ENV_KEYS})


def test_settings_from_env_file(tmp_path, clean_env):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "STORE_BACKEND=memory\n"
        "KIE_API_KEY=kie-key\n"
        "FAL_KEY=fal-key\n"
        "SWEEP_BATCH_SIZE=5\n"
        "HTTP_TIMEOUT=12.5\n"
    )

    settings = load_settings(str(env_file))

    assert settings.store_backend == "memory"
    assert settings.kie_api_key == "kie-key"
    assert settings.fal_api_key == "fal-key"
    assert settings.sweep.batch_size == 5
    assert settings.http.timeout == 12.5
    assert settings.is_development


def test_defaults(tmp_path, clean_env):
    settings = load_settings(str(tmp_path / "missing.env"))

    assert settings.sweep.batch_size == 20
    assert settings.sweep.delay_ms == 100
    assert settings.sweep.max_retries == 5
    assert settings.http.max_retries == 5


def test_factory_builds_memory_context():
    settings = WorkerSettings(store_backend="memory", kie_api_key="k", fal_api_key="f", gemini_api_key="g")

    ctx = ProviderFactory.build_context(settings)

    assert isinstance(ctx.store, InMemoryStore)
    assert isinstance(ctx.image_provider, KieImageProvider)
    assert isinstance(ctx.video_provider, KieVideoProvider)
    assert isinstance(ctx.merge_provider, FalMergeProvider)
    assert ctx.settings.batch_size == 20


def test_supabase_store_needs_credentials():
    with pytest.raises(RuntimeError, match="SUPABASE_URL"):
        ProviderFactory.get_store(WorkerSettings(store_backend="supabase"))
