from typing import Optional

from .config import WorkerSettings
from .fal import FalMergeProvider
from .gemini import GeminiAnalyst
from .http_client import RetryPolicy
from .kie import KieClient, KieImageProvider, KieVideoProvider
from .pipeline.context import PipelineContext
from .pipeline.store import InMemoryStore, WorkflowStore
from .pipeline.supabase_store import SupabaseStore


class ProviderFactory:
    @staticmethod
    def get_store(settings: WorkerSettings) -> WorkflowStore:
        if settings.store_backend == "memory":
            return InMemoryStore()
        if not settings.supabase_url or not settings.supabase_service_role_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required for the supabase store")
        return SupabaseStore.from_credentials(settings.supabase_url, settings.supabase_service_role_key)

    @staticmethod
    def get_retry_policy(settings: WorkerSettings) -> RetryPolicy:
        return RetryPolicy(
            max_retries=settings.http.max_retries,
            base_delay=settings.http.base_delay,
            jitter_max=settings.http.jitter_max,
        )

    @staticmethod
    def build_context(settings: WorkerSettings, store: Optional[WorkflowStore] = None) -> PipelineContext:
        """Wire the store and every provider client into one PipelineContext."""
        policy = ProviderFactory.get_retry_policy(settings)
        timeout = settings.http.timeout
        kie_client = KieClient(settings.kie_api_key, policy=policy, timeout=timeout)

        return PipelineContext(
            store=store or ProviderFactory.get_store(settings),
            image_provider=KieImageProvider(kie_client),
            video_provider=KieVideoProvider(kie_client),
            merge_provider=FalMergeProvider(settings.fal_api_key, policy=policy, timeout=timeout),
            analyst=GeminiAnalyst(settings.gemini_api_key, policy=policy, timeout=timeout),
            settings=settings.sweep,
        )
