from typing import Optional

from ..config import Settings
from .base import AssistantClient, RealtimeSessionClient, SpeechClient, ThreadStore
from .mock import InMemoryThreadStore, MockAssistantClient, MockRealtimeClient, MockSpeechClient


def _provider(settings: Settings, override: Optional[str]) -> str:
    return (override or settings.ai_provider or "openai").strip().lower()


def get_assistant_client(settings: Settings, provider: Optional[str] = None) -> AssistantClient:
    """Return the platform client selected by AI_PROVIDER.

    Unlike chat providers there is no silent fallback: a relay wired to the
    mock platform in production would answer every user with canned text.
    """
    prov = _provider(settings, provider)
    if prov in ("mock", "test"):
        return MockAssistantClient(assistant_id=settings.assistant_id or None)
    if prov == "openai":
        from .openai_api import OpenAIAssistantClient
        return OpenAIAssistantClient(
            api_key=settings.openai_api_key,
            assistant_id=settings.assistant_id,
            base_url=settings.openai_base_url,
            timeout=settings.http_timeout_seconds,
        )
    raise ValueError(f"Unknown AI_PROVIDER: {prov!r}")


def get_speech_client(settings: Settings, provider: Optional[str] = None) -> SpeechClient:
    prov = _provider(settings, provider)
    if prov in ("mock", "test"):
        return MockSpeechClient()
    if prov == "openai":
        from .openai_api import OpenAISpeechClient
        return OpenAISpeechClient(
            api_key=settings.openai_api_key,
            model=settings.voice_model,
            voice=settings.voice_name,
            base_url=settings.openai_base_url,
            timeout=settings.http_timeout_seconds,
        )
    raise ValueError(f"Unknown AI_PROVIDER: {prov!r}")


def get_realtime_client(settings: Settings, provider: Optional[str] = None) -> RealtimeSessionClient:
    prov = _provider(settings, provider)
    if prov in ("mock", "test"):
        return MockRealtimeClient(instructions=settings.realtime_instructions)
    if prov == "openai":
        from .openai_api import OpenAIRealtimeClient
        return OpenAIRealtimeClient(
            api_key=settings.openai_api_key,
            model=settings.realtime_model,
            voice=settings.realtime_voice,
            instructions=settings.realtime_instructions,
            base_url=settings.openai_base_url,
            timeout=settings.http_timeout_seconds,
        )
    raise ValueError(f"Unknown AI_PROVIDER: {prov!r}")


def get_thread_store(settings: Settings, provider: Optional[str] = None) -> ThreadStore:
    prov = (provider or settings.thread_store_provider or "supabase").strip().lower()
    if prov in ("memory", "mock", "test"):
        return InMemoryThreadStore()
    if prov == "supabase":
        from .supabase import SupabaseThreadStore
        return SupabaseThreadStore(
            url=settings.supabase_url,
            service_key=settings.supabase_key,
            table=settings.thread_table,
            timeout=settings.http_timeout_seconds,
        )
    raise ValueError(f"Unknown THREAD_STORE_PROVIDER: {prov!r}")
