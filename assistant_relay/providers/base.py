from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class ToolConfig:
    """Which tools a run may use.

    - retrieval: force file_search against ``vector_store_id``
    - auto: the model decides
    - none: no tools
    """

    mode: str = "auto"
    vector_store_id: Optional[str] = None

    @classmethod
    def retrieval(cls, vector_store_id: str) -> "ToolConfig":
        return cls(mode="retrieval", vector_store_id=vector_store_id)

    @classmethod
    def auto(cls) -> "ToolConfig":
        return cls(mode="auto")

    @classmethod
    def none(cls) -> "ToolConfig":
        return cls(mode="none")


class AssistantClient(abc.ABC):
    """Hosted thread/run/message platform.

    Runs and messages are returned as plain dicts in the platform's wire shape
    (``{"id", "status", "required_action", "last_error", ...}``).
    """

    provider_name: str = "unknown"

    def __init__(self, assistant_id: Optional[str] = None):
        self.assistant_id = assistant_id

    @abc.abstractmethod
    async def create_thread(self, metadata: Optional[Dict[str, str]] = None) -> str:
        ...

    @abc.abstractmethod
    async def retrieve_thread(self, thread_id: str) -> Dict[str, Any]:
        """Raise ThreadNotFoundError when the platform no longer knows the thread."""

    @abc.abstractmethod
    async def post_message(self, thread_id: str, content: str, role: str = "user") -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    async def create_run(self, thread_id: str, tool_config: ToolConfig) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    async def retrieve_run(self, thread_id: str, run_id: str) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    async def submit_tool_outputs(self, thread_id: str, run_id: str, tool_outputs: List[Dict[str, str]]) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    async def cancel_run(self, thread_id: str, run_id: str) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    async def list_messages(self, thread_id: str, *, order: str = "desc", limit: int = 1) -> List[Dict[str, Any]]:
        ...


class SpeechClient(abc.ABC):
    provider_name: str = "unknown"

    def __init__(self, model: Optional[str] = None, voice: Optional[str] = None):
        self.model = model
        self.voice = voice

    @abc.abstractmethod
    async def synthesize(self, text: str) -> bytes:
        ...


class RealtimeSessionClient(abc.ABC):
    provider_name: str = "unknown"

    def __init__(self, model: Optional[str] = None, voice: Optional[str] = None, instructions: Optional[str] = None):
        self.model = model
        self.voice = voice
        self.instructions = instructions

    @abc.abstractmethod
    async def create_session(self) -> Dict[str, Any]:
        ...


class ThreadStore(abc.ABC):
    """user_id -> thread_id persistence."""

    provider_name: str = "unknown"

    @abc.abstractmethod
    async def get_thread_id(self, user_id: str) -> Optional[str]:
        """Return None when no row exists; raise for any other failure."""

    @abc.abstractmethod
    async def upsert(self, user_id: str, thread_id: str) -> None:
        ...
