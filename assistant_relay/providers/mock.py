import itertools
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence

from ..errors import ProviderHTTPError, ThreadNotFoundError
from .base import AssistantClient, RealtimeSessionClient, SpeechClient, ThreadStore, ToolConfig


@dataclass
class MockRunScript:
    """Scripted behaviour for one run created on the mock platform.

    ``statuses`` is walked one step per poll and the last entry sticks.
    ``reply=None`` echoes the latest user message; ``reply=""`` posts nothing.
    """

    statuses: Sequence[str] = ("completed",)
    reply: Optional[str] = None
    role: str = "assistant"
    last_error: Optional[str] = None
    error: Optional[Exception] = None
    tool_calls: Sequence[Dict[str, Any]] = ()


def _text_message(msg_id: str, role: str, text: str) -> Dict[str, Any]:
    return {
        "id": msg_id,
        "object": "thread.message",
        "role": role,
        "content": [{"type": "text", "text": {"value": text, "annotations": []}}],
    }


class MockAssistantClient(AssistantClient):
    provider_name: str = "mock"

    def __init__(self, assistant_id: Optional[str] = None, scripts: Optional[Iterable[Any]] = None):
        super().__init__(assistant_id=assistant_id or "asst_mock")
        self.threads: Dict[str, List[Dict[str, Any]]] = {}
        self.thread_metadata: Dict[str, Dict[str, str]] = {}
        self.runs: Dict[str, Dict[str, Any]] = {}
        self.missing_threads: set = set()
        self.calls: List[str] = []
        self.run_configs: List[ToolConfig] = []
        self.submitted_tool_outputs: List[List[Dict[str, str]]] = []
        self.cancelled: List[str] = []
        self.cancel_error: Optional[Exception] = None
        self._scripts: Deque[MockRunScript] = deque()
        self._ids = itertools.count(1)
        for s in scripts or ():
            self.add_script(s)

    def add_script(self, script: Any) -> None:
        if isinstance(script, MockRunScript):
            self._scripts.append(script)
        elif isinstance(script, Exception):
            self._scripts.append(MockRunScript(error=script))
        else:
            self._scripts.append(MockRunScript(reply=str(script)))

    def call_count(self, name: Optional[str] = None) -> int:
        if name is None:
            return len(self.calls)
        return sum(1 for c in self.calls if c == name)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_mock_{next(self._ids)}"

    def _thread(self, thread_id: str) -> List[Dict[str, Any]]:
        if thread_id not in self.threads or thread_id in self.missing_threads:
            raise ThreadNotFoundError(f"No thread found with id '{thread_id}'.", 404)
        return self.threads[thread_id]

    async def create_thread(self, metadata: Optional[Dict[str, str]] = None) -> str:
        self.calls.append("create_thread")
        thread_id = self._next_id("thread")
        self.threads[thread_id] = []
        self.thread_metadata[thread_id] = dict(metadata or {})
        return thread_id

    async def retrieve_thread(self, thread_id: str) -> Dict[str, Any]:
        self.calls.append("retrieve_thread")
        self._thread(thread_id)
        return {"id": thread_id, "object": "thread", "metadata": self.thread_metadata.get(thread_id, {})}

    async def post_message(self, thread_id: str, content: str, role: str = "user") -> Dict[str, Any]:
        self.calls.append("post_message")
        msgs = self._thread(thread_id)
        msg = _text_message(self._next_id("msg"), role, content)
        msgs.append(msg)
        return msg

    async def create_run(self, thread_id: str, tool_config: ToolConfig) -> Dict[str, Any]:
        self.calls.append("create_run")
        self._thread(thread_id)
        self.run_configs.append(tool_config)
        script = self._scripts.popleft() if self._scripts else MockRunScript()
        if script.error is not None:
            raise script.error
        run = {
            "id": self._next_id("run"),
            "thread_id": thread_id,
            "assistant_id": self.assistant_id,
            "status": "queued",
            "required_action": None,
            "last_error": None,
            "_script": script,
            "_step": -1,
            "_delivered": False,
        }
        self.runs[run["id"]] = run
        self._advance(run)
        return self._public(run)

    def _advance(self, run: Dict[str, Any]) -> None:
        script: MockRunScript = run["_script"]
        statuses = list(script.statuses) or ["completed"]
        run["_step"] = min(run["_step"] + 1, len(statuses) - 1)
        status = statuses[run["_step"]]
        run["status"] = status
        run["required_action"] = None
        if status == "requires_action":
            run["required_action"] = {
                "type": "submit_tool_outputs",
                "submit_tool_outputs": {"tool_calls": [dict(tc) for tc in script.tool_calls]},
            }
        elif status == "completed" and not run["_delivered"]:
            run["_delivered"] = True
            self._deliver(run["thread_id"], script)
        elif status in ("failed", "expired", "cancelled", "incomplete") and script.last_error:
            run["last_error"] = {"code": "server_error", "message": script.last_error}

    def _deliver(self, thread_id: str, script: MockRunScript) -> None:
        msgs = self.threads.get(thread_id, [])
        text = script.reply
        if text is None:
            last_user = next((m for m in reversed(msgs) if m["role"] == "user"), None)
            question = last_user["content"][0]["text"]["value"] if last_user else ""
            text = f"Mock assistant reply to: {question}"
        if text == "":
            return
        msgs.append(_text_message(self._next_id("msg"), script.role, text))

    @staticmethod
    def _public(run: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in run.items() if not k.startswith("_")}

    def _run(self, thread_id: str, run_id: str) -> Dict[str, Any]:
        run = self.runs.get(run_id)
        if run is None or run["thread_id"] != thread_id:
            raise ProviderHTTPError(f"No run found with id '{run_id}'.", 404)
        return run

    async def retrieve_run(self, thread_id: str, run_id: str) -> Dict[str, Any]:
        self.calls.append("retrieve_run")
        run = self._run(thread_id, run_id)
        if run["status"] != "cancelled":
            self._advance(run)
        return self._public(run)

    async def submit_tool_outputs(self, thread_id: str, run_id: str, tool_outputs: List[Dict[str, str]]) -> Dict[str, Any]:
        self.calls.append("submit_tool_outputs")
        run = self._run(thread_id, run_id)
        self.submitted_tool_outputs.append(list(tool_outputs))
        return self._public(run)

    async def cancel_run(self, thread_id: str, run_id: str) -> Dict[str, Any]:
        self.calls.append("cancel_run")
        if self.cancel_error is not None:
            raise self.cancel_error
        run = self._run(thread_id, run_id)
        self.cancelled.append(run_id)
        run["status"] = "cancelled"
        return self._public(run)

    async def list_messages(self, thread_id: str, *, order: str = "desc", limit: int = 1) -> List[Dict[str, Any]]:
        self.calls.append("list_messages")
        msgs = list(self._thread(thread_id))
        if order == "desc":
            msgs.reverse()
        return msgs[: max(0, limit)]


class MockSpeechClient(SpeechClient):
    provider_name: str = "mock"

    def __init__(self, model: Optional[str] = None, voice: Optional[str] = None,
                 audio: bytes = b"ID3mock-audio", error: Optional[Exception] = None):
        super().__init__(model=model or "mock-tts-1", voice=voice or "mock-voice")
        self.audio = audio
        self.error = error
        self.inputs: List[str] = []

    async def synthesize(self, text: str) -> bytes:
        self.inputs.append(text)
        if self.error is not None:
            raise self.error
        return self.audio


class MockRealtimeClient(RealtimeSessionClient):
    provider_name: str = "mock"

    def __init__(self, model: Optional[str] = None, voice: Optional[str] = None,
                 instructions: Optional[str] = None, error: Optional[Exception] = None):
        super().__init__(model=model or "mock-realtime-1", voice=voice or "mock-voice", instructions=instructions)
        self.error = error
        self.sessions = 0

    async def create_session(self) -> Dict[str, Any]:
        self.sessions += 1
        if self.error is not None:
            raise self.error
        return {
            "id": f"sess_mock_{self.sessions}",
            "object": "realtime.session",
            "model": self.model,
            "voice": self.voice,
            "instructions": self.instructions,
            "client_secret": {"value": f"ek_mock_{self.sessions}", "expires_at": 0},
        }


class InMemoryThreadStore(ThreadStore):
    provider_name: str = "memory"

    def __init__(self, rows: Optional[Dict[str, str]] = None):
        self.rows: Dict[str, str] = dict(rows or {})
        self.read_error: Optional[Exception] = None
        self.write_error: Optional[Exception] = None
        self.reads = 0
        self.writes = 0

    async def get_thread_id(self, user_id: str) -> Optional[str]:
        self.reads += 1
        if self.read_error is not None:
            raise self.read_error
        return self.rows.get(user_id)

    async def upsert(self, user_id: str, thread_id: str) -> None:
        self.writes += 1
        if self.write_error is not None:
            raise self.write_error
        self.rows[user_id] = thread_id
