import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from ..errors import ProviderHTTPError, ThreadNotFoundError
from .base import AssistantClient, RealtimeSessionClient, SpeechClient, ToolConfig

DEFAULT_BASE_URL = "https://api.openai.com/v1"

logger = logging.getLogger("assistant_relay.openai")


def _headers(api_key: str, *, beta: bool = False, request_id: Optional[str] = None) -> Dict[str, str]:
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
        "User-Agent": "assistant-relay-api/0.1.0",
    }
    if beta:
        headers["OpenAI-Beta"] = "assistants=v2"
    if request_id:
        headers["X-Request-Id"] = request_id
    return headers


def _raise_for_status(resp, what: str) -> None:
    if resp.status_code >= 400:
        try:
            body = resp.text
        except Exception:
            body = ""
        raise ProviderHTTPError(f"OpenAI {what} error {resp.status_code}: {body[:512]}", resp.status_code, body)


class OpenAIAssistantClient(AssistantClient):
    """Assistants v2 REST calls (threads, messages, runs)."""

    provider_name: str = "openai"

    def __init__(
        self,
        api_key: str,
        assistant_id: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
    ):
        super().__init__(assistant_id=assistant_id)
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY is required for OpenAI provider")
        self._api_key = api_key
        self._base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self._timeout = timeout

    async def _call(self, method: str, path: str, what: str, payload: Optional[Dict[str, Any]] = None,
                    params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = self._base_url + path
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            if method == "GET":
                resp = await client.get(url, headers=_headers(self._api_key, beta=True), params=params)
            else:
                resp = await client.post(url, headers=_headers(self._api_key, beta=True), json=payload or {})
        _raise_for_status(resp, what)
        return resp.json()

    async def create_thread(self, metadata: Optional[Dict[str, str]] = None) -> str:
        payload: Dict[str, Any] = {}
        if metadata:
            payload["metadata"] = metadata
        data = await self._call("POST", "/threads", "create_thread", payload)
        return str(data["id"])

    async def retrieve_thread(self, thread_id: str) -> Dict[str, Any]:
        try:
            return await self._call("GET", f"/threads/{thread_id}", "retrieve_thread")
        except ProviderHTTPError as e:
            if e.status_code == 404:
                raise ThreadNotFoundError(str(e), e.status_code, e.body) from e
            raise

    async def post_message(self, thread_id: str, content: str, role: str = "user") -> Dict[str, Any]:
        return await self._call(
            "POST", f"/threads/{thread_id}/messages", "post_message", {"role": role, "content": content}
        )

    async def create_run(self, thread_id: str, tool_config: ToolConfig) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"assistant_id": self.assistant_id}
        if tool_config.mode == "retrieval":
            # Runs do not accept tool_resources; the vector store is attached to the thread
            await self._call(
                "POST",
                f"/threads/{thread_id}",
                "attach_vector_store",
                {"tool_resources": {"file_search": {"vector_store_ids": [tool_config.vector_store_id]}}},
            )
            payload["tools"] = [{"type": "file_search"}]
            payload["tool_choice"] = {"type": "file_search"}
        elif tool_config.mode == "none":
            payload["tool_choice"] = "none"
        else:
            payload["tool_choice"] = "auto"
        return await self._call("POST", f"/threads/{thread_id}/runs", "create_run", payload)

    async def retrieve_run(self, thread_id: str, run_id: str) -> Dict[str, Any]:
        return await self._call("GET", f"/threads/{thread_id}/runs/{run_id}", "retrieve_run")

    async def submit_tool_outputs(self, thread_id: str, run_id: str, tool_outputs: List[Dict[str, str]]) -> Dict[str, Any]:
        return await self._call(
            "POST",
            f"/threads/{thread_id}/runs/{run_id}/submit_tool_outputs",
            "submit_tool_outputs",
            {"tool_outputs": tool_outputs},
        )

    async def cancel_run(self, thread_id: str, run_id: str) -> Dict[str, Any]:
        return await self._call("POST", f"/threads/{thread_id}/runs/{run_id}/cancel", "cancel_run")

    async def list_messages(self, thread_id: str, *, order: str = "desc", limit: int = 1) -> List[Dict[str, Any]]:
        data = await self._call(
            "GET", f"/threads/{thread_id}/messages", "list_messages", params={"order": order, "limit": limit}
        )
        return list((data or {}).get("data") or [])


class OpenAISpeechClient(SpeechClient):
    provider_name: str = "openai"

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        voice: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
    ):
        super().__init__(model=model or "tts-1", voice=voice or "alloy")
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY is required for OpenAI provider")
        self._api_key = api_key
        self._base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self._timeout = timeout

    async def synthesize(self, text: str) -> bytes:
        payload = {
            "model": self.model,
            "voice": self.voice,
            "input": text,
            "response_format": "mp3",
        }
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.post(self._base_url + "/audio/speech", headers=_headers(self._api_key), json=payload)
        _raise_for_status(resp, "speech")
        return resp.content


class OpenAIRealtimeClient(RealtimeSessionClient):
    provider_name: str = "openai"

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        voice: Optional[str] = None,
        instructions: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
    ):
        super().__init__(model=model or "gpt-4o-mini-realtime-preview", voice=voice or "alloy", instructions=instructions)
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY is required for OpenAI provider")
        self._api_key = api_key
        self._base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self._timeout = timeout

    async def create_session(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": self.model, "voice": self.voice}
        if self.instructions:
            payload["instructions"] = self.instructions
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.post(self._base_url + "/realtime/sessions", headers=_headers(self._api_key), json=payload)
        if resp.status_code >= 400:
            try:
                logger.error(json.dumps({
                    "event": "realtime_session_http_error",
                    "status": resp.status_code,
                    "body": resp.text[:512],
                    "model": self.model,
                }))
            except Exception:
                pass
        _raise_for_status(resp, "realtime_session")
        return resp.json()
