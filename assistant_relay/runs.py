import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .errors import RunFailedError, RunTimeoutError
from .metrics import RUN_SECONDS
from .providers.base import AssistantClient, ToolConfig

logger = logging.getLogger("assistant_relay.runs")

ACTIVE_STATUSES = frozenset({"queued", "in_progress", "requires_action", "cancelling"})
FAILED_STATUSES = frozenset({"failed", "expired", "cancelled", "incomplete"})

ToolHandler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


@dataclass
class RunAttempt:
    thread_id: str
    run_id: str
    status: str
    started_at: float
    last_error: Optional[str] = None
    request_id: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def update(self, run: Dict[str, Any]) -> Dict[str, Any]:
        self.status = str(run.get("status") or "")
        err = run.get("last_error") or {}
        if isinstance(err, dict) and err.get("message"):
            self.last_error = str(err["message"])
        return run


@dataclass(frozen=True)
class Reply:
    """Text extracted from a completed run.

    ``empty_reason`` is None for a usable reply and otherwise names why nothing
    usable came back ("no_messages", "not_assistant", "no_text"). Callers treat
    an unusable reply as a soft miss and apply their fallback policy; run
    failures are raised instead.
    """

    text: str = ""
    empty_reason: Optional[str] = None

    @property
    def usable(self) -> bool:
        return self.empty_reason is None and bool(self.text)

    @classmethod
    def empty(cls, reason: str) -> "Reply":
        return cls(text="", empty_reason=reason)


class ToolRegistry:
    """Function-tool handlers invoked when a run stops at requires_action."""

    def __init__(self):
        self._handlers: Dict[str, ToolHandler] = {}

    def register(self, name: str, handler: ToolHandler) -> None:
        self._handlers[name] = handler

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    async def call(self, name: str, arguments: Dict[str, Any]) -> str:
        result = self._handlers[name](arguments)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, str):
            return result
        return json.dumps(result)


def extract_reply(messages: List[Dict[str, Any]]) -> Reply:
    if not messages:
        return Reply.empty("no_messages")
    latest = messages[0]
    if latest.get("role") != "assistant":
        return Reply.empty("not_assistant")
    for block in latest.get("content") or []:
        if not isinstance(block, dict) or block.get("type") != "text":
            continue
        value = (block.get("text") or {}).get("value")
        if isinstance(value, str):
            return Reply(text=value) if value else Reply.empty("no_text")
    return Reply.empty("no_text")


class RunEngine:
    """Starts a run on a thread, polls it to a terminal state and extracts the reply.

    Polling sleeps cooperatively between reads and checks a wall-clock deadline on
    every iteration. ``clock`` and ``sleep`` are injectable for tests.
    """

    def __init__(
        self,
        assistant: AssistantClient,
        poll_interval: float = 1.0,
        timeout: float = 60.0,
        tools: Optional[ToolRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.assistant = assistant
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.tools = tools or ToolRegistry()
        self._clock = clock
        self._sleep = sleep

    async def append_message(self, thread_id: str, text: str) -> None:
        await self.assistant.post_message(thread_id, text, role="user")

    async def run_and_get_reply(
        self, thread_id: str, tool_config: ToolConfig, request_id: Optional[str] = None
    ) -> Reply:
        run = await self.assistant.create_run(thread_id, tool_config)
        attempt = RunAttempt(
            thread_id=thread_id,
            run_id=str(run["id"]),
            status="",
            started_at=self._clock(),
            request_id=request_id,
        )
        attempt.update(run)
        logger.info(json.dumps({
            "event": "run_created",
            "requestId": request_id,
            "threadId": thread_id,
            "runId": attempt.run_id,
            "toolMode": tool_config.mode,
        }))

        await self._wait(attempt, run)
        RUN_SECONDS.labels(tool_mode=tool_config.mode, status=attempt.status).observe(
            max(0.0, self._clock() - attempt.started_at)
        )

        if attempt.status in FAILED_STATUSES:
            message = attempt.last_error or f"Run {attempt.status}"
            logger.error(json.dumps({
                "event": "run_failed",
                "requestId": request_id,
                "threadId": thread_id,
                "runId": attempt.run_id,
                "status": attempt.status,
                "error": message,
            }))
            raise RunFailedError(message, status=attempt.status, thread_id=thread_id, run_id=attempt.run_id)
        if attempt.status != "completed":
            raise RunFailedError(
                f"Run ended in unexpected status {attempt.status!r}",
                status=attempt.status,
                thread_id=thread_id,
                run_id=attempt.run_id,
            )

        messages = await self.assistant.list_messages(thread_id, order="desc", limit=1)
        reply = extract_reply(messages)
        if not reply.usable:
            logger.warning(json.dumps({
                "event": "run_reply_unusable",
                "requestId": request_id,
                "threadId": thread_id,
                "runId": attempt.run_id,
                "reason": reply.empty_reason,
            }))
        return reply

    async def _wait(self, attempt: RunAttempt, run: Dict[str, Any]) -> None:
        deadline = attempt.started_at + self.timeout
        while attempt.active:
            if run.get("status") == "requires_action":
                await self._submit_tool_outputs(attempt, run)
            if self._clock() >= deadline:
                await self._cancel(attempt)
                raise RunTimeoutError(
                    f"Run {attempt.run_id} timed out.", thread_id=attempt.thread_id, run_id=attempt.run_id
                )
            await self._sleep(self.poll_interval)
            run = attempt.update(await self.assistant.retrieve_run(attempt.thread_id, attempt.run_id))

    async def _cancel(self, attempt: RunAttempt) -> None:
        logger.error(json.dumps({
            "event": "run_timeout",
            "requestId": attempt.request_id,
            "threadId": attempt.thread_id,
            "runId": attempt.run_id,
            "timeoutSeconds": self.timeout,
        }))
        try:
            await self.assistant.cancel_run(attempt.thread_id, attempt.run_id)
        except Exception as e:
            logger.error(json.dumps({
                "event": "run_cancel_error",
                "requestId": attempt.request_id,
                "threadId": attempt.thread_id,
                "runId": attempt.run_id,
                "error": str(e),
            }))

    async def _submit_tool_outputs(self, attempt: RunAttempt, run: Dict[str, Any]) -> None:
        action = run.get("required_action") or {}
        if action.get("type") != "submit_tool_outputs":
            return
        tool_calls = (action.get("submit_tool_outputs") or {}).get("tool_calls") or []
        outputs: List[Dict[str, str]] = []
        if not len(self.tools):
            # No handlers: unblock the run with an empty list rather than hang
            if tool_calls:
                logger.warning(json.dumps({
                    "event": "run_tool_outputs_empty",
                    "requestId": attempt.request_id,
                    "threadId": attempt.thread_id,
                    "runId": attempt.run_id,
                    "toolCalls": [((tc.get("function") or {}).get("name")) for tc in tool_calls],
                }))
        else:
            for tc in tool_calls:
                outputs.append({"tool_call_id": str(tc.get("id")), "output": await self._call_tool(attempt, tc)})
        await self.assistant.submit_tool_outputs(attempt.thread_id, attempt.run_id, outputs)

    async def _call_tool(self, attempt: RunAttempt, tool_call: Dict[str, Any]) -> str:
        fn = tool_call.get("function") or {}
        name = fn.get("name") or ""
        if tool_call.get("type") != "function" or name not in self.tools:
            logger.warning(json.dumps({
                "event": "run_tool_unhandled",
                "requestId": attempt.request_id,
                "runId": attempt.run_id,
                "tool": name,
            }))
            return ""
        try:
            args = json.loads(fn.get("arguments") or "{}")
        except ValueError:
            args = {}
        try:
            return await self.tools.call(name, args)
        except Exception as e:
            logger.error(json.dumps({
                "event": "run_tool_error",
                "requestId": attempt.request_id,
                "runId": attempt.run_id,
                "tool": name,
                "error": str(e),
            }))
            return json.dumps({"error": str(e)})
