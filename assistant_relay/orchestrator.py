"""The /ask pipeline.

input guardrail -> thread -> pass 1 (retrieval forced) -> pass 2 (fallback) ->
output guardrail -> speech -> response
"""
import json
import logging
import time
from dataclasses import dataclass
from typing import Optional

from .config import FALLBACK_RETRY_WITH_CLARIFICATION, Settings
from .errors import RemoteFatalError, ValidationError
from .guardrails import Guardrail
from .metrics import ASK_SECONDS, ASK_TOTAL, GUARDRAIL_BLOCKS_TOTAL, PASS_TOTAL
from .providers.base import ToolConfig
from .registry import ThreadRegistry
from .runs import Reply, RunEngine
from .speech import SpeechAdapter

logger = logging.getLogger("assistant_relay.ask")

DEFAULT_USER_ID = "anonymous_user"


@dataclass
class ConversationTurn:
    user_text: str
    assistant_reply: str
    pass_used: int = 0
    audio: Optional[str] = None
    thread_id: Optional[str] = None
    blocked: Optional[str] = None

    @property
    def audio_present(self) -> bool:
        return self.audio is not None

    def to_response(self) -> dict:
        body = {"text": self.assistant_reply, "audio": self.audio}
        if self.thread_id:
            body["threadId"] = self.thread_id
        return body


def _preview(text: str, n: int = 70) -> str:
    return text if len(text) <= n else text[:n] + "..."


class ReplyOrchestrator:
    def __init__(
        self,
        settings: Settings,
        guardrail: Guardrail,
        registry: ThreadRegistry,
        engine: RunEngine,
        speech: SpeechAdapter,
    ):
        self.settings = settings
        self.guardrail = guardrail
        self.registry = registry
        self.engine = engine
        self.speech = speech

    async def ask(self, text, user_id: Optional[str] = None, request_id: Optional[str] = None) -> ConversationTurn:
        t0 = time.perf_counter()
        try:
            turn = await self._ask(text, user_id, request_id)
        except Exception:
            ASK_TOTAL.labels(outcome="error").inc()
            raise
        finally:
            ASK_SECONDS.observe(time.perf_counter() - t0)
        ASK_TOTAL.labels(outcome="blocked_" + turn.blocked if turn.blocked else "ok").inc()
        return turn

    async def _ask(self, text, user_id: Optional[str], request_id: Optional[str]) -> ConversationTurn:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Missing or empty text in request body")
        user_id = user_id.strip() if isinstance(user_id, str) and user_id.strip() else DEFAULT_USER_ID

        logger.info(json.dumps({
            "event": "ask_received",
            "requestId": request_id,
            "userId": user_id,
            "text": _preview(text, 100),
        }))

        verdict = self.guardrail.check_input(text)
        if verdict.blocked:
            GUARDRAIL_BLOCKS_TOTAL.labels(side="input").inc()
            logger.info(json.dumps({
                "event": "guardrail_input_blocked",
                "requestId": request_id,
                "userId": user_id,
                "reason": verdict.reason,
                "matched": verdict.matched,
            }))
            return ConversationTurn(user_text=text, assistant_reply=self.settings.redirect_message, blocked="input")

        thread_id = await self.registry.get_or_create_thread_id(user_id, request_id=request_id)
        await self.engine.append_message(thread_id, text)

        reply, pass_used = await self._generate(thread_id, user_id, request_id)

        out = self.guardrail.check_output(reply)
        if out.blocked:
            GUARDRAIL_BLOCKS_TOTAL.labels(side="output").inc()
            logger.info(json.dumps({
                "event": "guardrail_output_blocked",
                "requestId": request_id,
                "threadId": thread_id,
                "matched": out.matched,
            }))
            return ConversationTurn(
                user_text=text,
                assistant_reply=self.settings.output_redirect_message,
                pass_used=pass_used,
                thread_id=thread_id,
                blocked="output",
            )

        audio = await self.speech.data_uri_or_none(reply, thread_id=thread_id, request_id=request_id)
        return ConversationTurn(
            user_text=text, assistant_reply=reply, pass_used=pass_used, audio=audio, thread_id=thread_id
        )

    async def _generate(self, thread_id: str, user_id: str, request_id: Optional[str]):
        s = self.settings
        reply = ""
        pass_used = 1
        pass1_ran = False

        if s.vector_store_id:
            pass1_ran = True
            try:
                result = await self.engine.run_and_get_reply(
                    thread_id, ToolConfig.retrieval(s.vector_store_id), request_id=request_id
                )
                reply = result.text if result.usable else ""
                logger.info(json.dumps({
                    "event": "pass1_reply",
                    "requestId": request_id,
                    "threadId": thread_id,
                    "length": len(reply),
                    "emptyReason": result.empty_reason,
                    "preview": _preview(reply),
                }))
                PASS_TOTAL.labels(pass_name="pass1", outcome="reply" if reply else "empty").inc()
            except Exception as e:
                logger.warning(json.dumps({
                    "event": "pass1_failed",
                    "requestId": request_id,
                    "threadId": thread_id,
                    "userId": user_id,
                    "error": str(e),
                    "errorType": type(e).__name__,
                }))
                PASS_TOTAL.labels(pass_name="pass1", outcome="error").inc()
                reply = ""
        else:
            PASS_TOTAL.labels(pass_name="pass1", outcome="skipped").inc()

        # Length heuristic only; a short reply may still be a correct one
        if reply and len(reply) >= s.fallback_reply_min_length:
            return reply, pass_used

        logger.info(json.dumps({
            "event": "pass2_triggered",
            "requestId": request_id,
            "threadId": thread_id,
            "reason": "short_reply" if reply else ("empty_or_failed" if pass1_ran else "pass1_skipped"),
            "pass1Length": len(reply),
        }))
        pass_used = 2
        reply = await self._fallback(thread_id, user_id, request_id)
        if not reply.strip():
            reply = s.empty_reply_message
        return reply, pass_used

    async def _fallback(self, thread_id: str, user_id: str, request_id: Optional[str]) -> str:
        s = self.settings
        try:
            if s.fallback_strategy == FALLBACK_RETRY_WITH_CLARIFICATION and s.fallback_clarification_prompt:
                logger.info(json.dumps({"event": "pass2_clarification", "requestId": request_id, "threadId": thread_id}))
                await self.engine.append_message(thread_id, s.fallback_clarification_prompt)
            result: Reply = await self.engine.run_and_get_reply(thread_id, ToolConfig.auto(), request_id=request_id)
        except Exception as e:
            logger.error(json.dumps({
                "event": "pass2_failed",
                "requestId": request_id,
                "threadId": thread_id,
                "userId": user_id,
                "error": str(e),
                "errorType": type(e).__name__,
            }))
            PASS_TOTAL.labels(pass_name="pass2", outcome="error").inc()
            raise RemoteFatalError(str(e)) from e

        reply = result.text if result.usable else ""
        PASS_TOTAL.labels(pass_name="pass2", outcome="reply" if reply.strip() else "empty").inc()
        logger.info(json.dumps({
            "event": "pass2_reply",
            "requestId": request_id,
            "threadId": thread_id,
            "length": len(reply),
            "emptyReason": result.empty_reason,
            "preview": _preview(reply),
        }))
        for phrase in s.deflection_phrases:
            if phrase and phrase in reply:
                logger.warning(json.dumps({
                    "event": "pass2_deflection_replaced",
                    "requestId": request_id,
                    "threadId": thread_id,
                }))
                return s.deflection_replacement
        return reply
