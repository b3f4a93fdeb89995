import json
import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.middleware.cors import CORSMiddleware

from .config import Settings, _env_list
from .errors import RemoteFatalError, ValidationError
from .guardrails import Guardrail, KeywordGuardrail
from .metrics import HTTP_REQUEST_DURATION_SECONDS, HTTP_REQUESTS_TOTAL, REALTIME_TOKEN_TOTAL
from .middleware.request_id import RequestIdMiddleware, get_request_id
from .orchestrator import ReplyOrchestrator
from .providers.base import AssistantClient, RealtimeSessionClient, SpeechClient, ThreadStore
from .providers.factory import get_assistant_client, get_realtime_client, get_speech_client, get_thread_store
from .registry import ThreadRegistry
from .runs import RunEngine, ToolRegistry
from .speech import SpeechAdapter

logger = logging.getLogger("assistant_relay")
# Ensure our application logger emits under Uvicorn:
# - honor LOG_LEVEL env (default INFO)
# - attach a StreamHandler if none present
# - disable propagate to avoid duplicate logs with Uvicorn root handlers
try:
    _lvl_name = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    _lvl = getattr(logging, _lvl_name, logging.INFO)
except Exception:
    _lvl = logging.INFO
logger.setLevel(_lvl)
if not logger.handlers:
    _h = logging.StreamHandler()
    _h.setLevel(_lvl)
    _h.setFormatter(logging.Formatter('%(message)s'))
    logger.addHandler(_h)
logger.propagate = False

GENERIC_ASK_ERROR = "An unexpected error occurred with the assistant."
GENERIC_TOKEN_ERROR = "Failed to create a realtime session."


@dataclass
class Services:
    """Process-wide collaborators, built once from validated settings."""

    settings: Settings
    assistant: AssistantClient
    speech_client: SpeechClient
    realtime: RealtimeSessionClient
    store: ThreadStore
    guardrail: Guardrail
    registry: ThreadRegistry
    engine: RunEngine
    orchestrator: ReplyOrchestrator


def build_services(
    settings: Settings,
    *,
    assistant: Optional[AssistantClient] = None,
    speech_client: Optional[SpeechClient] = None,
    realtime: Optional[RealtimeSessionClient] = None,
    store: Optional[ThreadStore] = None,
    guardrail: Optional[Guardrail] = None,
    tools: Optional[ToolRegistry] = None,
    clock: Optional[Callable[[], float]] = None,
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
) -> Services:
    assistant = assistant or get_assistant_client(settings)
    speech_client = speech_client or get_speech_client(settings)
    realtime = realtime or get_realtime_client(settings)
    store = store or get_thread_store(settings)
    guardrail = guardrail or KeywordGuardrail.from_settings(settings)

    engine_kwargs: dict = {}
    if clock is not None:
        engine_kwargs["clock"] = clock
    if sleep is not None:
        engine_kwargs["sleep"] = sleep
    engine = RunEngine(
        assistant,
        poll_interval=settings.run_poll_interval_seconds,
        timeout=settings.run_timeout_seconds,
        tools=tools,
        **engine_kwargs,
    )
    registry = ThreadRegistry(assistant, store, verify_threads=settings.verify_threads)
    speech = SpeechAdapter(speech_client, min_length=settings.speech_reply_min_length)
    orchestrator = ReplyOrchestrator(settings, guardrail, registry, engine, speech)
    return Services(
        settings=settings,
        assistant=assistant,
        speech_client=speech_client,
        realtime=realtime,
        store=store,
        guardrail=guardrail,
        registry=registry,
        engine=engine,
        orchestrator=orchestrator,
    )


def _log_startup(settings: Settings) -> None:
    logger.info(json.dumps({
        "event": "relay_config",
        "appEnv": settings.app_env,
        "aiProvider": settings.ai_provider,
        "threadStore": settings.thread_store_provider,
        "pass1Enabled": bool(settings.vector_store_id),
        "fallbackStrategy": settings.fallback_strategy,
        "fallbackReplyMinLength": settings.fallback_reply_min_length,
        "speechReplyMinLength": settings.speech_reply_min_length,
        "guardrailMode": settings.guardrail_mode,
        "runTimeoutSeconds": settings.run_timeout_seconds,
    }))
    if not settings.vector_store_id:
        logger.warning(json.dumps({"event": "pass1_disabled", "reason": "OPENAI_VECTOR_STORE_ID not set"}))


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "services", None) is None:
        # Raises ConfigError and aborts startup when required settings are missing
        settings = Settings.from_env()
        app.state.services = build_services(settings)  # type: ignore[attr-defined]
    _log_startup(app.state.services.settings)  # type: ignore[attr-defined]
    yield


def _details(settings: Settings, exc: Exception, generic: str) -> str:
    return generic if settings.is_production else str(exc)


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(
        title="Assistant Relay API",
        description="Relay between a web client and a hosted assistant: guarded replies with speech, and realtime session tokens.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services  # type: ignore[attr-defined]
    origins = services.settings.cors_allow_origins if services else list(
        _env_list("CORS_ALLOW_ORIGINS", ("http://localhost:3000",))
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id"],
        allow_credentials=False,
    )
    app.add_middleware(RequestIdMiddleware)

    # HTTP metrics middleware
    @app.middleware("http")
    async def _http_metrics_middleware(request: Request, call_next):
        t0 = time.perf_counter()
        method = request.method
        path = request.url.path
        status_code = 500
        try:
            response = await call_next(request)
            status_code = getattr(response, "status_code", 500)
            return response
        finally:
            try:
                status_class = f"{status_code // 100}xx"
                HTTP_REQUESTS_TOTAL.labels(method=method, path=path, status_class=status_class).inc()
                HTTP_REQUEST_DURATION_SECONDS.labels(method=method, path=path).observe(time.perf_counter() - t0)
            except Exception:
                pass

    @app.get("/health", tags=["meta"], description="Liveness endpoint for health checks.")
    async def health():
        return {"status": "ok"}

    @app.get("/metrics", tags=["meta"], include_in_schema=False)
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.post("/ask", tags=["assistant"], description="Answer a question with text and optional speech audio.")
    async def ask(request: Request):
        svc: Services = request.app.state.services
        settings = svc.settings
        req_id = get_request_id(request)
        try:
            body = await request.json()
        except Exception:
            body = None
        if not isinstance(body, dict):
            return JSONResponse({"error": ValidationError.public_message}, status_code=400)

        try:
            turn = await svc.orchestrator.ask(body.get("text"), body.get("user_id"), request_id=req_id)
        except ValidationError as e:
            return JSONResponse({"error": e.public_message}, status_code=400)
        except RemoteFatalError as e:
            return JSONResponse(
                {"error": e.public_message, "details": _details(settings, e, GENERIC_ASK_ERROR)},
                status_code=500,
            )
        except Exception as e:
            logger.exception("ask_error requestId=%s: %s", req_id, e)
            return JSONResponse(
                {"error": "Assistant request failed", "details": _details(settings, e, GENERIC_ASK_ERROR)},
                status_code=500,
            )
        return JSONResponse(turn.to_response())

    @app.get("/token", tags=["realtime"], description="Mint an ephemeral realtime voice session.")
    async def token(request: Request):
        svc: Services = request.app.state.services
        try:
            data = await svc.realtime.create_session()
        except Exception as e:
            logger.error(json.dumps({"event": "token_error", "requestId": get_request_id(request), "error": str(e)}))
            REALTIME_TOKEN_TOTAL.labels(outcome="error").inc()
            return JSONResponse(
                {
                    "error": "Failed to create realtime session",
                    "details": _details(svc.settings, e, GENERIC_TOKEN_ERROR),
                },
                status_code=500,
            )
        REALTIME_TOKEN_TOTAL.labels(outcome="success").inc()
        # The client reads client_secret.value, so the payload is returned untouched
        return JSONResponse(data)

    return app


app = create_app()
