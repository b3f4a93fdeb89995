import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from .errors import ConfigError
from .guardrails import GuardrailMode

# Load environment variables from .env if available, but avoid during pytest to keep tests deterministic
try:
    from dotenv import load_dotenv
    if "PYTEST_CURRENT_TEST" not in os.environ:
        load_dotenv()
except Exception:
    pass


FALLBACK_RETRY_PLAIN = "RETRY_NO_ADDITIONAL_PROMPT"
FALLBACK_RETRY_WITH_CLARIFICATION = "RETRY_WITH_CLARIFICATION_PROMPT"
FALLBACK_STRATEGIES = (FALLBACK_RETRY_PLAIN, FALLBACK_RETRY_WITH_CLARIFICATION)

DEFAULT_ALLOW_WORDS: Tuple[str, ...] = (
    "invest", "stock", "bond", "etf", "fund", "portfolio", "dividend", "valuation",
    "p/e", "ratio", "earnings", "risk", "return", "diversif", "market", "asset",
    "interest", "inflation", "retire", "401k", "savings", "budget", "debt",
    "finance", "financial", "money", "tax", "compound", "yield", "capital",
)
DEFAULT_DENY_WORDS: Tuple[str, ...] = (
    "election", "politic", "president", "congress", "religion", "celebrity",
    "gossip", "dating", "recipe", "horoscope",
)

DEFAULT_REDIRECT_MESSAGE = (
    "I'm here to help with finance and investing questions. "
    "What would you like to know about valuation, risk, return, or diversification?"
)
DEFAULT_OUTPUT_REDIRECT_MESSAGE = (
    "Let's keep our focus on finance and investing. What would you like to explore next?"
)
DEFAULT_EMPTY_REPLY_MESSAGE = (
    "I'm currently unable to provide a detailed response. Please try rephrasing or ask something else."
)
DEFAULT_CLARIFICATION_PROMPT = "The previous answer was not detailed enough. Please try again."
DEFAULT_DEFLECTION_PHRASES: Tuple[str, ...] = ("Let’s stick to those topics.",)
DEFAULT_DEFLECTION_REPLACEMENT = "Let’s focus on your financial goals. What would you like to explore next?"

DEFAULT_REALTIME_INSTRUCTIONS = """
You are Professor Rich — a calm, confident finance professor who’s approachable but professional. Your job is to help people understand smart investing topics like valuation, risk, return, and diversification.

Start every session with a warm greeting like:
"Hey there — great to have you here. I’m Professor Rich. What finance or investing topic can I help you with today?"

If the user says something unrelated, gently guide them back — but avoid repeating the same reminder more than once. Assume positive intent and always be curious, kind, and clear.

Avoid sounding robotic or defensive. Speak naturally with helpful tone and good pacing.
""".strip()


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    try:
        v = os.getenv(name, "1" if default else "0").strip().lower()
        return v in ("1", "true", "yes", "on")
    except Exception:
        return default


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def load_vocab_file(path: str) -> Tuple[Optional[Tuple[str, ...]], Optional[Tuple[str, ...]]]:
    """Read ``{"allow": [...], "deny": [...]}`` from a JSON file.

    Either key may be omitted; a missing key returns None for that list.
    """
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"GUARDRAIL_VOCAB_FILE not found: {p}")
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except ValueError as e:
        raise ConfigError(f"GUARDRAIL_VOCAB_FILE is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("GUARDRAIL_VOCAB_FILE must contain a JSON object")

    def _words(key: str) -> Optional[Tuple[str, ...]]:
        val = data.get(key)
        if val is None:
            return None
        if not isinstance(val, list):
            raise ConfigError(f"GUARDRAIL_VOCAB_FILE key '{key}' must be a list")
        return tuple(str(w).strip() for w in val if str(w).strip())

    return _words("allow"), _words("deny")


@dataclass
class Settings:
    openai_api_key: str = ""
    assistant_id: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    supabase_url: str = ""
    supabase_key: str = ""
    thread_table: str = "user_threads"
    vector_store_id: Optional[str] = None

    ai_provider: str = "openai"
    thread_store_provider: str = "supabase"
    verify_threads: bool = True

    fallback_reply_min_length: int = 20
    speech_reply_min_length: int = 10
    fallback_strategy: str = FALLBACK_RETRY_PLAIN
    fallback_clarification_prompt: str = DEFAULT_CLARIFICATION_PROMPT

    run_poll_interval_seconds: float = 1.0
    run_timeout_seconds: float = 60.0
    http_timeout_seconds: float = 30.0

    voice_model: str = "tts-1"
    voice_name: str = "alloy"
    realtime_model: str = "gpt-4o-mini-realtime-preview"
    realtime_voice: str = "alloy"
    realtime_instructions: str = DEFAULT_REALTIME_INSTRUCTIONS

    guardrail_mode: str = "ALLOW_AND_DENY"
    allow_words: Tuple[str, ...] = DEFAULT_ALLOW_WORDS
    deny_words: Tuple[str, ...] = DEFAULT_DENY_WORDS
    redirect_message: str = DEFAULT_REDIRECT_MESSAGE
    output_redirect_message: str = DEFAULT_OUTPUT_REDIRECT_MESSAGE
    empty_reply_message: str = DEFAULT_EMPTY_REPLY_MESSAGE
    deflection_phrases: Tuple[str, ...] = DEFAULT_DEFLECTION_PHRASES
    deflection_replacement: str = DEFAULT_DEFLECTION_REPLACEMENT

    app_env: str = "development"
    cors_allow_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() in ("production", "prod")

    def validate(self) -> "Settings":
        """Refuse to run without the credentials the relay cannot work without."""
        if self.ai_provider not in ("openai", "mock", "test"):
            raise ConfigError(f"AI_PROVIDER must be 'openai' or 'mock', got {self.ai_provider!r}")
        if self.thread_store_provider not in ("supabase", "memory", "mock", "test"):
            raise ConfigError(f"THREAD_STORE_PROVIDER must be 'supabase' or 'memory', got {self.thread_store_provider!r}")
        missing: List[str] = []
        if self.ai_provider == "openai":
            if not self.openai_api_key:
                missing.append("OPENAI_API_KEY")
            if not self.assistant_id:
                missing.append("OPENAI_ASSISTANT_ID")
        if self.thread_store_provider == "supabase":
            if not self.supabase_url:
                missing.append("SUPABASE_URL")
            if not self.supabase_key:
                missing.append("SUPABASE_SERVICE_ROLE_KEY")
        if missing:
            raise ConfigError("Missing required configuration: " + ", ".join(missing))
        if self.fallback_strategy not in FALLBACK_STRATEGIES:
            raise ConfigError(
                f"FALLBACK_STRATEGY must be one of {', '.join(FALLBACK_STRATEGIES)}, got {self.fallback_strategy!r}"
            )
        try:
            GuardrailMode.parse(self.guardrail_mode)
        except ValueError as e:
            raise ConfigError(str(e)) from e
        if self.run_poll_interval_seconds <= 0 or self.run_timeout_seconds <= 0:
            raise ConfigError("RUN_POLL_INTERVAL_SECONDS and RUN_TIMEOUT_SECONDS must be positive")
        return self

    @classmethod
    def from_env(cls) -> "Settings":
        allow_words = _env_list("GUARDRAIL_ALLOW_WORDS", DEFAULT_ALLOW_WORDS)
        deny_words = _env_list("GUARDRAIL_DENY_WORDS", DEFAULT_DENY_WORDS)
        vocab_file = _env_str("GUARDRAIL_VOCAB_FILE")
        if vocab_file:
            file_allow, file_deny = load_vocab_file(vocab_file)
            if file_allow is not None:
                allow_words = file_allow
            if file_deny is not None:
                deny_words = file_deny

        settings = cls(
            openai_api_key=_env_str("OPENAI_API_KEY"),
            assistant_id=_env_str("OPENAI_ASSISTANT_ID"),
            openai_base_url=_env_str("OPENAI_BASE_URL", "https://api.openai.com/v1") or "https://api.openai.com/v1",
            supabase_url=_env_str("SUPABASE_URL"),
            supabase_key=_env_str("SUPABASE_SERVICE_ROLE_KEY"),
            thread_table=_env_str("SUPABASE_THREAD_TABLE", "user_threads") or "user_threads",
            vector_store_id=_env_str("OPENAI_VECTOR_STORE_ID") or None,
            ai_provider=(_env_str("AI_PROVIDER", "openai") or "openai").lower(),
            thread_store_provider=(_env_str("THREAD_STORE_PROVIDER", "supabase") or "supabase").lower(),
            verify_threads=_env_bool("THREAD_VERIFY_ENABLED", True),
            fallback_reply_min_length=_env_int("FALLBACK_REPLY_MIN_LENGTH", 20),
            speech_reply_min_length=_env_int("SPEECH_REPLY_MIN_LENGTH", 10),
            fallback_strategy=_env_str("FALLBACK_STRATEGY", FALLBACK_RETRY_PLAIN) or FALLBACK_RETRY_PLAIN,
            fallback_clarification_prompt=_env_str("FALLBACK_CLARIFICATION_PROMPT") or DEFAULT_CLARIFICATION_PROMPT,
            run_poll_interval_seconds=_env_float("RUN_POLL_INTERVAL_SECONDS", 1.0),
            run_timeout_seconds=_env_float("RUN_TIMEOUT_SECONDS", 60.0),
            http_timeout_seconds=_env_float("AI_HTTP_TIMEOUT_SECONDS", 30.0),
            voice_model=_env_str("VOICE_MODEL", "tts-1") or "tts-1",
            voice_name=_env_str("VOICE_NAME", "alloy") or "alloy",
            realtime_model=_env_str("REALTIME_MODEL", "gpt-4o-mini-realtime-preview") or "gpt-4o-mini-realtime-preview",
            realtime_voice=_env_str("REALTIME_VOICE", "alloy") or "alloy",
            realtime_instructions=_env_str("REALTIME_INSTRUCTIONS") or DEFAULT_REALTIME_INSTRUCTIONS,
            guardrail_mode=_env_str("GUARDRAIL_MODE", "ALLOW_AND_DENY") or "ALLOW_AND_DENY",
            allow_words=allow_words,
            deny_words=deny_words,
            redirect_message=_env_str("GUARDRAIL_REDIRECT_MESSAGE") or DEFAULT_REDIRECT_MESSAGE,
            output_redirect_message=_env_str("GUARDRAIL_OUTPUT_REDIRECT_MESSAGE") or DEFAULT_OUTPUT_REDIRECT_MESSAGE,
            empty_reply_message=_env_str("EMPTY_REPLY_MESSAGE") or DEFAULT_EMPTY_REPLY_MESSAGE,
            deflection_phrases=_env_list("DEFLECTION_PHRASES", DEFAULT_DEFLECTION_PHRASES),
            deflection_replacement=_env_str("DEFLECTION_REPLACEMENT") or DEFAULT_DEFLECTION_REPLACEMENT,
            app_env=(_env_str("APP_ENV", "development") or "development").lower(),
            cors_allow_origins=list(_env_list("CORS_ALLOW_ORIGINS", ("http://localhost:3000",))),
        )
        return settings.validate()
