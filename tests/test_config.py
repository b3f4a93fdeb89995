import json

import pytest

from assistant_relay.config import (
    DEFAULT_ALLOW_WORDS,
    DEFAULT_DENY_WORDS,
    FALLBACK_RETRY_PLAIN,
    Settings,
    load_vocab_file,
)
from assistant_relay.errors import ConfigError

_ENV_NAMES = (
    "OPENAI_API_KEY", "OPENAI_ASSISTANT_ID", "SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY",
    "OPENAI_VECTOR_STORE_ID", "AI_PROVIDER", "THREAD_STORE_PROVIDER", "GUARDRAIL_MODE",
    "GUARDRAIL_ALLOW_WORDS", "GUARDRAIL_DENY_WORDS", "GUARDRAIL_VOCAB_FILE", "FALLBACK_STRATEGY",
    "FALLBACK_REPLY_MIN_LENGTH", "RUN_TIMEOUT_SECONDS", "RUN_POLL_INTERVAL_SECONDS", "APP_ENV",
    "CORS_ALLOW_ORIGINS", "THREAD_VERIFY_ENABLED",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def _set_required(env):
    env.setenv("OPENAI_API_KEY", "sk-env")
    env.setenv("OPENAI_ASSISTANT_ID", "asst_env")
    env.setenv("SUPABASE_URL", "https://proj.supabase.co")
    env.setenv("SUPABASE_SERVICE_ROLE_KEY", "svc")


def test_from_env_defaults(clean_env):
    _set_required(clean_env)

    s = Settings.from_env()

    assert s.assistant_id == "asst_env"
    assert s.vector_store_id is None
    assert s.fallback_reply_min_length == 20
    assert s.speech_reply_min_length == 10
    assert s.fallback_strategy == FALLBACK_RETRY_PLAIN
    assert s.guardrail_mode == "ALLOW_AND_DENY"
    assert s.allow_words == DEFAULT_ALLOW_WORDS
    assert s.deny_words == DEFAULT_DENY_WORDS
    assert s.verify_threads is True
    assert not s.is_production


def test_from_env_parses_overrides(clean_env):
    _set_required(clean_env)
    clean_env.setenv("OPENAI_VECTOR_STORE_ID", "vs_42")
    clean_env.setenv("GUARDRAIL_DENY_WORDS", "crypto, meme ,")
    clean_env.setenv("FALLBACK_REPLY_MIN_LENGTH", "35")
    clean_env.setenv("RUN_TIMEOUT_SECONDS", "not-a-number")
    clean_env.setenv("THREAD_VERIFY_ENABLED", "false")
    clean_env.setenv("APP_ENV", "Production")
    clean_env.setenv("CORS_ALLOW_ORIGINS", "https://a.example,https://b.example")

    s = Settings.from_env()

    assert s.vector_store_id == "vs_42"
    assert s.deny_words == ("crypto", "meme")
    assert s.fallback_reply_min_length == 35
    assert s.run_timeout_seconds == 60.0
    assert s.verify_threads is False
    assert s.is_production
    assert s.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_missing_credentials_are_listed(clean_env):
    with pytest.raises(ConfigError) as ei:
        Settings.from_env()
    msg = str(ei.value)
    for name in ("OPENAI_API_KEY", "OPENAI_ASSISTANT_ID", "SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY"):
        assert name in msg


def test_mock_providers_need_no_credentials(clean_env):
    clean_env.setenv("AI_PROVIDER", "mock")
    clean_env.setenv("THREAD_STORE_PROVIDER", "memory")

    s = Settings.from_env()

    assert s.ai_provider == "mock"
    assert s.thread_store_provider == "memory"


@pytest.mark.parametrize("name, value", [
    ("FALLBACK_STRATEGY", "RETRY_FOREVER"),
    ("GUARDRAIL_MODE", "BLOCK_EVERYTHING"),
    ("AI_PROVIDER", "anthropic"),
    ("RUN_POLL_INTERVAL_SECONDS", "0"),
])
def test_invalid_values_are_config_errors(clean_env, name, value):
    _set_required(clean_env)
    clean_env.setenv(name, value)
    with pytest.raises(ConfigError):
        Settings.from_env()


def test_vocab_file_overrides_lists(clean_env, tmp_path):
    _set_required(clean_env)
    vocab = tmp_path / "vocab.json"
    vocab.write_text(json.dumps({"allow": ["bond", "yield"], "deny": ["lottery"]}), encoding="utf-8")
    clean_env.setenv("GUARDRAIL_VOCAB_FILE", str(vocab))
    clean_env.setenv("GUARDRAIL_DENY_WORDS", "ignored")

    s = Settings.from_env()

    assert s.allow_words == ("bond", "yield")
    assert s.deny_words == ("lottery",)


def test_vocab_file_partial_keys(tmp_path):
    vocab = tmp_path / "vocab.json"
    vocab.write_text(json.dumps({"deny": ["casino", " "]}), encoding="utf-8")
    assert load_vocab_file(str(vocab)) == (None, ("casino",))


@pytest.mark.parametrize("content", ["{not json", "[1, 2]", json.dumps({"allow": "bond"})])
def test_bad_vocab_file_is_config_error(tmp_path, content):
    vocab = tmp_path / "vocab.json"
    vocab.write_text(content, encoding="utf-8")
    with pytest.raises(ConfigError):
        load_vocab_file(str(vocab))


def test_missing_vocab_file_is_config_error(tmp_path):
    with pytest.raises(ConfigError):
        load_vocab_file(str(tmp_path / "nope.json"))
