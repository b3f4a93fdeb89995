import json
import logging
import sys
from pathlib import Path

import pytest

# Ensure project root is on sys.path for `import assistant_relay.*`
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from assistant_relay.config import Settings  # noqa: E402
from assistant_relay.main import build_services  # noqa: E402
from assistant_relay.providers.mock import (  # noqa: E402
    InMemoryThreadStore,
    MockAssistantClient,
    MockRealtimeClient,
    MockSpeechClient,
)


class FakeClock:
    """Monotonic clock that only moves when the code under test sleeps."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def settings() -> Settings:
    return Settings(
        openai_api_key="sk-test",
        assistant_id="asst_test",
        supabase_url="http://supabase.test",
        supabase_key="service-key",
        vector_store_id="vs_test",
        run_poll_interval_seconds=1.0,
        run_timeout_seconds=60.0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def assistant() -> MockAssistantClient:
    return MockAssistantClient(assistant_id="asst_test")


@pytest.fixture
def store() -> InMemoryThreadStore:
    return InMemoryThreadStore()


@pytest.fixture
def speech_client() -> MockSpeechClient:
    return MockSpeechClient()


@pytest.fixture
def realtime() -> MockRealtimeClient:
    return MockRealtimeClient(instructions="Be helpful.")


@pytest.fixture
def make_services(assistant, store, speech_client, realtime, clock):
    def _make(settings: Settings, **overrides):
        kwargs = dict(
            assistant=assistant,
            speech_client=speech_client,
            realtime=realtime,
            store=store,
            clock=clock,
            sleep=clock.sleep,
        )
        kwargs.update(overrides)
        return build_services(settings, **kwargs)

    return _make


class _EventCollector(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.events = []

    def emit(self, record):
        msg = record.getMessage()
        if msg.startswith("{"):
            self.events.append(json.loads(msg))


@pytest.fixture
def relay_events():
    """JSON events emitted under the ``assistant_relay`` logger.

    That logger does not propagate to root, so the collector is attached to it directly.
    """
    relay_logger = logging.getLogger("assistant_relay")
    collector = _EventCollector()
    relay_logger.addHandler(collector)
    try:
        yield collector.events
    finally:
        relay_logger.removeHandler(collector)
