import pytest

from assistant_relay.errors import ProviderHTTPError, RegistryError
from assistant_relay.registry import ThreadRegistry


@pytest.mark.asyncio
async def test_first_call_creates_and_second_call_reuses(assistant, store):
    reg = ThreadRegistry(assistant, store)

    first = await reg.get_or_create_thread_id("user-1")
    second = await reg.get_or_create_thread_id("user-1")

    assert first == second
    assert store.rows == {"user-1": first}
    assert assistant.call_count("create_thread") == 1
    assert assistant.thread_metadata[first] == {"user_id": "user-1"}


@pytest.mark.asyncio
async def test_distinct_users_get_distinct_threads(assistant, store):
    reg = ThreadRegistry(assistant, store)
    a = await reg.get_or_create_thread_id("alice")
    b = await reg.get_or_create_thread_id("bob")
    assert a != b
    assert len(store.rows) == 2


@pytest.mark.asyncio
async def test_stale_thread_is_recreated_and_overwritten(assistant, store):
    store.rows["user-1"] = "thread_deleted_upstream"
    reg = ThreadRegistry(assistant, store)

    thread_id = await reg.get_or_create_thread_id("user-1")

    assert thread_id != "thread_deleted_upstream"
    assert store.rows == {"user-1": thread_id}
    assert assistant.call_count("retrieve_thread") == 1
    assert assistant.call_count("create_thread") == 1


@pytest.mark.asyncio
async def test_verification_can_be_disabled(assistant, store):
    store.rows["user-1"] = "thread_unchecked"
    reg = ThreadRegistry(assistant, store, verify_threads=False)

    assert await reg.get_or_create_thread_id("user-1") == "thread_unchecked"
    assert assistant.call_count() == 0


@pytest.mark.asyncio
async def test_store_read_error_is_fatal(assistant, store):
    store.read_error = RuntimeError("connection refused")
    reg = ThreadRegistry(assistant, store)

    with pytest.raises(RegistryError):
        await reg.get_or_create_thread_id("user-1")
    assert assistant.call_count("create_thread") == 0


@pytest.mark.asyncio
async def test_store_write_error_still_returns_thread(assistant, store):
    store.write_error = RuntimeError("insert denied")
    reg = ThreadRegistry(assistant, store)

    first = await reg.get_or_create_thread_id("user-1")
    assert first in assistant.threads
    assert store.rows == {}

    # Nothing was saved, so the next request creates another thread
    second = await reg.get_or_create_thread_id("user-1")
    assert second != first
    assert assistant.call_count("create_thread") == 2


@pytest.mark.asyncio
async def test_non_not_found_verification_error_propagates(assistant, store, monkeypatch):
    store.rows["user-1"] = "thread_x"

    async def boom(thread_id):
        raise ProviderHTTPError("OpenAI retrieve_thread error 500: upstream", 500)

    monkeypatch.setattr(assistant, "retrieve_thread", boom)
    reg = ThreadRegistry(assistant, store)

    with pytest.raises(ProviderHTTPError):
        await reg.get_or_create_thread_id("user-1")
    assert assistant.call_count("create_thread") == 0
