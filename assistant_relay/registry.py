import json
import logging
from typing import Optional

from .errors import RegistryError, ThreadNotFoundError
from .metrics import THREAD_REGISTRY_TOTAL
from .providers.base import AssistantClient, ThreadStore

logger = logging.getLogger("assistant_relay.registry")


class ThreadRegistry:
    """Maps a user id to a durable conversation thread, creating one on first use.

    Store write failures are logged and swallowed: the freshly created thread is
    still returned, so the request succeeds and the next request for the same
    user simply creates another thread. There is no client-side locking; two
    concurrent first requests can each create a thread and the last upsert wins.
    """

    def __init__(self, assistant: AssistantClient, store: ThreadStore, verify_threads: bool = True):
        self.assistant = assistant
        self.store = store
        self.verify_threads = verify_threads

    async def get_or_create_thread_id(self, user_id: str, request_id: Optional[str] = None) -> str:
        try:
            existing = await self.store.get_thread_id(user_id)
        except Exception as e:
            logger.error(json.dumps({
                "event": "thread_lookup_error",
                "requestId": request_id,
                "userId": user_id,
                "error": str(e),
            }))
            THREAD_REGISTRY_TOTAL.labels(outcome="lookup_error").inc()
            raise RegistryError("Could not retrieve thread ID from database due to a query error.") from e

        if existing:
            if not self.verify_threads:
                THREAD_REGISTRY_TOTAL.labels(outcome="reused").inc()
                return existing
            try:
                await self.assistant.retrieve_thread(existing)
                logger.info(json.dumps({"event": "thread_reused", "requestId": request_id, "userId": user_id, "threadId": existing}))
                THREAD_REGISTRY_TOTAL.labels(outcome="reused").inc()
                return existing
            except ThreadNotFoundError as e:
                logger.warning(json.dumps({
                    "event": "thread_stale",
                    "requestId": request_id,
                    "userId": user_id,
                    "threadId": existing,
                    "error": str(e),
                }))
                THREAD_REGISTRY_TOTAL.labels(outcome="stale").inc()

        thread_id = await self.assistant.create_thread(metadata={"user_id": user_id})
        try:
            await self.store.upsert(user_id, thread_id)
            logger.info(json.dumps({"event": "thread_created", "requestId": request_id, "userId": user_id, "threadId": thread_id}))
            THREAD_REGISTRY_TOTAL.labels(outcome="created").inc()
        except Exception as e:
            logger.error(json.dumps({
                "event": "thread_upsert_error",
                "requestId": request_id,
                "userId": user_id,
                "threadId": thread_id,
                "error": str(e),
            }))
            THREAD_REGISTRY_TOTAL.labels(outcome="created_unsaved").inc()
        return thread_id
