import base64
import json
import logging
from typing import Optional

from .errors import SpeechError
from .metrics import SPEECH_TOTAL
from .providers.base import SpeechClient

logger = logging.getLogger("assistant_relay.speech")

AUDIO_MEDIA_TYPE = "audio/mp3"


def to_data_uri(audio: bytes, media_type: str = AUDIO_MEDIA_TYPE) -> str:
    return f"data:{media_type};base64,{base64.b64encode(audio).decode('ascii')}"


class SpeechAdapter:
    def __init__(self, client: SpeechClient, min_length: int = 10):
        self.client = client
        self.min_length = min_length

    def should_speak(self, text: str) -> bool:
        return bool(text) and len(text) >= self.min_length

    async def synthesize(self, text: str) -> bytes:
        try:
            audio = await self.client.synthesize(text)
        except Exception as e:
            raise SpeechError(f"Speech generation failed: {e}") from e
        if not audio:
            raise SpeechError("Speech generation returned no audio")
        return audio

    async def data_uri_or_none(
        self, text: str, thread_id: Optional[str] = None, request_id: Optional[str] = None
    ) -> Optional[str]:
        """Synthesize ``text`` for transport; any failure degrades to no audio."""
        if not self.should_speak(text):
            SPEECH_TOTAL.labels(outcome="skipped").inc()
            return None
        try:
            audio = await self.synthesize(text)
        except SpeechError as e:
            logger.error(json.dumps({
                "event": "speech_error",
                "requestId": request_id,
                "threadId": thread_id,
                "error": str(e),
            }))
            SPEECH_TOTAL.labels(outcome="error").inc()
            return None
        SPEECH_TOTAL.labels(outcome="success").inc()
        return to_data_uri(audio)
