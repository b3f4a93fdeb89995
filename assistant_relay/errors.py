from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """Base error for the relay. Carries the HTTP status and client-facing label."""

    http_status: int = 500
    public_message: str = "Assistant request failed"

    def __init__(self, message: str = "", *, public_message: Optional[str] = None):
        super().__init__(message or self.public_message)
        if public_message:
            self.public_message = public_message


class ConfigError(RelayError):
    public_message = "Server misconfigured"


class ValidationError(RelayError):
    http_status = 400
    public_message = "Missing or empty text in request body"


class RegistryError(RelayError):
    """Thread store lookup failed for a reason other than 'no row'."""

    public_message = "Assistant request failed"


class ProviderHTTPError(RelayError):
    """A remote collaborator answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int = 0, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ThreadNotFoundError(ProviderHTTPError):
    pass


class RemoteTransientError(RelayError):
    """Failure inside a single pass; the orchestrator may still fall back."""


class RunError(RemoteTransientError):
    def __init__(self, message: str, *, thread_id: str = "", run_id: str = ""):
        super().__init__(message)
        self.thread_id = thread_id
        self.run_id = run_id


class RunTimeoutError(RunError):
    pass


class RunFailedError(RunError):
    def __init__(self, message: str, *, status: str = "", thread_id: str = "", run_id: str = ""):
        super().__init__(message, thread_id=thread_id, run_id=run_id)
        self.status = status


class RemoteFatalError(RelayError):
    public_message = "Assistant failed to generate a response after fallback."


class SpeechError(RelayError):
    public_message = "Speech generation failed"
