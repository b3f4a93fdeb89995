from prometheus_client import Counter, Histogram

# HTTP request metrics
HTTP_REQUESTS_TOTAL = Counter(
    "relay_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_class"],
)
HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "relay_http_request_duration_seconds",
    "Duration of HTTP requests in seconds",
    ["method", "path"],
)

ASK_TOTAL = Counter(
    "relay_ask_total",
    "Ask pipeline outcomes",
    ["outcome"],
)
ASK_SECONDS = Histogram(
    "relay_ask_seconds",
    "End-to-end ask pipeline duration in seconds",
)
PASS_TOTAL = Counter(
    "relay_pass_total",
    "Reply pass outcomes",
    ["pass_name", "outcome"],
)
RUN_SECONDS = Histogram(
    "relay_run_seconds",
    "Assistant run duration from creation to terminal state in seconds",
    ["tool_mode", "status"],
)
GUARDRAIL_BLOCKS_TOTAL = Counter(
    "relay_guardrail_blocks_total",
    "Guardrail blocks",
    ["side"],
)
SPEECH_TOTAL = Counter(
    "relay_speech_total",
    "Speech synthesis outcomes",
    ["outcome"],
)
THREAD_REGISTRY_TOTAL = Counter(
    "relay_thread_registry_total",
    "Thread registry resolutions",
    ["outcome"],
)
REALTIME_TOKEN_TOTAL = Counter(
    "relay_realtime_token_total",
    "Realtime session token requests",
    ["outcome"],
)
