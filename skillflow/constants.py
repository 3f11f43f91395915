"""Default values shared across skillflow components."""

DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE_MS = 1_000
DEFAULT_BACKOFF_MAX_MS = 30_000
DEFAULT_JITTER = 0.25
DEFAULT_RATE_LIMIT_MULTIPLIER = 3.0
DEFAULT_CANCEL_GRACE_MS = 1_000
DEFAULT_CONCURRENCY = 8

# Context namespace holding the trigger payload of a run.
TRIGGER_CONTEXT_KEY = "trigger"

# Approximate USD cost of one call, for skills without an ``estimate_cost`` hook.
PROVIDER_COST_USD = {
    "gemini": 0.002,
    "anthropic": 0.003,
    "openai": 0.005,
    "founddr": 0.10,
    "ffmpeg": 0.0,
    "bannerbear": 0.10,
}
DEFAULT_PROVIDER = "gemini"
DEFAULT_CALL_COST_USD = 0.01
