"""Constant definitions for personacord."""

# Worker and queue defaults
DEFAULT_WORKER_CONCURRENCY = 4
DEFAULT_DEPENDENCY_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_DEPENDENCY_WAIT_TIMEOUT_SECONDS = 120.0
DEFAULT_RESULT_TTL_SECONDS = 3600.0
DEPENDENCY_MAP_TTL_SECONDS = 600.0

# Generation defaults
DEFAULT_GENERATION_TIMEOUT_SECONDS = 120.0
DEFAULT_GENERATION_MAX_ATTEMPTS = 3
LITELLM_TIMEOUT_SECONDS = 60
DEFAULT_CONTEXT_WINDOW_TOKENS = 131072

# Model defaults
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_WHISPER_MODEL = "whisper-1"
DEFAULT_VISION_FALLBACK_MODEL = "openrouter/qwen/qwen3-vl-235b-a22b-instruct"
VISION_TIMEOUT_SECONDS = 30

# Context assembly defaults
DEFAULT_CONTEXT_MAX_MESSAGES = 100
# Upper bound on messages read when history is capped by age only
HISTORY_FETCH_CEILING = 500
RECENT_HISTORY_QUERY_WINDOW = 3

# Long-term memory
DEFAULT_MEMORY_LIMIT = 15
DEFAULT_MEMORY_SCORE_THRESHOLD = 0.15
# Memories this close to the oldest short-term message are already in history
STM_LTM_BUFFER_MS = 10_000

# Diagnostics
NOT_RECORDED = "[not recorded]"
MEMORY_PREVIEW_CHARS = 100
MAX_RAW_ERROR_CHARS = 50_000
