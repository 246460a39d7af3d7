# --- Content Truncation Limits ---

EXEC_OUTPUT_LIMIT = 5000
FILE_READ_LIMIT = 100_000
SUMMARY_PREVIEW_CHARS = 200
DEFAULT_LIST_LIMIT = 200


# --- Tool Loop ---

MAX_TOOL_ROUNDS = 25
EXEC_TIMEOUT = 30  # seconds
REMOTE_TOOL_TIMEOUT = 60  # seconds


# --- Model Requests ---
# Exponential backoff from 0.5s, three retries beyond the first attempt

RETRY_MAX_ATTEMPTS = 4
RETRY_INITIAL_BACKOFF = 0.5
RETRY_MAX_BACKOFF = 8.0
RETRY_JITTER = 0.5
RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
UNAUTHORIZED_STATUS = 401


# --- Patch Engine ---

MAX_DRIFT = 40  # lines searched either side of a hunk's expected position
MERGE_SLACK = 3  # extra/missing live lines tolerated when aligning a merge region
MERGE_MIN_SIMILARITY = 0.6
BINARY_SNIFF_BYTES = 8192


# --- Context Compaction ---

CHARS_PER_TOKEN = 4
DEFAULT_CONTEXT_TOKENS = 128_000
COMPRESSION_THRESHOLD = 0.75  # % of model limit to trigger compaction
TAIL_TOKEN_BUDGET = 8000  # tokens kept verbatim during compaction
MASK_THRESHOLD = 300  # chars; shorter tool results are left as-is
MASK_PREVIEW_CHARS = 200  # chars kept when masking old tool results
MASK_PRESERVE_RECENT = 6


# --- Storage ---

TERN_DIR_NAME = ".tern"
