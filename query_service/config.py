import os
from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

# ---- Query execution ----
# seconds, 0 = no timeout
QUERY_TIMEOUT_SECONDS = int(os.getenv("QUERY_TIMEOUT_SECONDS", "30"))
DEFAULT_PAGE_SIZE = int(os.getenv("DEFAULT_PAGE_SIZE", "50"))

# ---- Large document handling ----
MAX_PAGE_PAYLOAD_MB = float(os.getenv("MAX_PAGE_PAYLOAD_MB", "10"))
RESPONSE_SIZE_WARNING_MB = float(os.getenv("RESPONSE_SIZE_WARNING_MB", "10"))
FIELD_COUNT_THRESHOLD = int(os.getenv("FIELD_COUNT_THRESHOLD", "50"))
LARGE_DOC_WARNING_KB = float(os.getenv("LARGE_DOC_WARNING_KB", "512"))

# ---- Editor ----
VALIDATION_DEBOUNCE_MS = int(os.getenv("VALIDATION_DEBOUNCE_MS", "300"))

# ---- Local storage ----
QUERY_HISTORY_PATH = os.getenv(
    "QUERY_HISTORY_PATH",
    os.path.join(os.path.expanduser("~"), ".mongo_query_service", "storage.json"),
)

# ---- Shell ----
# Explicit mongosh binary; when empty, "mongosh" then "mongo" are looked up on PATH.
MONGOSH_PATH = os.getenv("MONGOSH_PATH", "")
SCRIPT_TIMEOUT_SECONDS = int(os.getenv("SCRIPT_TIMEOUT_SECONDS", "60"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


class QuerySettings(BaseModel):
    """Snapshot of the tunables a collection view runs with."""

    query_timeout_seconds: float = Field(default=QUERY_TIMEOUT_SECONDS, ge=0)
    default_page_size: int = Field(default=DEFAULT_PAGE_SIZE, ge=1)
    max_page_payload_mb: float = Field(default=MAX_PAGE_PAYLOAD_MB, gt=0)
    response_size_warning_mb: float = Field(default=RESPONSE_SIZE_WARNING_MB, gt=0)
    field_count_threshold: int = Field(default=FIELD_COUNT_THRESHOLD, ge=0)
    large_doc_warning_kb: float = Field(default=LARGE_DOC_WARNING_KB, gt=0)
    validation_debounce_ms: int = Field(default=VALIDATION_DEBOUNCE_MS, ge=0)


def load_settings() -> QuerySettings:
    return QuerySettings()
