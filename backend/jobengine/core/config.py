import os
from typing import Dict

BACKEND_TOKEN = os.environ.get("BACKEND_TOKEN", "")
APP_DATA_DIR = os.environ.get("APP_DATA_DIR", os.path.join(os.getcwd(), "data"))
DB_PATH = os.environ.get("JOBS_DB_PATH", os.path.join(APP_DATA_DIR, "jobs.db"))
BACKEND_PORT = int(os.environ.get("BACKEND_PORT", "49671"))

# Items of one job running at the same time; 1 keeps them sequential.
JOB_ITEM_CONCURRENCY = max(1, int(os.environ.get("JOB_ITEM_CONCURRENCY", "1")))

# External generation capability
GENERATION_BASE_URL = os.environ.get("GENERATION_BASE_URL", "")
GENERATION_API_KEY = os.environ.get("GENERATION_API_KEY", "")
GENERATION_POLL_INTERVAL_SEC = float(
    os.environ.get("GENERATION_POLL_INTERVAL_SEC", "10")
)
GENERATION_MAX_POLLS = int(os.environ.get("GENERATION_MAX_POLLS", "30"))
GENERATION_HARD_TIMEOUT_SEC = float(
    os.environ.get("GENERATION_HARD_TIMEOUT_SEC", "360")
)
GENERATION_RETRY_DELAY_SEC = float(os.environ.get("GENERATION_RETRY_DELAY_SEC", "5"))

# Expected wall-clock duration of single-unit jobs, per kind. These drive the
# time-based progress estimate only and are calibration values.
DEFAULT_EXPECTED_DURATION_SEC = float(
    os.environ.get("DEFAULT_EXPECTED_DURATION_SEC", "180")
)
_EXPECTED_DURATION_DEFAULTS: Dict[str, float] = {
    "jingle_generator_audio": 45.0,
    "celebration_video": 180.0,
    "ugc_video": 180.0,
    "directors_cut": 180.0,
    "video_generation": 180.0,
    "shop_photographer_video": 300.0,
}


def parse_duration_overrides(raw: str) -> Dict[str, float]:
    """Parse ``kind=seconds,kind=seconds`` into a mapping, skipping bad pairs."""
    overrides: Dict[str, float] = {}
    for pair in raw.split(","):
        kind, sep, value = pair.partition("=")
        kind = kind.strip()
        if not sep or not kind:
            continue
        try:
            seconds = float(value)
        except ValueError:
            continue
        if seconds > 0:
            overrides[kind] = seconds
    return overrides


EXPECTED_DURATION_SEC: Dict[str, float] = {
    **_EXPECTED_DURATION_DEFAULTS,
    **parse_duration_overrides(os.environ.get("EXPECTED_DURATION_SEC", "")),
}


def expected_duration_for(kind: str) -> float:
    return EXPECTED_DURATION_SEC.get(kind, DEFAULT_EXPECTED_DURATION_SEC)


def ensure_dirs() -> None:
    os.makedirs(APP_DATA_DIR, exist_ok=True)
