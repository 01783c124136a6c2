"""Application constants."""

from pathlib import Path

APP_NAME = "Orchestra"
APP_VERSION = "0.1.0"
DEFAULT_DATA_DIR = Path("./data")
DEFAULT_DB_PATH = DEFAULT_DATA_DIR / "orchestra.db"

DEFAULT_MAX_CONCURRENT = 6
DEFAULT_STAGGER_DELAY_MS = 300
DEFAULT_POLL_INTERVAL_MS = 2000
DEFAULT_INITIAL_POLL_DELAY_MS = 1000
DEFAULT_SETTLE_DELAY_MS = 500
DEFAULT_PRESELECTED_SITES = 6
DEFAULT_SITE_ESTIMATE_SECONDS = 30
MAX_PERSISTED_JOBS = 20

LANE_PROGRESS_INITIALIZING = 10
LANE_PROGRESS_NAVIGATING = 30
LANE_PROGRESS_EVENT_STEP = 10
LANE_PROGRESS_CEILING = 90
LANE_PROGRESS_DONE = 100

JOB_STATUS_CONFIGURING = "configuring"
JOB_STATUS_RUNNING = "running"
JOB_STATUS_COMPLETE = "complete"
JOB_STATUS_ERROR = "error"
