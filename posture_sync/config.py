# Configuration Module - Procedural approach with module-level variables
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Remote Summary Store (reference server) Database Configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./posture_sync_server.db")

# JWT Configuration
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-only-change-me")  # Set in .env file for real deployments
JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = int(os.getenv("JWT_EXPIRATION_HOURS", "24"))

# Logging Configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Landmark / Angle Configuration
CONFIDENCE_THRESHOLD = float(os.getenv("CONFIDENCE_THRESHOLD", "0.5"))  # Minimum landmark visibility
# thresholdDegrees: controls sensitivity. 15° past neutral is where the
# ear clearly leaves the shoulder line in side-view webcam footage.
THRESHOLD_DEGREES = float(os.getenv("THRESHOLD_DEGREES", "15.0"))
NEUTRAL_ANGLE_DEGREES = float(os.getenv("NEUTRAL_ANGLE_DEGREES", "0.0"))
CALIBRATION_MIN_FRAMES = int(os.getenv("CALIBRATION_MIN_FRAMES", "30"))

# Sample Weighting Configuration
DEFAULT_FPS = float(os.getenv("DEFAULT_FPS", "15"))
DEFAULT_FRAME_SECONDS = 1.0 / DEFAULT_FPS  # Weight of a session's first frame
MAX_SAMPLE_GAP_SECONDS = float(os.getenv("MAX_SAMPLE_GAP_SECONDS", "5.0"))  # Longer gaps are session breaks

# Daily Aggregation Configuration
USER_TIMEZONE = os.getenv("USER_TIMEZONE", "UTC")  # IANA name, e.g. "Asia/Kolkata"
CHECKPOINT_EVERY_N_FOLDS = int(os.getenv("CHECKPOINT_EVERY_N_FOLDS", "30"))
CHECKPOINT_INTERVAL_SECONDS = float(os.getenv("CHECKPOINT_INTERVAL_SECONDS", "10.0"))

# Local Store Configuration
LOCAL_STORE_PATH = os.getenv("LOCAL_STORE_PATH", os.path.join(os.path.expanduser("~"), ".posture_sync", "local.db"))

# Sync Configuration
REMOTE_API_URL = os.getenv("REMOTE_API_URL", "http://localhost:8000")
REMOTE_TIMEOUT_SECONDS = float(os.getenv("REMOTE_TIMEOUT_SECONDS", "10.0"))
API_TOKEN = os.getenv("POSTURE_SYNC_TOKEN")  # Bearer token used by the CLI sync commands
DEFAULT_USER_ID = os.getenv("POSTURE_SYNC_USER_ID", "local-user")
SYNC_INTERVAL_SECONDS = float(os.getenv("SYNC_INTERVAL_SECONDS", "60.0"))
BACKOFF_BASE_SECONDS = float(os.getenv("BACKOFF_BASE_SECONDS", "5.0"))
BACKOFF_MAX_SECONDS = float(os.getenv("BACKOFF_MAX_SECONDS", "900.0"))
BACKOFF_JITTER = 0.5  # Up to +50% random spread on each delay
TEARDOWN_FLUSH_TIMEOUT_SECONDS = float(os.getenv("TEARDOWN_FLUSH_TIMEOUT_SECONDS", "2.0"))

# Daily Status Bands (weighted average deviation in degrees)
STATUS_BANDS = {
    "good": (0, 10),
    "warning": (10, 20),
    "bad": (20, 180)
}

# Status labels per band
STATUS_LABELS = {
    "good": "Good posture",
    "warning": "Moderate risk",
    "bad": "High risk"
}
