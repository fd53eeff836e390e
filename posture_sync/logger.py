# Structured Logging Module - Procedural Approach
from datetime import datetime
from typing import Any, Dict, Optional

from posture_sync import config

# ANSI Color Codes for Terminal
class Colors:
    BLUE = '\033[94m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    PURPLE = '\033[95m'
    CYAN = '\033[96m'
    WHITE = '\033[97m'
    RESET = '\033[0m'
    BOLD = '\033[1m'

# Step Prefixes with Emojis
STEP_PREFIXES = {
    "FRAME": "🎬",
    "ANGLE": "📐",
    "AGG": "📊",
    "STORE": "💾",
    "SYNC": "🔄",
    "AUTH": "🔐",
    "API": "🌐",
    "DB": "🗄️",
    "SYSTEM": "🔧",
    "ERROR": "❌",
    "SUCCESS": "✅",
    "WARNING": "⚠️"
}

# Next Step Suggestions
NEXT_STEPS = {
    "AGG:DAY": "Previous day sealed, checkpoint and flush will follow",
    "SYNC:UPSERT": "Summary stored remotely, cached view for this date invalidated",
    "SYNC:ATTENTION": "Re-authenticate or fix the payload, then call resume_after_auth()",
    "STORE:RECOVERED": "Interrupted uploads will be retried on the next sync run",
    "AUTH:TOKEN": "Pass the token as 'Authorization: Bearer <token>' to PUT /summaries",
}

LEVELS = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40}


def _enabled(level: str) -> bool:
    threshold = LEVELS.get(str(config.LOG_LEVEL).upper(), 20)
    return LEVELS.get(level, 20) >= threshold


def get_timestamp() -> str:
    """Get formatted timestamp"""
    return datetime.now().strftime("%H:%M:%S.%f")[:-3]


def log_step(step: str, action: str, data: Optional[Dict[str, Any]] = None,
             color: str = Colors.CYAN, level: str = "INFO"):
    """
    Log a step with structured format

    Args:
        step: Step category (ANGLE, AGG, STORE, SYNC, API, etc.)
        action: Description of the action
        data: Optional dictionary of data to display
        color: ANSI color code
        level: DEBUG, INFO, WARNING or ERROR (filtered by config.LOG_LEVEL)
    """
    if not _enabled(level):
        return

    prefix = STEP_PREFIXES.get(step, "🔹")
    timestamp = get_timestamp()

    print(f"{color}{Colors.BOLD}[{timestamp}] {prefix} [{step}]{Colors.RESET} {action}")

    if data:
        for key, value in data.items():
            # Truncate long values
            if isinstance(value, str) and len(value) > 100:
                value = value[:97] + "..."
            print(f"   {Colors.WHITE}├─ {key}: {value}{Colors.RESET}")

    # Suggest next step
    next_step_key = f"{step}:{action.split()[0].upper()}"
    if next_step_key in NEXT_STEPS:
        print(f"   {Colors.YELLOW}└─ >>> Next: {NEXT_STEPS[next_step_key]}{Colors.RESET}")
    print()  # Blank line for readability


def log_frame(action: str, data: Optional[Dict[str, Any]] = None):
    """Log frame source events"""
    log_step("FRAME", action, data, Colors.BLUE)


def log_angle(action: str, data: Optional[Dict[str, Any]] = None):
    """Log angle computation events (per-frame, so DEBUG)"""
    log_step("ANGLE", action, data, Colors.CYAN, level="DEBUG")


def log_agg(action: str, data: Optional[Dict[str, Any]] = None):
    """Log aggregation events"""
    log_step("AGG", action, data, Colors.CYAN)


def log_store(action: str, data: Optional[Dict[str, Any]] = None):
    """Log local store events"""
    log_step("STORE", action, data, Colors.WHITE)


def log_sync(action: str, data: Optional[Dict[str, Any]] = None):
    """Log sync scheduler events"""
    log_step("SYNC", action, data, Colors.GREEN)


def log_auth(action: str, data: Optional[Dict[str, Any]] = None):
    """Log authentication events"""
    log_step("AUTH", action, data, Colors.PURPLE)


def log_db(action: str, data: Optional[Dict[str, Any]] = None):
    """Log server database events"""
    log_step("DB", action, data, Colors.WHITE)


def log_api(action: str, data: Optional[Dict[str, Any]] = None):
    """Log API events"""
    log_step("API", action, data, Colors.CYAN)


def log_debug(step: str, action: str, data: Optional[Dict[str, Any]] = None):
    """Log verbose diagnostics"""
    log_step(step, action, data, Colors.WHITE, level="DEBUG")


def log_error(action: str, error: Exception, data: Optional[Dict[str, Any]] = None):
    """Log errors with type and message"""
    error_data = dict(data or {})
    error_data["Error"] = str(error)
    error_data["Type"] = type(error).__name__
    log_step("ERROR", action, error_data, Colors.RED, level="ERROR")


def log_success(action: str, data: Optional[Dict[str, Any]] = None):
    """Log success events"""
    log_step("SUCCESS", action, data, Colors.GREEN)


def log_warning(action: str, data: Optional[Dict[str, Any]] = None):
    """Log warnings"""
    log_step("WARNING", action, data, Colors.YELLOW, level="WARNING")


def log_lifecycle(phase: str, details: str = ""):
    """
    Log major lifecycle events with clear visual separation

    Args:
        phase: Phase name (e.g., "STARTUP", "SHUTDOWN", "RECOVERY")
        details: Optional details
    """
    if not _enabled("INFO"):
        return
    separator = "=" * 80
    print(f"\n{Colors.BOLD}{Colors.CYAN}{separator}{Colors.RESET}")
    print(f"{Colors.BOLD}{Colors.CYAN}>>> {phase} {details}{Colors.RESET}")
    print(f"{Colors.BOLD}{Colors.CYAN}{separator}{Colors.RESET}\n")
