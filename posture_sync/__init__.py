"""Forward-head posture measurement, daily aggregation and retrying sync."""

__version__ = "1.0.0"
