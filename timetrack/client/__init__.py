from timetrack.client.api import ApiError, ErrorReporter, NetworkError, TimeTrackingClient
from timetrack.client.engine import EndConfirmation, Timer, TimerEngine, TimerError
from timetrack.client.location import LocationError, LocationFix, classify_accuracy

__all__ = [
    "ApiError",
    "EndConfirmation",
    "ErrorReporter",
    "LocationError",
    "LocationFix",
    "NetworkError",
    "TimeTrackingClient",
    "Timer",
    "TimerEngine",
    "TimerError",
    "classify_accuracy",
]
