from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

# Upper bounds in meters, best first.
ACCURACY_LEVELS = (
    (20, "excellent"),
    (50, "good"),
    (100, "acceptable"),
    (200, "poor"),
)


class LocationError(Exception):
    pass


def classify_accuracy(accuracy: float) -> str:
    for limit, status in ACCURACY_LEVELS:
        if accuracy <= limit:
            return status
    return "very_poor"


def describe_accuracy(accuracy: float, status: Optional[str] = None) -> str:
    status = status or classify_accuracy(accuracy)
    return f"{accuracy:.1f}m - {status.replace('_', ' ')}"


@dataclass(frozen=True)
class LocationFix:
    latitude: float
    longitude: float
    accuracy: float
    timestamp: str
    accuracy_status: str
    accuracy_description: str

    @classmethod
    def from_coordinates(
        cls,
        latitude: float,
        longitude: float,
        accuracy: float,
        timestamp: Optional[datetime] = None,
    ) -> "LocationFix":
        """Every fix is accepted; poor accuracy is recorded, not rejected."""
        status = classify_accuracy(accuracy)
        return cls(
            latitude=latitude,
            longitude=longitude,
            accuracy=accuracy,
            timestamp=(timestamp or datetime.now(timezone.utc)).isoformat(),
            accuracy_status=status,
            accuracy_description=describe_accuracy(accuracy, status),
        )

    def as_dict(self) -> dict:
        return asdict(self)


# Supplied by the host: resolves to a fresh fix or raises LocationError.
Locate = Callable[[], Awaitable[LocationFix]]
