from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class StoreResult:
    """Outcome of a store operation.

    ``reason`` classifies failures so call sites can choose a status code:
    ``not_found``, ``conflict``, ``invalid``, ``exists`` or ``error``.
    """

    success: bool
    data: Any = None
    error: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "StoreResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, reason: str = "error") -> "StoreResult":
        return cls(success=False, error=error, reason=reason)
