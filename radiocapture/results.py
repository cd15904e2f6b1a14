"""
Per-step outcome type used inside capture loops.

Each network step (connection open, playlist fetch, segment fetch)
returns a StepResult instead of raising, and the loop decides from it
whether to continue, skip or finish.
"""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class StepResult:
    ok: bool
    value: Any = None
    error: Optional[Exception] = None

    @classmethod
    def success(cls, value: Any = None) -> "StepResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: Exception) -> "StepResult":
        return cls(ok=False, error=error)
