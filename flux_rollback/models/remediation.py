"""Remediation Result — outcome of a revert request."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class RemediationOutcome(str, Enum):
    SIMULATED = "simulated"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RemediationResult(BaseModel):
    """Outcome of a single revert-commit attempt."""

    revision_id: str
    branch: str
    url: str
    outcome: RemediationOutcome
    status_code: Optional[int] = None
    error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome != RemediationOutcome.FAILED
