"""
Remediation Client — asks GitLab to revert a failing commit onto a new branch.

Behavioral Contract:
- One attempt per call. Never retries, never raises.
- Dry-run mode logs the would-be request and makes no network call.
- A 2xx response is success; any other status or transport error is failure.
"""

import logging
import time
from typing import Optional

import httpx

from flux_rollback.models.config import ControllerConfig
from flux_rollback.models.remediation import RemediationOutcome, RemediationResult

logger = logging.getLogger(__name__)


class GitLabRevertClient:
    """
    Creates revert commits through the GitLab REST API.

    Configuration is read once at construction and never mutated.
    """

    def __init__(
        self,
        config: ControllerConfig,
        http_client: Optional[httpx.Client] = None,
    ):
        self.config = config
        self._http = http_client

    def branch_for(self, revision_id: str) -> str:
        return f"{self.config.revert_branch_prefix}-{revision_id}"

    def revert_url(self, revision_id: str) -> str:
        base = self.config.gitlab_url.rstrip("/")
        return (
            f"{base}/api/v4/projects/{self.config.gitlab_project_id}"
            f"/repository/commits/{revision_id}/revert"
        )

    def remediate(self, revision_id: str) -> RemediationResult:
        """Revert the commit behind revision_id onto a fresh branch."""
        branch = self.branch_for(revision_id)
        url = self.revert_url(revision_id)

        if self.config.dry_run:
            logger.info("ECHO: would POST revert url=%s branch=%s", url, branch)
            return RemediationResult(
                revision_id=revision_id,
                branch=branch,
                url=url,
                outcome=RemediationOutcome.SIMULATED,
            )

        headers = {
            "PRIVATE-TOKEN": self.config.gitlab_token,
            "Content-Type": "application/json",
        }
        start = time.monotonic()
        try:
            response = self._post(url, {"branch": branch}, headers)
        except httpx.HTTPError as e:
            elapsed = time.monotonic() - start
            logger.error("GitLab revert failed revision=%s error=%s", revision_id, e)
            return RemediationResult(
                revision_id=revision_id,
                branch=branch,
                url=url,
                outcome=RemediationOutcome.FAILED,
                error=f"{type(e).__name__}: {e}",
                duration_seconds=round(elapsed, 3),
            )

        elapsed = time.monotonic() - start
        if response.is_success:
            logger.info("Revert commit created successfully revision=%s branch=%s", revision_id, branch)
            return RemediationResult(
                revision_id=revision_id,
                branch=branch,
                url=url,
                outcome=RemediationOutcome.SUCCEEDED,
                status_code=response.status_code,
                duration_seconds=round(elapsed, 3),
            )

        logger.error(
            "GitLab API error status=%s revision=%s body=%s",
            response.status_code, revision_id, response.text[:200],
        )
        return RemediationResult(
            revision_id=revision_id,
            branch=branch,
            url=url,
            outcome=RemediationOutcome.FAILED,
            status_code=response.status_code,
            error=f"HTTP {response.status_code}: {response.text[:200]}",
            duration_seconds=round(elapsed, 3),
        )

    def _post(self, url: str, payload: dict, headers: dict) -> httpx.Response:
        if self._http is not None:
            return self._http.post(
                url, json=payload, headers=headers,
                timeout=self.config.request_timeout_seconds,
            )
        with httpx.Client(timeout=self.config.request_timeout_seconds) as client:
            return client.post(url, json=payload, headers=headers)
