"""Controller configuration — one global policy applied to every watched resource."""

import os
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


DEFAULT_GITLAB_URL = "https://gitlab"
DEFAULT_BRANCH_PREFIX = "revert"
DEFAULT_DEBOUNCE_SECONDS = 300


def _parse_int(raw: Optional[str], default: int) -> int:
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _parse_bool(raw: Optional[str], default: bool = False) -> bool:
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class ControllerConfig(BaseModel):
    """
    Immutable controller configuration.

    Built once at startup and handed to every component at construction.
    Token and project ID are only needed in live mode; nothing checks for
    them locally, a missing value simply fails at the GitLab API.
    """

    model_config = ConfigDict(frozen=True)

    gitlab_token: str = ""
    gitlab_project_id: str = ""
    gitlab_url: str = DEFAULT_GITLAB_URL
    revert_branch_prefix: str = DEFAULT_BRANCH_PREFIX
    debounce_seconds: int = Field(ge=0, default=DEFAULT_DEBOUNCE_SECONDS)
    dry_run: bool = False
    retry_on_failure: bool = False          # Forget failed reverts instead of marking them completed
    request_timeout_seconds: float = 10.0

    # Host loop
    watch_namespace: str = ""               # "" = all namespaces
    reconcile_workers: int = Field(ge=1, default=2)
    status_port: int = Field(ge=0, default=8080)  # 0 disables the status API
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ControllerConfig":
        """Build a configuration from environment variables."""
        env = os.environ if environ is None else environ
        return cls(
            gitlab_token=env.get("GITLAB_TOKEN", ""),
            gitlab_project_id=env.get("GITLAB_PROJECT_ID", ""),
            gitlab_url=env.get("GITLAB_URL") or DEFAULT_GITLAB_URL,
            revert_branch_prefix=env.get("REVERT_BRANCH_PREFIX") or DEFAULT_BRANCH_PREFIX,
            debounce_seconds=max(
                0, _parse_int(env.get("DEBOUNCE_SECONDS"), DEFAULT_DEBOUNCE_SECONDS)
            ),
            dry_run=env.get("REVERT_MODE", "").strip().lower() == "echo",
            retry_on_failure=_parse_bool(env.get("REVERT_RETRY_ON_FAILURE")),
            watch_namespace=env.get("WATCH_NAMESPACE", ""),
            reconcile_workers=max(1, _parse_int(env.get("RECONCILE_WORKERS"), 2)),
            status_port=max(0, _parse_int(env.get("STATUS_PORT"), 8080)),
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        )

    def redacted(self) -> dict:
        """Serializable view with the token masked."""
        data = self.model_dump()
        if data["gitlab_token"]:
            data["gitlab_token"] = "***"
        return data
