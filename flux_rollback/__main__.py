"""
Controller entry point: python -m flux_rollback

Wires configuration, the Kubernetes client, the debounce tracker and the
status API together, then blocks until SIGINT/SIGTERM.
"""

import logging
import signal
import sys
import threading
from typing import Optional

import uvicorn
from kubernetes import client, config as kube_config
from kubernetes.config import ConfigException

from flux_rollback.api.app import create_app
from flux_rollback.models.config import ControllerConfig
from flux_rollback.reconciler.adapter import ReconciliationAdapter, default_probes
from flux_rollback.reconciler.manager import ControllerManager
from flux_rollback.remediation.client import GitLabRevertClient
from flux_rollback.tracking.debounce import DebounceTracker

logger = logging.getLogger("flux_rollback")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def connect_kubernetes() -> client.ApiClient:
    """In-cluster config first, kubeconfig second; unreachable API is fatal."""
    try:
        kube_config.load_incluster_config()
    except ConfigException:
        try:
            kube_config.load_kube_config()
        except ConfigException as e:
            logger.critical("No Kubernetes configuration available: %s", e)
            raise SystemExit(1)

    api_client = client.ApiClient()
    try:
        version = client.VersionApi(api_client).get_code()
    except Exception as e:
        logger.critical("Cannot reach the Kubernetes API: %s", e)
        raise SystemExit(1)
    logger.info("Connected to Kubernetes %s", version.git_version)
    return api_client


def start_status_server(app, port: int, log_level: str) -> Optional[uvicorn.Server]:
    if port == 0:
        return None
    server = uvicorn.Server(uvicorn.Config(
        app, host="0.0.0.0", port=port, log_level=log_level.lower(),
    ))
    threading.Thread(target=server.run, name="status-api", daemon=True).start()
    return server


def main() -> int:
    config = ControllerConfig.from_env()
    configure_logging(config.log_level)

    api_client = connect_kubernetes()
    probes = default_probes(client.CustomObjectsApi(api_client))

    tracker = DebounceTracker(
        remediator=GitLabRevertClient(config),
        retry_on_failure=config.retry_on_failure,
    )
    adapter = ReconciliationAdapter(tracker, probes, config)
    manager = ControllerManager(adapter, probes, config)

    server = start_status_server(
        create_app(config, tracker, adapter, manager),
        config.status_port,
        config.log_level,
    )

    stop_event = threading.Event()

    def _shutdown(signum, _frame):
        logger.info("Received signal %s, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    logger.info(
        "Starting Rollback Controller debounce_seconds=%s dry_run=%s",
        config.debounce_seconds, config.dry_run,
    )
    manager.run(stop_event)

    if server is not None:
        server.should_exit = True
    return 0


if __name__ == "__main__":
    sys.exit(main())
