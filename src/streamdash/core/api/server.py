"""
Server bootstrap: discover-or-claim, then serve.

acquire_server() either finds the live server of the project (nothing to
start) or binds a port and writes the lock. run_server() serves the API
on the already-bound socket so no other process can take the port
between claiming and listening.
"""

import logging
import os

import uvicorn

from streamdash.core.api.app import create_app
from streamdash.core.api.deps import ServerContext
from streamdash.core.config.models import StreamdashConfig
from streamdash.core.discovery.lock import (
    ClaimedServer,
    ClaimError,
    DiscoveryError,
    DiscoveryResult,
    claim,
    discover,
    install_shutdown_handlers,
    remove_lock,
)

logger = logging.getLogger(__name__)


def acquire_server(
    config: StreamdashConfig, port: int | None = None
) -> DiscoveryResult | ClaimedServer:
    """
    Find the project's live server or claim the role for this process.

    Losing a bind race sends us back to discovery, at most
    `discovery.claim_attempts` times.

    Returns:
        DiscoveryResult with existing=True when another server is live,
        otherwise the ClaimedServer this process must serve on.

    Raises:
        DiscoveryError: If no port could be claimed
    """
    settings = config.discovery
    requested = port if port is not None else config.api.port
    last_error: ClaimError | None = None

    for attempt in range(1, settings.claim_attempts + 1):
        result = discover(
            config.lock_path,
            config.project_root,
            config.project_name,
            port=requested,
            host=config.api.host,
            base_port=settings.base_port,
            port_span=settings.port_span,
            port_attempts=settings.port_attempts,
            probe=settings.probe,
            probe_timeout=settings.probe_timeout_seconds,
        )
        if result.existing:
            return result
        try:
            return claim(
                config.lock_path,
                result.port,
                config.project_root,
                config.project_name,
                host=config.api.host,
            )
        except ClaimError as e:
            logger.warning("Claim attempt %d failed: %s", attempt, e)
            last_error = e

    raise DiscoveryError(
        f"Could not claim a server for {config.project_name} after "
        f"{settings.claim_attempts} attempts: {last_error}"
    )


def run_server(
    config: StreamdashConfig,
    claimed: ClaimedServer,
    *,
    run_scanner: bool = True,
    log_level: str = "warning",
) -> None:
    """Serve the API on a claimed socket until interrupted (blocks)."""
    cleanup = install_shutdown_handlers(claimed.lock_path, pid=os.getpid())
    context = ServerContext.from_config(
        config, lock_path=claimed.lock_path, run_scanner=run_scanner
    )
    app = create_app(context)
    server = uvicorn.Server(
        uvicorn.Config(app, host=config.api.host, port=claimed.port, log_level=log_level)
    )
    try:
        server.run(sockets=[claimed.sock])
    finally:
        claimed.sock.close()
        cleanup()
        remove_lock(claimed.lock_path, pid=os.getpid())
