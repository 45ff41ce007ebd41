"""Console entry point (``glycosync-server``).

Serves over Streamable HTTP by default, or over stdio when
``GLYCO_TRANSPORT=stdio`` for clients that spawn the server as a subprocess.
"""

from __future__ import annotations

import logging
import sys
from ipaddress import ip_address

from glycosync.core.config.settings import Settings, get_settings
from glycosync.core.server.app import create_app

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _configure_logging(level_name: str) -> None:
    # stdout carries the MCP stream under stdio, so logs always go to stderr.
    logging.basicConfig(
        level=getattr(logging, level_name.upper(), logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


def _is_loopback_host(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def check_bind_address(settings: Settings) -> None:
    """Refuse a network-reachable HTTP listener unless explicitly allowed.

    Raises:
        RuntimeError: Non-loopback host without ``GLYCO_ALLOW_INSECURE_BIND``.
    """
    if settings.glyco_transport == "stdio" or _is_loopback_host(settings.glyco_host):
        return
    if not settings.glyco_allow_insecure_bind:
        raise RuntimeError(
            f"Refusing to serve readings on {settings.glyco_host}: the server has no "
            "auth layer. Bind to a loopback address or set GLYCO_ALLOW_INSECURE_BIND=true."
        )
    logger.warning(
        "Serving on non-loopback host %s without authentication", settings.glyco_host
    )


def run(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    _configure_logging(settings.glyco_log_level)
    check_bind_address(settings)

    server = create_app(settings_override=settings)
    if settings.glyco_transport == "stdio":
        logger.info("GlycoSync serving over stdio (sync backend: %s)", settings.sync_backend)
        server.run(transport="stdio")
        return

    logger.info(
        "GlycoSync serving on http://%s:%d (sync backend: %s)",
        settings.glyco_host,
        settings.glyco_port,
        settings.sync_backend,
    )
    server.run(transport="streamable-http", host=settings.glyco_host, port=settings.glyco_port)


if __name__ == "__main__":
    run()
