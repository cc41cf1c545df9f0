from __future__ import annotations

import socket
from typing import Mapping

from shipyard.errors import RuntimeStartupError
from shipyard.framework.config import DEFAULT_PORT, DEFAULT_STATUS_PATH

PORT_ENV_VAR = "PORT"


def resolve_port(environ: Mapping[str, str], *, default: int = DEFAULT_PORT) -> int:
    """Port from `PORT`; unset or blank falls back to `default`."""

    raw = (environ.get(PORT_ENV_VAR) or "").strip()
    if not raw:
        return default
    try:
        port = int(raw)
    except ValueError as exc:
        raise RuntimeStartupError(f"Invalid {PORT_ENV_VAR}={raw!r}: must be an integer") from exc
    if not 1 <= port <= 65535:
        raise RuntimeStartupError(f"Invalid {PORT_ENV_VAR}={raw!r}: must be 1-65535")
    return port


def probe_url(port: int, status_path: str = DEFAULT_STATUS_PATH, *, host: str = "localhost") -> str:
    return f"http://{host}:{port}{status_path}"


def check_port_available(port: int, *, host: str = "0.0.0.0") -> None:
    """Fail fast when the listener port cannot be bound by the current identity."""

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError as exc:
            raise RuntimeStartupError(f"Cannot bind port {port} on {host}: {exc}") from exc
