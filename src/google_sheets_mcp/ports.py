"""
Find a free local TCP port for the OAuth callback listener.
"""

import logging
import socket

from .errors import NoAvailablePort

logger = logging.getLogger(__name__)

LOOPBACK_HOST = '127.0.0.1'
LOOPBACK_HOST_V6 = '::1'


def _can_bind(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((host, port))
        except OSError:
            return False
        return True


def find_available_port(start: int, width: int = 5, host: str = LOOPBACK_HOST) -> int:
    """
    Return the first port in ``[start, start + width]`` that can be bound.

    Each candidate is bound and released immediately, so another process may
    still take the port before the caller binds it.

    Raises:
        NoAvailablePort: If every candidate in the range is in use.
    """
    if start <= 0 or width < 0:
        raise ValueError(f"invalid port range: start={start}, width={width}")
    end = min(start + width, 65535)
    for port in range(start, end + 1):
        if _can_bind(host, port):
            return port
        logger.debug("Port %d is in use", port)
    raise NoAvailablePort(start, end)
