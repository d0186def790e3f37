# utils/port_utils.py
import errno
import os
import socket
import psutil
import logging
from typing import Optional, Dict

logger = logging.getLogger(__name__)

# Number of consecutive ports tried, starting at the desired one
PORT_PROBE_WINDOW = 50


class NoFreePortError(RuntimeError):
    """No free port in the probe window"""

    def __init__(self, first_port: int, last_port: int):
        self.first_port = first_port
        self.last_port = last_port
        super().__init__(f"Unable to find free port in range {first_port}-{last_port}")


def _probe_bind(port: int, host: str) -> None:
    """Binds and listens on a transient socket, raising OSError if the port is taken"""
    family = socket.AF_INET6 if ':' in host else socket.AF_INET
    with socket.socket(family, socket.SOCK_STREAM) as s:
        if os.name != 'nt':
            # aiohttp TCPSite binds with reuse_address on POSIX too
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        s.bind((host, port))
        s.listen(1)


def find_available_port(desired_port: int, host: str, window: int = PORT_PROBE_WINDOW) -> int:
    """
    Returns the first port at or after desired_port that can be bound on host.

    Args:
        desired_port: port to try first
        host: bind host used for probing (same host the real listener will use)
        window: how many consecutive ports to try

    Returns:
        int: free port

    Raises:
        NoFreePortError: every port in the window is in use
        OSError: any bind error other than EADDRINUSE
    """
    last_port = min(desired_port + window, 65536) - 1

    for candidate in range(desired_port, last_port + 1):
        try:
            _probe_bind(candidate, host)
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                logger.debug(f"Port {candidate} on {host} is busy, trying next")
                continue
            raise
        return candidate

    raise NoFreePortError(desired_port, last_port)


def get_process_using_port(port: int) -> Optional[Dict]:
    """Returns information about the process listening on port"""
    try:
        for conn in psutil.net_connections(kind='inet'):
            try:
                if (conn.laddr and conn.laddr.port == port and
                        conn.status == psutil.CONN_LISTEN and conn.pid):

                    process = psutil.Process(conn.pid)
                    if process.is_running():
                        return {
                            'name': process.name(),
                            'pid': process.pid,
                            'username': process.username() if hasattr(process, 'username') else 'N/A'
                        }
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
    except (psutil.AccessDenied, OSError) as e:
        logger.debug(f"Could not inspect connections for port {port}: {e}")
    return None


def describe_port_owner(port: int) -> str:
    """Human readable description of who occupies port"""
    process_info = get_process_using_port(port)
    if process_info:
        message = (
            f"Port {port} is held by {process_info['name']} "
            f"(PID: {process_info['pid']})"
        )
        if process_info['username'] != 'N/A':
            message += f", user: {process_info['username']}"
        return message
    return f"Port {port} is held by an unknown process"
