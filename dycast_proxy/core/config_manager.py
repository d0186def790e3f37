# core/config_manager.py
import os
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3001
DEFAULT_HOST = '0.0.0.0'
DEFAULT_DYLIVE_TARGET = 'https://live.douyin.com'
DEFAULT_SOCKET_TARGET = 'wss://webcast5-ws-web-lf.douyin.com'
DEFAULT_CONNECT_TIMEOUT = 10.0

_FALSE_VALUES = ('false', '0', 'no', 'off')


@dataclass(frozen=True)
class ProxyConfig:
    """Resolved proxy settings. Every field is set; build it with resolve_config()."""
    port: int
    host: str
    dylive_target: str
    socket_target: str
    cors: bool
    debug: bool
    connect_timeout: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def public_summary(self) -> Dict[str, Any]:
        """Subset reported by the /health endpoint"""
        return {
            'port': self.port,
            'host': self.host,
            'dyliveTarget': self.dylive_target,
            'socketTarget': self.socket_target,
        }


def _normalize_target(name: str, value: str, schemes: tuple) -> str:
    parts = urlsplit(value)
    if parts.scheme not in schemes or not parts.netloc:
        raise ValueError(
            f"{name} must be an absolute URL with scheme {'/'.join(schemes)}, got {value!r}"
        )
    return value.rstrip('/')


def resolve_config(port: Optional[int] = None,
                   host: Optional[str] = None,
                   dylive_target: Optional[str] = None,
                   socket_target: Optional[str] = None,
                   cors: Optional[bool] = None,
                   debug: Optional[bool] = None,
                   connect_timeout: Optional[float] = None) -> ProxyConfig:
    """
    Fills unset fields with defaults and validates the result.

    Args:
        port: listening port (default 3001)
        host: bind host (default 0.0.0.0)
        dylive_target: HTTP upstream base URL
        socket_target: WebSocket upstream base URL
        cors: attach CORS headers (default True)
        debug: verbose logging (default False)
        connect_timeout: upstream connect timeout in seconds

    Returns:
        ProxyConfig

    Raises:
        ValueError: invalid port, target URL or timeout
    """
    port = DEFAULT_PORT if port is None else int(port)
    if not 0 <= port <= 65535:
        raise ValueError(f"port must be in 0-65535, got {port}")

    connect_timeout = DEFAULT_CONNECT_TIMEOUT if connect_timeout is None else float(connect_timeout)
    if connect_timeout <= 0:
        raise ValueError(f"connect_timeout must be positive, got {connect_timeout}")

    return ProxyConfig(
        port=port,
        host=host or DEFAULT_HOST,
        dylive_target=_normalize_target(
            'dylive_target', dylive_target or DEFAULT_DYLIVE_TARGET, ('http', 'https')
        ),
        socket_target=_normalize_target(
            'socket_target', socket_target or DEFAULT_SOCKET_TARGET, ('ws', 'wss', 'http', 'https')
        ),
        cors=True if cors is None else bool(cors),
        debug=bool(debug),
        connect_timeout=connect_timeout,
    )


def _first_env(environ: Mapping[str, str], *names: str) -> Optional[str]:
    for name in names:
        value = environ.get(name)
        if value:
            return value
    return None


def _parse_port(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    try:
        port = int(raw)
    except ValueError:
        port = 0
    if port <= 0:
        logger.warning(f"⚠️ Ignoring invalid port {raw!r}, using {DEFAULT_PORT}")
        return None
    return port


def load_config_from_env(environ: Optional[Mapping[str, str]] = None) -> ProxyConfig:
    """Builds the config from process environment variables"""
    if environ is None:
        environ = os.environ

    cors_raw = environ.get('CORS')
    timeout_raw = environ.get('PROXY_CONNECT_TIMEOUT')

    return resolve_config(
        port=_parse_port(_first_env(environ, 'PORT', 'PROXY_PORT')),
        host=_first_env(environ, 'HOST', 'PROXY_HOST'),
        dylive_target=environ.get('DYLIVE_TARGET'),
        socket_target=environ.get('SOCKET_TARGET'),
        cors=None if cors_raw is None else cors_raw.strip().lower() not in _FALSE_VALUES,
        debug=environ.get('DEBUG') == 'true' or environ.get('DYCAST_DEBUG') == 'true',
        connect_timeout=float(timeout_raw) if timeout_raw else None,
    )
