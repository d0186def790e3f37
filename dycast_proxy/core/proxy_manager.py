# proxy_manager.py
import errno
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from aiohttp import web, ClientSession, ClientTimeout, DummyCookieJar, TCPConnector

from dycast_proxy.core.config_manager import ProxyConfig
from dycast_proxy.core.proxy.cors import apply_cors
from dycast_proxy.core.proxy.http_forwarder import HttpForwarder
from dycast_proxy.core.proxy.ws_bridge import WebSocketBridge

logger = logging.getLogger(__name__)

HTTP_PREFIX = '/dylive'
WS_PREFIX = '/socket'
HEALTH_PATH = '/health'


def is_upgrade_request(request: web.Request) -> bool:
    connection = request.headers.get('Connection', '').lower()
    return 'upgrade' in connection and bool(request.headers.get('Upgrade'))


def strip_prefix(raw_path: str, prefix: str) -> Optional[str]:
    """
    Returns the residual path after prefix, or None when raw_path is not under it.

    The residual must be empty or begin with '/' or '?', otherwise it would
    be glued onto the upstream authority (/dylive@host, /dylive.host).
    """
    if not raw_path.startswith(prefix):
        return None
    residual = raw_path[len(prefix):]
    if residual and residual[0] not in '/?':
        return None
    return residual


def iso_timestamp() -> str:
    """UTC timestamp with millisecond precision, e.g. 2024-05-01T12:00:00.000Z"""
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


class DyCastProxy:
    def __init__(self, config: ProxyConfig):
        """
        Args:
            config: resolved proxy configuration (read-only for all handlers)
        """
        self.config = config

        self.session = None
        self.forwarder = None
        self.bridge = None

        # Counters, shared with the forwarder and the bridge
        self.stats = {
            'http_requests': 0,
            'http_errors': 0,
            'ws_sessions': 0,
            'ws_active': 0,
            'ws_dropped_frames': 0,
        }

    async def initialize(self):
        """Creates the upstream session shared by the forwarder and the bridge"""
        if self.session is None:
            self.session = ClientSession(
                connector=TCPConnector(limit=100, ttl_dns_cache=300, enable_cleanup_closed=True),
                timeout=ClientTimeout(total=None, connect=self.config.connect_timeout),
                cookie_jar=DummyCookieJar(),
                auto_decompress=False,
            )
            self.forwarder = HttpForwarder(self.session, cors=self.config.cors, stats=self.stats)
            self.bridge = WebSocketBridge(self.session, self.config.socket_target, stats=self.stats)

    async def cleanup(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def on_startup(self, app: web.Application):
        await self.initialize()

    async def on_shutdown(self, app: web.Application):
        if self.bridge:
            await self.bridge.close_all()

    async def on_cleanup(self, app: web.Application):
        await self.cleanup()

    async def router(self, request: web.Request) -> web.StreamResponse:
        """Dispatches every inbound request or upgrade to exactly one handler"""
        raw_path = request.raw_path

        if is_upgrade_request(request):
            residual = strip_prefix(raw_path, WS_PREFIX)
            if residual is not None and self.bridge is not None and self.bridge.accepting:
                return await self.bridge.handle(request, residual)
            return self.reject_upgrade(request)

        if request.method == 'OPTIONS':
            return self.handle_preflight(request)

        residual = strip_prefix(raw_path, HTTP_PREFIX)
        if residual is not None:
            return await self.handle_http(request, residual)

        if request.path == HEALTH_PATH:
            return self.handle_health(request)

        return self.handle_not_found(request)

    async def handle_http(self, request: web.Request, residual: str) -> web.StreamResponse:
        self.stats['http_requests'] += 1
        return await self.forwarder.forward(request, self.config.dylive_target, residual)

    def handle_preflight(self, request: web.Request) -> web.Response:
        return web.Response(status=200, headers=apply_cors({}, self.config.cors))

    def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                'status': 'ok',
                'timestamp': iso_timestamp(),
                'config': self.config.public_summary(),
            },
            headers=apply_cors({}, self.config.cors),
        )

    def handle_not_found(self, request: web.Request) -> web.Response:
        logger.debug(f"No route for {request.method} {request.raw_path}")
        return web.json_response(
            {'error': 'Not found'},
            status=404,
            headers=apply_cors({}, self.config.cors),
        )

    def reject_upgrade(self, request: web.Request) -> web.Response:
        """Drops the connection without any handshake reply"""
        logger.debug(f"Rejecting upgrade for {request.raw_path}")
        if request.transport is not None:
            request.transport.abort()
        # aiohttp sees the aborted transport as a premature disconnect and never sends this
        return web.Response(status=400)

    def get_full_stats(self):
        return dict(self.stats)


PROXY_KEY = web.AppKey('proxy', DyCastProxy)


def create_app(config: ProxyConfig) -> web.Application:
    """Builds the aiohttp application with a single catch-all route"""
    proxy = DyCastProxy(config)

    app = web.Application()
    app[PROXY_KEY] = proxy
    app.router.add_route('*', '/{path:.*}', proxy.router)
    app.on_startup.append(proxy.on_startup)
    app.on_shutdown.append(proxy.on_shutdown)
    app.on_cleanup.append(proxy.on_cleanup)
    return app


class ServerState(Enum):
    STOPPED = 'stopped'
    STARTING = 'starting'
    RUNNING = 'running'
    STOPPING = 'stopping'


@dataclass
class ServerHandles:
    """Listener resources owned by one ProxyServer while it runs"""
    app: web.Application
    runner: web.AppRunner
    site: web.TCPSite

    @property
    def proxy(self) -> DyCastProxy:
        return self.app[PROXY_KEY]


class ProxyServer:
    def __init__(self, config: ProxyConfig):
        self.config = config
        self.state = ServerState.STOPPED
        self._handles: Optional[ServerHandles] = None

        # Error tracking
        self.last_error_type = None  # 'port', 'bind', 'unknown'
        self.last_error_details = None

    @property
    def is_running(self) -> bool:
        return self.state is ServerState.RUNNING

    @property
    def proxy(self) -> Optional[DyCastProxy]:
        return self._handles.proxy if self._handles else None

    async def start(self):
        """
        Binds the listener and starts serving.

        Raises:
            RuntimeError: the server is not stopped
            OSError: the port could not be bound
        """
        if self.state is not ServerState.STOPPED:
            raise RuntimeError(f"Proxy server cannot start while {self.state.value}")

        self.state = ServerState.STARTING
        app = create_app(self.config)
        runner = web.AppRunner(app, access_log=None)

        try:
            await runner.setup()
            site = web.TCPSite(runner, host=self.config.host, port=self.config.port)
            await site.start()
        except Exception as e:
            self._record_error(e)
            logger.error(f"❌ Failed to start proxy server: {e}")
            await runner.cleanup()
            self.state = ServerState.STOPPED
            raise

        self._handles = ServerHandles(app=app, runner=runner, site=site)
        self.state = ServerState.RUNNING
        self.last_error_type = None
        self.last_error_details = None

        logger.info(f"🚀 DyCast Server started on http://{self.config.host}:{self.config.port}")
        logger.info("📡 Proxy endpoints:")
        logger.info(f"   - {HTTP_PREFIX} -> {self.config.dylive_target}")
        logger.info(f"   - {WS_PREFIX} -> {self.config.socket_target}")
        logger.info(f"📊 Health check: http://{self.config.host}:{self.config.port}{HEALTH_PATH}")

    def _record_error(self, error: Exception):
        if isinstance(error, OSError) and error.errno == errno.EADDRINUSE:
            self.last_error_type = 'port'
        elif isinstance(error, OSError):
            self.last_error_type = 'bind'
        else:
            self.last_error_type = 'unknown'
        self.last_error_details = str(error)

    async def stop(self):
        """Stops accepting upgrades, closes the listener and waits for handlers to drain"""
        if self.state is not ServerState.RUNNING:
            logger.debug(f"Stop requested while {self.state.value}, nothing to do")
            return

        self.state = ServerState.STOPPING
        handles = self._handles
        try:
            proxy = handles.proxy
            if proxy.bridge:
                proxy.bridge.accepting = False

            # site.stop() closes the listener, runner.cleanup() runs on_shutdown/on_cleanup
            await handles.site.stop()
            await handles.runner.cleanup()

            stats = proxy.get_full_stats()
            logger.info(
                f"📊 Session statistics:\n"
                f"   HTTP requests: {stats['http_requests']}\n"
                f"   HTTP errors: {stats['http_errors']}\n"
                f"   WebSocket sessions: {stats['ws_sessions']}\n"
                f"   Dropped frames: {stats['ws_dropped_frames']}"
            )
        finally:
            self._handles = None
            self.state = ServerState.STOPPED
            logger.info("🛑 DyCast Server stopped")

    def get_server_info(self):
        """Returns config, running flag and counters"""
        proxy = self.proxy
        return {
            'config': self.config.to_dict(),
            'running': self.is_running,
            'state': self.state.value,
            'stats': proxy.get_full_stats() if proxy else None,
            'last_error_type': self.last_error_type,
            'last_error_details': self.last_error_details,
        }

    @property
    def bound_port(self) -> Optional[int]:
        """Actual listening port (differs from config.port when it is 0)"""
        if not self._handles:
            return None
        addresses = self._handles.runner.addresses
        return addresses[0][1] if addresses else None
