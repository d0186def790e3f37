# core/proxy/ws_bridge.py
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Set, Union

from aiohttp import web, ClientSession, ClientError, ClientWebSocketResponse, WSCloseCode, WSMsgType
from yarl import URL

from dycast_proxy.core.proxy.header_rewriter import build_upstream_ws_headers

logger = logging.getLogger(__name__)

# Upper bound for the second leg to finish once the first one has closed
CLOSE_TIMEOUT = 5.0

UPSTREAM_ERROR_REASON = b'Target WebSocket error'

AnyWebSocket = Union[web.WebSocketResponse, ClientWebSocketResponse]


class BridgeState(Enum):
    PENDING_UPGRADE = 'pending_upgrade'
    CONNECTING_UPSTREAM = 'connecting_upstream'
    OPEN = 'open'
    FORWARDING = 'forwarding'
    CLOSING = 'closing'
    CLOSED = 'closed'


@dataclass(eq=False)
class ProxyConnection:
    """One client socket paired with the upstream socket opened for it"""
    client: web.WebSocketResponse
    target_url: URL
    upstream: Optional[ClientWebSocketResponse] = None
    state: BridgeState = BridgeState.PENDING_UPGRADE
    dropped_frames: int = field(default=0)

    def transition(self, state: BridgeState) -> None:
        logger.debug(f"WebSocket {self.target_url.path}: {self.state.value} → {state.value}")
        self.state = state


class WebSocketBridge:
    def __init__(self, session: ClientSession, socket_target: str, stats: Optional[dict] = None):
        """
        Args:
            session: shared upstream session
            socket_target: upstream WebSocket base URL, residual path is appended
            stats: counters dict shared with the owning proxy
        """
        self.session = session
        self.socket_target = socket_target
        self.stats = stats if stats is not None else {}
        self.accepting = True
        self._connections: Set[ProxyConnection] = set()

    @property
    def active_connections(self) -> int:
        return len(self._connections)

    def _count(self, key: str, delta: int = 1) -> None:
        self.stats[key] = self.stats.get(key, 0) + delta

    async def handle(self, request: web.Request, residual: str) -> web.StreamResponse:
        """Completes the client handshake, connects upstream and bridges frames until either side closes"""
        client_ws = web.WebSocketResponse(compress=False, max_msg_size=0)
        conn = ProxyConnection(client=client_ws, target_url=URL(self.socket_target + residual, encoded=True))

        await client_ws.prepare(request)
        logger.debug(f"WebSocket connection established from {request.remote}, target {conn.target_url}")

        self._connections.add(conn)
        self._count('ws_sessions')
        self._count('ws_active')
        try:
            await self._run(conn, request)
        finally:
            self._connections.discard(conn)
            self._count('ws_active', -1)
            self._count('ws_dropped_frames', conn.dropped_frames)
            conn.transition(BridgeState.CLOSED)

        return client_ws

    async def _run(self, conn: ProxyConnection, request: web.Request) -> None:
        conn.transition(BridgeState.CONNECTING_UPSTREAM)
        headers = build_upstream_ws_headers(request.headers)

        try:
            conn.upstream = await self.session.ws_connect(
                conn.target_url,
                headers=headers,
                compress=0,
                max_msg_size=0,
            )
        except (ClientError, asyncio.TimeoutError, OSError) as e:
            logger.error(f"❌ Target WebSocket error: {e!r} (target {conn.target_url})")
            conn.transition(BridgeState.CLOSING)
            await conn.client.close(code=WSCloseCode.INTERNAL_ERROR, message=UPSTREAM_ERROR_REASON)
            return

        conn.transition(BridgeState.OPEN)
        logger.debug(f"✅ Connected to target WebSocket server {conn.target_url}")

        conn.transition(BridgeState.FORWARDING)
        client_task = asyncio.create_task(self._pump(conn, conn.client, conn.upstream, 'client → target'))
        upstream_task = asyncio.create_task(self._pump(conn, conn.upstream, conn.client, 'target → client'))

        try:
            done, _ = await asyncio.wait({client_task, upstream_task}, return_when=asyncio.FIRST_COMPLETED)
            conn.transition(BridgeState.CLOSING)

            if upstream_task in done:
                error = self._leg_error(upstream_task)
                if error is not None:
                    logger.error(f"❌ Target WebSocket error: {error!r} (target {conn.target_url})")
                    await conn.client.close(code=WSCloseCode.INTERNAL_ERROR, message=UPSTREAM_ERROR_REASON)
                else:
                    logger.debug(f"🔌 Target WebSocket disconnected: code={conn.upstream.close_code}")
                    await conn.client.close()
            else:
                error = self._leg_error(client_task)
                if error is not None:
                    logger.warning(f"⚠️ Client WebSocket error: {error!r}")
                else:
                    logger.debug(f"🔌 Client WebSocket disconnected: code={conn.client.close_code}")
                await conn.upstream.close()
        finally:
            await self._finish(conn, client_task, upstream_task)

    async def _finish(self, conn: ProxyConnection, *tasks: asyncio.Task) -> None:
        """Makes sure both sockets are closed and both pumps are gone"""
        pending = [task for task in tasks if not task.done()]
        if pending:
            _, still_pending = await asyncio.wait(pending, timeout=CLOSE_TIMEOUT)
            for task in still_pending:
                task.cancel()
            if still_pending:
                await asyncio.wait(still_pending)

        for ws in (conn.client, conn.upstream):
            if ws is not None and not ws.closed:
                await ws.close()

    @staticmethod
    def _leg_error(task: asyncio.Task) -> Optional[BaseException]:
        if task.cancelled():
            return None
        return task.exception() or task.result()

    async def _pump(self, conn: ProxyConnection, source: AnyWebSocket, sink: AnyWebSocket,
                    direction: str) -> Optional[BaseException]:
        """
        Forwards frames from source to sink in arrival order.

        Frames are sent only while sink is open; otherwise they are dropped,
        never queued. Returns the error that ended the stream, or None for a
        normal close.
        """
        async for msg in source:
            if msg.type == WSMsgType.ERROR:
                return source.exception() or ConnectionError(f"{direction}: websocket error")

            if msg.type not in (WSMsgType.TEXT, WSMsgType.BINARY):
                continue

            if sink.closed:
                conn.dropped_frames += 1
                logger.debug(f"⚠️ Cannot forward {direction} message - destination not open")
                continue

            try:
                if msg.type == WSMsgType.TEXT:
                    await sink.send_str(msg.data)
                else:
                    await sink.send_bytes(msg.data)
            except ConnectionResetError:
                conn.dropped_frames += 1
                logger.debug(f"⚠️ Dropped {direction} message - destination closing")
                continue

            logger.debug(f"{'📤' if sink is conn.upstream else '📥'} {direction}: {msg.type.name.lower()} frame, len={len(msg.data)}")

        return None

    async def close_all(self, code: int = WSCloseCode.GOING_AWAY, message: bytes = b'Server shutdown') -> None:
        """Closes every bridged client socket; each bridge then closes its upstream leg"""
        self.accepting = False
        connections = list(self._connections)
        if connections:
            logger.info(f"🛑 Closing {len(connections)} WebSocket bridge(s)")
        for conn in connections:
            if not conn.client.closed:
                await conn.client.close(code=code, message=message)
