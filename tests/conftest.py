import asyncio
import socket

import pytest
from aiohttp import web, WSMsgType

from dycast_proxy.core.config_manager import resolve_config


def free_port(host='127.0.0.1'):
    """Port that was free a moment ago (nothing listens on it afterwards)"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


@pytest.fixture
def listening_socket():
    """Occupies a loopback port for the duration of a test"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(('127.0.0.1', 0))
    sock.listen(1)
    yield sock
    sock.close()


class UpstreamRecorder:
    """What a mock upstream saw"""

    def __init__(self):
        self.requests = []
        self.ws_handshakes = []
        self.ws_received = []
        self.ws_connected = asyncio.Event()
        self.ws_closed = asyncio.Event()
        self.release_stream = asyncio.Event()


def build_upstream_app(recorder: UpstreamRecorder) -> web.Application:
    async def cookies(request):
        response = web.Response(text='ok')
        response.headers.add(
            'Set-Cookie',
            'ttwid=abc; Path=/; Domain=.douyin.com; Max-Age=31536000; HttpOnly; Secure=true; SameSite=None'
        )
        response.headers.add('Set-Cookie', '__ac_nonce=xyz; Path=/; domain=live.douyin.com')
        response.headers.add('Set-Cookie', 'plain=1; Path=/; Secure; SameSite=Lax')
        return response

    async def stream(request):
        response = web.StreamResponse()
        await response.prepare(request)
        await response.write(b'first')
        await recorder.release_stream.wait()
        await response.write(b'second')
        await response.write_eof()
        return response

    async def truncated(request):
        response = web.StreamResponse()
        response.content_length = 100
        await response.prepare(request)
        await response.write(b'partial')
        request.transport.close()
        return response

    async def broken_push(request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        await ws.send_str('welcome')
        await ws.receive()
        # FIN + all reserved bits set: the client parser rejects the frame
        request.transport.write(b'\xff\x00')
        async for _ in ws:
            pass
        return ws

    async def forbidden_ws(request):
        return web.Response(status=403, text='forbidden')

    async def push(request):
        recorder.ws_handshakes.append({
            'raw_path': request.raw_path,
            'headers': request.headers.copy(),
        })
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        recorder.ws_connected.set()
        await ws.send_str('welcome')

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                recorder.ws_received.append(msg.data)
                if msg.data == 'close-me':
                    await ws.close()
                else:
                    await ws.send_str(msg.data)
            elif msg.type == WSMsgType.BINARY:
                recorder.ws_received.append(msg.data)
                await ws.send_bytes(msg.data)

        recorder.ws_closed.set()
        return ws

    async def echo(request):
        body = await request.read()
        recorder.requests.append(request)
        return web.json_response({
            'method': request.method,
            'raw_path': request.raw_path,
            'headers': dict(request.headers),
            'body': body.decode('utf-8'),
        })

    app = web.Application()
    app.router.add_get('/cookies', cookies)
    app.router.add_get('/stream', stream)
    app.router.add_get('/truncated', truncated)
    app.router.add_get('/broken/', broken_push)
    app.router.add_get('/forbidden/{tail:.*}', forbidden_ws)
    app.router.add_get('/webcast/im/push/v2/', push)
    app.router.add_route('*', '/{tail:.*}', echo)
    return app


@pytest.fixture
def recorder():
    return UpstreamRecorder()


@pytest.fixture
async def upstream(aiohttp_server, recorder):
    return await aiohttp_server(build_upstream_app(recorder))


@pytest.fixture
async def bystander(aiohttp_server):
    """Second server that must never be reached through the proxy"""
    hits = []

    async def record(request):
        hits.append(request.raw_path)
        return web.Response(text='reached')

    app = web.Application()
    app.router.add_route('*', '/{tail:.*}', record)
    server = await aiohttp_server(app)
    server.hits = hits
    return server


@pytest.fixture
def proxy_config(upstream):
    base = f'http://{upstream.host}:{upstream.port}'
    return resolve_config(
        port=3001,
        host='127.0.0.1',
        dylive_target=base,
        socket_target=f'ws://{upstream.host}:{upstream.port}',
    )
