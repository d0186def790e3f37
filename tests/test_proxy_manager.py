import asyncio
import dataclasses

import aiohttp
import pytest
from aiohttp import WSCloseCode, WSMsgType

from dycast_proxy.core.proxy_manager import ProxyServer, ServerState, iso_timestamp


@pytest.fixture
def server_config(proxy_config):
    return dataclasses.replace(proxy_config, port=0)


@pytest.fixture
async def server(server_config):
    server = ProxyServer(server_config)
    yield server
    await server.stop()


def test_iso_timestamp_format():
    stamp = iso_timestamp()
    assert stamp.endswith('Z')
    # 2024-05-01T12:00:00.000Z
    assert len(stamp) == 24


async def test_start_and_stop(server):
    assert server.state is ServerState.STOPPED
    assert server.bound_port is None

    await server.start()
    assert server.is_running
    port = server.bound_port
    assert port

    async with aiohttp.ClientSession() as session:
        async with session.get(f'http://127.0.0.1:{port}/health') as resp:
            assert resp.status == 200
            assert (await resp.json())['status'] == 'ok'

    await server.stop()
    assert server.state is ServerState.STOPPED
    assert server.proxy is None

    with pytest.raises(aiohttp.ClientConnectionError):
        async with aiohttp.ClientSession() as session:
            await session.get(f'http://127.0.0.1:{port}/health')


async def test_double_start_rejected(server):
    await server.start()
    with pytest.raises(RuntimeError):
        await server.start()
    assert server.is_running


async def test_stop_without_start_is_noop(server):
    await server.stop()
    await server.stop()
    assert server.state is ServerState.STOPPED


async def test_restart_after_stop(server):
    await server.start()
    await server.stop()
    await server.start()
    assert server.is_running


async def test_port_conflict(server_config, listening_socket):
    busy = listening_socket.getsockname()[1]
    server = ProxyServer(dataclasses.replace(server_config, port=busy))

    with pytest.raises(OSError):
        await server.start()

    assert server.state is ServerState.STOPPED
    assert server.last_error_type == 'port'
    assert server.last_error_details
    assert server.get_server_info()['running'] is False


async def test_server_info(server, server_config):
    info = server.get_server_info()
    assert info['running'] is False
    assert info['state'] == 'stopped'
    assert info['stats'] is None
    assert info['config'] == server_config.to_dict()

    await server.start()
    info = server.get_server_info()
    assert info['running'] is True
    assert info['state'] == 'running'
    assert info['stats'] == {
        'http_requests': 0,
        'http_errors': 0,
        'ws_sessions': 0,
        'ws_active': 0,
        'ws_dropped_frames': 0,
    }
    assert info['last_error_type'] is None


async def test_stop_closes_bridges_going_away(server, recorder):
    await server.start()
    url = f'http://127.0.0.1:{server.bound_port}/socket/webcast/im/push/v2/?room_id=1'

    async with aiohttp.ClientSession() as session:
        ws = await session.ws_connect(url)
        msg = await ws.receive(timeout=5)
        assert msg.data == 'welcome'

        stop_task = asyncio.create_task(server.stop())
        msg = await ws.receive(timeout=5)

        assert msg.type == WSMsgType.CLOSE
        assert msg.data == WSCloseCode.GOING_AWAY
        await ws.close()
        await asyncio.wait_for(stop_task, timeout=10)

    await asyncio.wait_for(recorder.ws_closed.wait(), timeout=5)
    assert server.state is ServerState.STOPPED
