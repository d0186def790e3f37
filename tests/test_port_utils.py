import os

import pytest

from dycast_proxy.utils.port_utils import (
    NoFreePortError,
    describe_port_owner,
    find_available_port,
    get_process_using_port,
)
from tests.conftest import free_port


def test_free_port_returned_as_is():
    port = free_port()
    assert find_available_port(port, '127.0.0.1') == port


def test_busy_port_skipped(listening_socket):
    busy = listening_socket.getsockname()[1]
    port = find_available_port(busy, '127.0.0.1')
    assert busy < port < busy + 50


def test_window_exhausted(listening_socket):
    busy = listening_socket.getsockname()[1]
    with pytest.raises(NoFreePortError) as exc_info:
        find_available_port(busy, '127.0.0.1', window=1)

    assert exc_info.value.first_port == busy
    assert exc_info.value.last_port == busy
    assert f"{busy}-{busy}" in str(exc_info.value)


def test_other_bind_errors_propagate():
    # TEST-NET-3 address, never assigned to a local interface
    with pytest.raises(OSError):
        find_available_port(free_port(), '203.0.113.1')


def test_describe_port_owner(listening_socket):
    busy = listening_socket.getsockname()[1]
    description = describe_port_owner(busy)
    assert str(busy) in description


def test_get_process_using_port_finds_self(listening_socket):
    info = get_process_using_port(listening_socket.getsockname()[1])
    # net_connections may need elevated rights on some platforms
    if info is not None:
        assert info['pid'] == os.getpid()
