# core/proxy/__init__.py
"""
Proxy building blocks.

Header rewriting and CORS are pure functions; the HTTP forwarder and the
WebSocket bridge share one upstream ClientSession owned by DyCastProxy.
"""

from dycast_proxy.core.proxy.cors import apply_cors
from dycast_proxy.core.proxy.header_rewriter import rewrite_set_cookie, rewrite_user_agent
from dycast_proxy.core.proxy.http_forwarder import HttpForwarder, Transport
from dycast_proxy.core.proxy.ws_bridge import BridgeState, ProxyConnection, WebSocketBridge

__all__ = [
    'apply_cors',
    'rewrite_set_cookie',
    'rewrite_user_agent',
    'HttpForwarder',
    'Transport',
    'BridgeState',
    'ProxyConnection',
    'WebSocketBridge',
]
