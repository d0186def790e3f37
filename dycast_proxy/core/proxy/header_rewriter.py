# core/proxy/header_rewriter.py
"""Header rewriting for requests and responses passing through the proxy"""

import re
import logging
from typing import Iterable, List, Mapping, Optional

from multidict import CIMultiDict
from yarl import URL

logger = logging.getLogger(__name__)

# Desktop Edge on Windows; the upstream serves an incompatible page to mobile agents
DESKTOP_USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/136.0.0.0 Safari/537.36 Edg/136.0.0.0'
)

UPSTREAM_ORIGIN = 'https://live.douyin.com'
UPSTREAM_REFERER = 'https://live.douyin.com/'

HOP_BY_HOP_HEADERS = frozenset({
    'connection',
    'keep-alive',
    'proxy-connection',
    'transfer-encoding',
    'te',
    'trailer',
    'upgrade',
})

# Handshake headers of the inbound upgrade; aiohttp generates its own for the upstream leg
_WS_HANDSHAKE_HEADERS = frozenset({
    'host',
    'connection',
    'upgrade',
    'content-length',
    'transfer-encoding',
    'sec-websocket-key',
    'sec-websocket-version',
    'sec-websocket-extensions',
    'sec-websocket-protocol',
    'sec-websocket-accept',
    'origin',
    'referer',
})

# No Sec-WebSocket-Extensions: push frames are already gzip-packed, permessage-deflate stays off
WS_UPSTREAM_HEADERS = {
    'Origin': UPSTREAM_ORIGIN,
    'Referer': UPSTREAM_REFERER,
    'Accept': '*/*',
    'Accept-Encoding': 'gzip, deflate, br',
    'Accept-Language': 'zh-CN,zh;q=0.9,en;q=0.8',
    'Cache-Control': 'no-cache',
    'Pragma': 'no-cache',
    'Sec-WebSocket-Version': '13',
}

_MOBILE_PATTERN = re.compile(r'mobile|android|iphone|ipad', re.IGNORECASE)

_COOKIE_DOMAIN = re.compile(r';\s*Domain=[^;]*', re.IGNORECASE)
_COOKIE_SAMESITE_NONE = re.compile(r';\s*SameSite=None(?=\s*(?:;|$))', re.IGNORECASE)
_COOKIE_SECURE_TRUE = re.compile(r';\s*Secure=true(?=\s*(?:;|$))', re.IGNORECASE)


def is_mobile_user_agent(user_agent: str) -> bool:
    return bool(_MOBILE_PATTERN.search(user_agent))


def rewrite_user_agent(user_agent: Optional[str]) -> str:
    """Returns the desktop signature for missing or mobile agents, otherwise the input"""
    if not user_agent or is_mobile_user_agent(user_agent):
        return DESKTOP_USER_AGENT
    return user_agent


def rewrite_set_cookie(cookies: Iterable[str]) -> List[str]:
    """
    Unbinds cookies from the upstream domain so the browser stores them for the proxy origin.

    Removes Domain=..., SameSite=None and Secure=true; everything else is kept
    byte-for-byte and the cookie order is preserved.
    """
    rewritten = []
    for cookie in cookies:
        cookie = _COOKIE_DOMAIN.sub('', cookie)
        cookie = _COOKIE_SAMESITE_NONE.sub('', cookie)
        cookie = _COOKIE_SECURE_TRUE.sub('', cookie)
        rewritten.append(cookie)
    return rewritten


def host_header_for(url: URL) -> str:
    if url.port is None or url.is_default_port():
        return url.host
    return f"{url.host}:{url.port}"


def build_forward_headers(inbound: Mapping[str, str], target_url: URL) -> CIMultiDict:
    """Outbound headers for a forwarded HTTP request"""
    headers = CIMultiDict(
        (key, value) for key, value in inbound.items()
        if key.lower() not in HOP_BY_HOP_HEADERS
    )
    headers['Host'] = host_header_for(target_url)
    headers['User-Agent'] = rewrite_user_agent(inbound.get('User-Agent'))
    headers['Referer'] = UPSTREAM_REFERER
    return headers


def build_upstream_ws_headers(inbound: Mapping[str, str]) -> CIMultiDict:
    """
    Outbound headers for the upstream WebSocket handshake.

    Inbound Origin/Referer are replaced by the upstream's own values and the
    cookie header goes through untouched. No Sec-WebSocket-Extensions is
    offered, so permessage-deflate stays off on the upstream leg.
    """
    headers = CIMultiDict(
        (key, value) for key, value in inbound.items()
        if key.lower() not in _WS_HANDSHAKE_HEADERS
    )
    headers['User-Agent'] = rewrite_user_agent(inbound.get('User-Agent'))
    headers.update(WS_UPSTREAM_HEADERS)
    return headers


def filter_response_headers(upstream_headers: Mapping[str, str]) -> CIMultiDict:
    """Copies upstream response headers minus hop-by-hop ones, rewriting Set-Cookie"""
    headers = CIMultiDict()
    cookies = []
    for key, value in upstream_headers.items():
        key_lower = key.lower()
        if key_lower in HOP_BY_HOP_HEADERS:
            continue
        if key_lower == 'set-cookie':
            cookies.append(value)
            continue
        headers.add(key, value)

    for cookie in rewrite_set_cookie(cookies):
        headers.add('Set-Cookie', cookie)

    if cookies:
        logger.debug(f"Rewrote {len(cookies)} Set-Cookie header(s)")
    return headers
