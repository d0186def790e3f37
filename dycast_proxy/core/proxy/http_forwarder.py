# core/proxy/http_forwarder.py
import asyncio
import logging
from enum import Enum
from typing import Optional

from aiohttp import web, ClientSession, ClientError
from yarl import URL

from dycast_proxy.core.proxy.cors import apply_cors
from dycast_proxy.core.proxy.header_rewriter import build_forward_headers, filter_response_headers

logger = logging.getLogger(__name__)


class Transport(Enum):
    """Upstream transport, picked once per forwarded request from the target scheme"""
    HTTP = 'http'
    HTTPS = 'https'

    @classmethod
    def for_url(cls, url: URL) -> 'Transport':
        try:
            return cls(url.scheme)
        except ValueError:
            raise ValueError(f"Unsupported upstream scheme: {url.scheme!r}") from None

    @property
    def ssl(self) -> bool:
        # aiohttp: True = verify certificates; plain HTTP never reaches TLS
        return self is Transport.HTTPS


class HttpForwarder:
    def __init__(self, session: ClientSession, cors: bool = True, stats: Optional[dict] = None):
        """
        Args:
            session: shared upstream session (no cookie jar, no auto-decompression)
            cors: attach CORS headers to every response
            stats: counters dict shared with the owning proxy
        """
        self.session = session
        self.cors = cors
        self.stats = stats if stats is not None else {}

    @staticmethod
    def build_target_url(target_base: str, residual: str) -> URL:
        """
        target_base + residual path/query, kept exactly as received.

        Raises:
            ValueError: the residual changes the scheme, host or port of target_base
        """
        url = URL(target_base + residual, encoded=True)
        if url.origin() != URL(target_base).origin():
            raise ValueError(f"Residual path {residual!r} escapes upstream {target_base}")
        return url

    async def forward(self, request: web.Request, target_base: str, residual: str) -> web.StreamResponse:
        """
        Relays request to target_base + residual and streams the answer back.

        The request body goes upstream as it arrives and the response body is
        written to the client chunk by chunk. Connection failures before the
        response starts become a 500 JSON error.
        """
        response = None
        target_url = None

        try:
            target_url = self.build_target_url(target_base, residual)
            transport = Transport.for_url(target_url)
            headers = build_forward_headers(request.headers, target_url)

            logger.debug(f"Proxying HTTP request: {request.method} {target_url} ({transport.name})")

            async with self.session.request(
                method=request.method,
                url=target_url,
                headers=headers,
                data=request.content if request.body_exists else None,
                allow_redirects=False,
                ssl=transport.ssl,
            ) as upstream_response:

                response_headers = filter_response_headers(upstream_response.headers)
                apply_cors(response_headers, self.cors)

                response = web.StreamResponse(
                    status=upstream_response.status,
                    reason=upstream_response.reason,
                    headers=response_headers,
                )
                await response.prepare(request)

                async for chunk in upstream_response.content.iter_any():
                    await response.write(chunk)

                await response.write_eof()
                logger.debug(f"Proxy response: {upstream_response.status} {target_url}")
                return response

        except (ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
            self.stats['http_errors'] = self.stats.get('http_errors', 0) + 1
            if response is not None and response.prepared:
                # Status already sent, drop the connection so the client sees a truncated body
                logger.warning(f"⚠️ Upstream stream interrupted for {target_url}: {e!r}")
                if request.transport is not None:
                    request.transport.close()
                return response

            logger.error(f"❌ Proxy request error for {target_url or target_base + residual}: {e!r}")
            return self.error_response(e)

    def error_response(self, error: BaseException) -> web.Response:
        headers = apply_cors({}, self.cors)
        return web.json_response(
            {'error': 'Proxy error', 'message': str(error) or error.__class__.__name__},
            status=500,
            headers=headers,
        )
