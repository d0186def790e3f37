"""
DyCast proxy: local reverse proxy that lets a browser live-stream viewer
reach the Douyin live HTTP API and WebSocket push endpoint.
"""

__version__ = '1.0.0'
