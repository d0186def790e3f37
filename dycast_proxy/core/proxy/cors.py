# core/proxy/cors.py
from typing import MutableMapping

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, POST, PUT, DELETE, OPTIONS',
    'Access-Control-Allow-Headers': 'Content-Type, Authorization, User-Agent, Referer',
    'Access-Control-Allow-Credentials': 'true',
}


def apply_cors(headers: MutableMapping[str, str], enabled: bool = True) -> MutableMapping[str, str]:
    """Sets the permissive CORS headers on headers (in place) when enabled"""
    if enabled:
        for key, value in CORS_HEADERS.items():
            headers[key] = value
    return headers
