# core/proxy/errors.py
"""Structured error bodies returned by the proxy surface"""

from aiohttp import web


class ErrorType:
    NO_KEYS = 'no_keys_error'
    NO_AVAILABLE_KEYS = 'no_available_keys'
    UPSTREAM = 'upstream_error'
    PROXY = 'proxy_error'


def error_response(status: int, message: str, error_type: str, **extra) -> web.Response:
    """
    Builds ``{"error": {"message", "type", ...}}`` with the given status

    Args:
        status: HTTP status of the response
        message: Human readable description
        error_type: One of ErrorType
        **extra: Additional fields for the error object
    """
    error = {'message': message, 'type': error_type}
    error.update(extra)
    return web.json_response({'error': error}, status=status)
