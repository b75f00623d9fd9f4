# core/proxy/__init__.py
"""
HTTP plumbing shared by the proxy and control surfaces.
"""

from core.proxy.cors import cors_middleware, add_cors_headers, setup_cors
from core.proxy.errors import error_response, ErrorType

__all__ = ['cors_middleware', 'add_cors_headers', 'setup_cors', 'error_response', 'ErrorType']
