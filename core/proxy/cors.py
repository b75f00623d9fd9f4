# core/proxy/cors.py
"""CORS handling: any origin, preflight answered locally"""

from aiohttp import web

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, POST, PUT, DELETE, OPTIONS',
    'Access-Control-Allow-Headers': 'Content-Type, Authorization',
}


@web.middleware
async def cors_middleware(request, handler):
    """Answers OPTIONS preflight with an empty 200"""
    if request.method == 'OPTIONS':
        return web.Response(status=200)
    return await handler(request)


async def add_cors_headers(request, response):
    """on_response_prepare hook; also covers streamed responses"""
    for key, value in CORS_HEADERS.items():
        response.headers[key] = value


def setup_cors(app: web.Application):
    app.middlewares.append(cors_middleware)
    app.on_response_prepare.append(add_cors_headers)
