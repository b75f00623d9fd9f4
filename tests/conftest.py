"""
Shared fixtures: a scriptable fake upstream API and the two proxy surfaces
wired against it.
"""

import inspect

import pytest
from aiohttp import web

from core.config_manager import ConfigManager
from core.key_cache import KeyCache
from core.key_pool import KeyPool
from core.proxy_manager import ProxyManager


class FakeUpstream:
    """Upstream API double that records requests and replays queued responders."""

    def __init__(self):
        self.requests = []
        self.responders = []
        self.default = lambda request: web.json_response({'ok': True})

    def queue(self, *responders):
        self.responders.extend(responders)

    @property
    def authorizations(self):
        return [r['headers'].get('Authorization') for r in self.requests]

    async def handle(self, request):
        self.requests.append({
            'method': request.method,
            'path': request.path_qs,
            'headers': request.headers.copy(),
            'body': await request.read(),
        })
        responder = self.responders.pop(0) if self.responders else self.default
        response = responder(request)
        if inspect.isawaitable(response):
            response = await response
        return response

    def make_app(self):
        app = web.Application()
        app.router.add_route('*', '/{tail:.*}', self.handle)
        return app


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
async def upstream_server(aiohttp_server, upstream):
    return await aiohttp_server(upstream.make_app())


@pytest.fixture
def config(tmp_path):
    return ConfigManager(config_path=tmp_path / 'config.json')


@pytest.fixture
def key_cache(tmp_path):
    return KeyCache(tmp_path / '.keys-cache.json')


@pytest.fixture
def pool():
    return KeyPool()


@pytest.fixture
async def proxy_manager(config, pool, key_cache, upstream_server):
    config.set('proxy.upstream_url', str(upstream_server.make_url('/')))
    return ProxyManager(config, pool, key_cache)


@pytest.fixture
async def proxy_client(aiohttp_client, proxy_manager):
    return await aiohttp_client(proxy_manager.create_proxy_app())


@pytest.fixture
async def management_client(aiohttp_client, proxy_manager):
    return await aiohttp_client(proxy_manager.create_management_app())
