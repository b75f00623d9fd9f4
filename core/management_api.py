# core/management_api.py
"""
Control surface: lets the UI / install tooling push keys and read pool health
"""

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from aiohttp import web

from core.key_cache import KeyCache
from core.key_pool import KeyPool

logger = logging.getLogger(__name__)


class ManagementApi:
    """Handlers for /update-keys, /status and /health"""

    def __init__(self, pool: KeyPool, key_cache: Optional[KeyCache] = None,
                 status_provider: Optional[Callable[[], Dict]] = None):
        """
        Args:
            pool: Key pool shared with the proxy router
            key_cache: Where accepted key lists are persisted (optional)
            status_provider: Returns extra fields for /status (ports, router stats)
        """
        self.pool = pool
        self.key_cache = key_cache
        self.status_provider = status_provider
        self.started_at = time.monotonic()

    async def handle_update_keys(self, request: web.Request) -> web.Response:
        """POST /update-keys {"keys": [...]}"""
        try:
            try:
                payload = await request.json()
            except ValueError:
                return self._bad_request("Request body is not valid JSON")

            keys = payload.get('keys') if isinstance(payload, dict) else None

            if not keys or not isinstance(keys, list):
                return self._bad_request("No API keys provided")

            if not all(isinstance(key, str) and key for key in keys):
                return self._bad_request("API keys must be non-empty strings")

            self.pool.replace(keys)
            if self.key_cache:
                self.key_cache.save(self.pool.values())

            logger.info(f"✅ Keys updated: {len(keys)} keys")

            return web.json_response({
                'success': True,
                'count': len(keys),
                'stats': self.pool.stats()
            })

        except Exception as e:
            logger.error(f"❌ Update keys error: {e}", exc_info=True)
            return web.json_response({'success': False, 'error': str(e)}, status=500)

    async def handle_status(self, request: web.Request) -> web.Response:
        """GET /status"""
        status = {
            'running': True,
            'stats': self.pool.stats(),
            'keys': self.pool.snapshot(),
        }
        if self.status_provider:
            status.update(self.status_provider())
        return web.json_response(status)

    async def handle_health(self, request: web.Request) -> web.Response:
        """GET /health, liveness probe for the proxy surface"""
        return web.json_response({
            'status': 'ok',
            'keys': self.pool.stats(),
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'uptime': round(time.monotonic() - self.started_at, 3)
        })

    @staticmethod
    def _bad_request(message: str) -> web.Response:
        logger.warning(f"⚠️ Rejected key update: {message}")
        return web.json_response({'success': False, 'error': message}, status=400)

    def register_routes(self, app: web.Application):
        """Adds the control routes to ``app``"""
        app.router.add_post('/update-keys', self.handle_update_keys)
        app.router.add_get('/status', self.handle_status)
