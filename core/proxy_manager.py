# proxy_manager.py
import asyncio
import concurrent.futures
import json
import logging
import threading
import time
from typing import Optional

from aiohttp import web, ClientSession, TCPConnector, ClientTimeout, ClientError

from core.config_manager import ConfigManager
from core.key_cache import KeyCache
from core.key_pool import KeyPool, NoKeysError, mask_key
from core.management_api import ManagementApi
from core.proxy import ErrorType, error_response, setup_cors
from utils.port_utils import check_port_availability, get_process_using_port

logger = logging.getLogger(__name__)

# Credential-attributable failures: quarantine the key and retry with another
RETRYABLE_STATUSES = frozenset({401, 403, 429})

# Inbound headers that are never forwarded upstream
SKIP_REQUEST_HEADERS = frozenset({
    'host', 'content-length', 'connection', 'transfer-encoding', 'keep-alive', 'accept-encoding', 'authorization'
})

# Upstream headers that are never relayed back
SKIP_RESPONSE_HEADERS = frozenset({
    'content-length', 'content-encoding', 'transfer-encoding', 'connection', 'keep-alive'
})

SSE_HEADERS = {
    'Content-Type': 'text/event-stream',
    'Cache-Control': 'no-cache',
    'Connection': 'keep-alive',
}

MAX_REQUEST_BODY = 50 * 1024 * 1024

# How often an idle stream checks whether the caller is still connected
DISCONNECT_POLL_INTERVAL = 1.0


class KeyRotatingProxy:
    def __init__(self, pool: KeyPool, upstream_url: str, max_attempts: int = 3,
                 connect_timeout: float = 10, read_timeout: float = 300,
                 connection_limit: int = 100, max_concurrent_requests: int = 50):
        """
        Args:
            pool: Key pool shared with the control surface
            upstream_url: Upstream base URL; the inbound path is appended verbatim
            max_attempts: Upper bound of upstream attempts per request
            connect_timeout: Seconds to establish an upstream connection
            read_timeout: Max seconds between two reads from upstream
            connection_limit: Size of the upstream connection pool
            max_concurrent_requests: Concurrent upstream requests
        """
        self.pool = pool
        self.upstream_url = upstream_url.rstrip('/')
        self.max_attempts = max_attempts
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.connection_limit = connection_limit

        self.connector = None
        self.session = None

        self.connection_semaphore = asyncio.Semaphore(max_concurrent_requests)

        self.stats = {
            'total_requests': 0,
            'total_responses': 0,
            'active_connections': 0,
            'retries': 0,
            'errors': 0
        }

    async def initialize(self):
        """Creates the upstream connection pool"""
        if self.connector is None:
            self.connector = TCPConnector(
                limit=self.connection_limit,
                ttl_dns_cache=300,
                keepalive_timeout=60,
                enable_cleanup_closed=True
            )

        if self.session is None:
            # No total timeout: event streams may legitimately run for minutes
            timeout = ClientTimeout(
                total=None,
                sock_connect=self.connect_timeout,
                sock_read=self.read_timeout
            )
            self.session = ClientSession(connector=self.connector, timeout=timeout)

    async def cleanup(self):
        """Releases the upstream connection pool"""
        if self.session:
            await self.session.close()
            self.session = None
        if self.connector:
            await self.connector.close()
            self.connector = None

    async def on_startup(self, app):
        await self.initialize()

    async def on_cleanup(self, app):
        await self.cleanup()

    async def router(self, request):
        """Entry point for ANY /v1/*"""
        self.stats['total_requests'] += 1
        self.stats['active_connections'] += 1

        try:
            async with self.connection_semaphore:
                return await self._forward_with_retry(request)

        except Exception as e:
            self.stats['errors'] += 1
            logger.error(f"❌ Proxy error: {e}", exc_info=True)
            return error_response(500, f"Proxy error: {e}", ErrorType.PROXY)

        finally:
            self.stats['active_connections'] -= 1

    async def _forward_with_retry(self, request):
        if len(self.pool) == 0:
            return error_response(
                503,
                "No API keys configured. Push keys through the management API first.",
                ErrorType.NO_KEYS
            )

        await self.initialize()

        body = await request.read()
        wants_stream = self._wants_stream(request.path, body)
        upstream_url = f"{self.upstream_url}{request.path_qs}"
        max_attempts = min(self.max_attempts, len(self.pool))
        last_error = None

        for attempt in range(1, max_attempts + 1):
            try:
                api_key = self.pool.select()
            except NoKeysError:
                return error_response(503, "No API key available", ErrorType.NO_AVAILABLE_KEYS)

            if attempt > 1:
                self.stats['retries'] += 1

            logger.debug(
                f"🔑 {request.method} {request.path} → upstream\n"
                f"   Attempt: {attempt}/{max_attempts}\n"
                f"   Key: {mask_key(api_key)}"
            )

            try:
                upstream_response = await self.session.request(
                    method=request.method,
                    url=upstream_url,
                    headers=self._build_headers(request, api_key),
                    data=body or None,
                    allow_redirects=False
                )
            except (ClientError, asyncio.TimeoutError) as e:
                last_error = e
                logger.error(f"❌ Upstream request error (attempt {attempt}/{max_attempts}): {e}")
                continue

            try:
                if 200 <= upstream_response.status < 300:
                    self.pool.report_success(api_key)
                    self.stats['total_responses'] += 1

                    if wants_stream and not self._is_json(upstream_response):
                        return await self._pipe_stream(request, upstream_response)
                    return await self._buffered_response(upstream_response)

                content = await upstream_response.read()

                if upstream_response.status in RETRYABLE_STATUSES:
                    self.pool.report_failure(api_key)
                    if attempt < max_attempts:
                        logger.warning(
                            f"🔄 Upstream HTTP {upstream_response.status} for key {mask_key(api_key)}, "
                            f"retrying with another key"
                        )
                        continue

                self.stats['total_responses'] += 1
                return self._relay_error(upstream_response, content)

            except (ClientError, asyncio.TimeoutError) as e:
                last_error = e
                logger.error(f"❌ Upstream read error (attempt {attempt}/{max_attempts}): {e}")
                continue

            finally:
                upstream_response.release()

        self.stats['errors'] += 1
        if last_error is not None:
            return error_response(500, f"Proxy error: {last_error}", ErrorType.PROXY)
        return error_response(500, "All retry attempts failed", ErrorType.PROXY)

    @staticmethod
    def _wants_stream(path: str, body: bytes) -> bool:
        """True for a chat-completions call whose JSON body sets ``stream: true``"""
        if '/chat/completions' not in path or not body:
            return False
        try:
            payload = json.loads(body)
        except ValueError:
            return False
        return isinstance(payload, dict) and payload.get('stream') is True

    @staticmethod
    def _is_json(upstream_response) -> bool:
        content_type = upstream_response.content_type or ''
        return content_type == 'application/json' or content_type.endswith('+json')

    @staticmethod
    def _build_headers(request, api_key: str) -> dict:
        headers = {}
        for key, value in request.headers.items():
            if key.lower() not in SKIP_REQUEST_HEADERS:
                headers[key] = value

        headers['Authorization'] = f'Bearer {api_key}'

        if not any(key.lower() == 'content-type' for key in headers):
            headers['Content-Type'] = 'application/json'

        return headers

    @staticmethod
    def _response_headers(upstream_response, skip=SKIP_RESPONSE_HEADERS) -> dict:
        response_headers = {}
        for key, value in upstream_response.headers.items():
            if key.lower() not in skip:
                response_headers[key] = value
        return response_headers

    async def _buffered_response(self, upstream_response):
        """Re-emits a complete upstream response with the upstream status"""
        content = await upstream_response.read()

        if content and self._is_json(upstream_response):
            try:
                data = json.loads(content)
            except ValueError as e:
                self.stats['errors'] += 1
                logger.error(f"❌ Upstream returned malformed JSON: {e}")
                return error_response(500, f"Proxy error: invalid JSON from upstream: {e}", ErrorType.PROXY)

            headers = self._response_headers(
                upstream_response, skip=SKIP_RESPONSE_HEADERS | {'content-type'}
            )
            return web.json_response(data, status=upstream_response.status, headers=headers)

        return web.Response(
            body=content,
            status=upstream_response.status,
            headers=self._response_headers(upstream_response)
        )

    def _relay_error(self, upstream_response, content: bytes):
        """Relays a non-2xx upstream response verbatim"""
        status = upstream_response.status
        logger.warning(f"⚠️ Upstream HTTP {status} relayed to caller")

        if not content:
            return error_response(status, f"Upstream API error (HTTP {status})", ErrorType.UPSTREAM, status=status)

        return web.Response(
            body=content,
            status=status,
            headers=self._response_headers(upstream_response)
        )

    async def _pipe_stream(self, request, upstream_response):
        """
        Copies the upstream event stream to the caller chunk by chunk.

        Both sides apply backpressure: write() waits for the outbound buffer
        to drain, and the upstream reader pauses while its buffer is full.
        Once headers are sent nothing can be retried, so failures here only
        end the stream.
        """
        response = web.StreamResponse(status=upstream_response.status, headers=SSE_HEADERS)
        await response.prepare(request)

        try:
            while True:
                chunk = await self._next_chunk(request, upstream_response)
                if not chunk:
                    break
                await response.write(chunk)
            await response.write_eof()

        except ConnectionResetError:
            logger.info(f"Client closed the connection during stream: {request.path}")
            upstream_response.close()

        except (ClientError, asyncio.TimeoutError) as e:
            self.stats['errors'] += 1
            logger.error(f"❌ Upstream stream broke: {e}")
            upstream_response.close()

        except asyncio.CancelledError:
            upstream_response.close()
            raise

        return response

    @staticmethod
    async def _next_chunk(request, upstream_response) -> bytes:
        """
        Reads the next upstream chunk, or b'' at end of stream.

        While upstream is idle the caller's transport is checked every
        DISCONNECT_POLL_INTERVAL seconds.

        Raises:
            ConnectionResetError: the caller went away before data arrived
        """
        read = asyncio.ensure_future(upstream_response.content.readany())
        try:
            while True:
                done, _ = await asyncio.wait({read}, timeout=DISCONNECT_POLL_INTERVAL)
                if done:
                    return read.result()
                if request.transport is None or request.transport.is_closing():
                    raise ConnectionResetError("Client disconnected while upstream was idle")
        finally:
            if not read.done():
                read.cancel()

    def get_full_stats(self):
        """Router counters"""
        return {
            'requests': self.stats['total_requests'],
            'responses': self.stats['total_responses'],
            'active': self.stats['active_connections'],
            'retries': self.stats['retries'],
            'errors': self.stats['errors']
        }


class ProxyManager:
    def __init__(self, config: ConfigManager, pool: KeyPool, key_cache: Optional[KeyCache] = None):
        """
        Args:
            config: Loaded configuration
            pool: Key pool shared by the proxy router and the control surface
            key_cache: Persists key lists accepted by the control surface
        """
        self.config = config
        self.pool = pool
        self.key_cache = key_cache

        proxy_config = config.get_proxy_config()
        management_config = config.get_management_config()
        self.proxy_host = proxy_config.get('host', '127.0.0.1')
        self.proxy_port = proxy_config.get('port', 5100)
        self.management_host = management_config.get('host', '127.0.0.1')
        self.management_port = management_config.get('port', 5101)

        self.is_running = False
        self.proxy = None
        self.management_api = ManagementApi(pool, key_cache, status_provider=self._status_extras)
        self.runners = []
        self.loop = None
        self.thread = None
        self.app_name = "Key Aggregator Proxy"

        # Error tracking
        self.last_error_type = None  # 'port', 'startup'
        self.last_error_details = None

    def create_proxy_app(self) -> web.Application:
        """API surface: /health and ANY /v1/*"""
        proxy_config = self.config.get_proxy_config()
        self.proxy = KeyRotatingProxy(
            pool=self.pool,
            upstream_url=proxy_config.get('upstream_url', 'https://api.daidaibird.top'),
            max_attempts=proxy_config.get('max_attempts', 3),
            connect_timeout=proxy_config.get('connect_timeout', 10),
            read_timeout=proxy_config.get('read_timeout', 300),
            connection_limit=proxy_config.get('connection_limit', 100),
            max_concurrent_requests=proxy_config.get('max_concurrent_requests', 50)
        )

        app = web.Application(client_max_size=MAX_REQUEST_BODY)
        setup_cors(app)
        app.router.add_get('/health', self.management_api.handle_health)
        app.router.add_route('*', '/v1/{tail:.*}', self.proxy.router)
        app.on_startup.append(self.proxy.on_startup)
        app.on_cleanup.append(self.proxy.on_cleanup)
        return app

    def create_management_app(self) -> web.Application:
        """Control surface: /update-keys and /status"""
        app = web.Application()
        setup_cors(app)
        self.management_api.register_routes(app)
        return app

    def _check_ports(self) -> bool:
        for host, port in ((self.proxy_host, self.proxy_port), (self.management_host, self.management_port)):
            port_available, port_message = check_port_availability(port, host)
            if port_available:
                continue

            logger.error(f"❌ {port_message}")
            process_info = get_process_using_port(port)
            if process_info:
                logger.info(
                    f"📌 Process on port {port}:\n"
                    f"   PID: {process_info.get('pid')}\n"
                    f"   Name: {process_info.get('name')}\n"
                    f"   User: {process_info.get('username', 'N/A')}"
                )

            self.last_error_type = 'port'
            self.last_error_details = port_message
            return False
        return True

    def start(self) -> bool:
        """
        Starts both surfaces on a dedicated event loop thread

        Returns:
            bool: True if both sites are listening
        """
        if self.is_running:
            logger.warning("⚠️ Proxy already running")
            return False

        self.last_error_type = None
        self.last_error_details = None

        if not self._check_ports():
            return False

        self.thread = threading.Thread(target=self._run_server, name="proxy-loop", daemon=True)
        self.thread.start()

        # Wait up to 5 seconds for startup
        for _ in range(50):
            if self.is_running or self.last_error_type:
                break
            time.sleep(0.1)

        if not self.is_running:
            logger.error(f"❌ Proxy failed to start: {self.last_error_details or 'timeout'}")
            return False

        logger.info(f"✅ API proxy listening on http://{self.proxy_host}:{self.proxy_port}/v1")
        logger.info(f"✅ Management API listening on http://{self.management_host}:{self.management_port}")
        logger.info(f"🔑 Keys loaded: {len(self.pool)}")
        return True

    def _run_server(self):
        """Runs the servers on this thread's own event loop"""
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)

        try:
            self.loop.run_until_complete(self._start_server())
            if self.is_running:
                self.loop.run_forever()
        except Exception as e:
            logger.error(f"❌ Event loop error: {e}", exc_info=True)
            self.is_running = False
        finally:
            self.loop.close()

    async def _start_server(self):
        surfaces = (
            (self.create_proxy_app(), self.proxy_host, self.proxy_port),
            (self.create_management_app(), self.management_host, self.management_port),
        )

        try:
            for app, host, port in surfaces:
                runner = web.AppRunner(app, access_log=None)
                await runner.setup()
                self.runners.append(runner)

                site = web.TCPSite(runner, host=host, port=port)
                await site.start()

            self.is_running = True
            logger.info(f"📊 Upstream: {self.proxy.upstream_url}, connection limit={self.proxy.connection_limit}")

        except Exception as e:
            logger.error(f"❌ Server startup error: {e}")
            self.last_error_type = 'startup'
            self.last_error_details = str(e)
            await self._stop_server()

    def stop(self):
        """Stops both surfaces and the event loop thread"""
        if not self.is_running:
            logger.warning("⚠️ Proxy not running")
            return

        logger.info("🛑 Shutting down gracefully...")
        self.is_running = False

        if self.loop and self.loop.is_running():
            future = asyncio.run_coroutine_threadsafe(self._stop_server(), self.loop)
            try:
                future.result(timeout=10)
            except concurrent.futures.TimeoutError:
                logger.error("❌ Timed out stopping servers")

            self.loop.call_soon_threadsafe(self.loop.stop)

        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=5)

        if self.proxy:
            stats = self.proxy.get_full_stats()
            logger.info(
                f"📊 Session statistics:\n"
                f"   Total requests: {stats['requests']}\n"
                f"   Total responses: {stats['responses']}\n"
                f"   Retries: {stats['retries']}\n"
                f"   Errors: {stats['errors']}"
            )

        logger.info("✅ Proxy stopped")

    async def _stop_server(self):
        for runner in reversed(self.runners):
            try:
                await runner.cleanup()
            except Exception as e:
                logger.error(f"❌ Error stopping server: {e}")
        self.runners = []

    def _status_extras(self):
        return {
            'ports': {
                'proxy': self.proxy_port,
                'management': self.management_port
            },
            'proxy': self.proxy.get_full_stats() if self.proxy else None
        }

    def get_status(self):
        """Returns the proxy status"""
        status = {
            'running': self.is_running,
            'upstream': self.config.get('proxy.upstream_url'),
            'keys': self.pool.stats(),
        }
        status.update(self._status_extras())
        return status
