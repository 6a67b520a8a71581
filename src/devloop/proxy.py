"""Reverse proxy with live reload, gated on build state.

Requests are held while anything is compiling and forwarded once builds are
idle and the origin accepts connections, so the browser never sees a
half-rebuilt or restarting backend. Pages that include the refresh script keep
a WebSocket open to the proxy; the proxy closes it as soon as a rebuild starts
and the script reloads the page.
"""

import asyncio
import logging

import aiohttp
from aiohttp import ClientSession, ClientTimeout, web
from yarl import URL

from devloop_core.coordinator import BuildState, BuildStateCoordinator
from devloop_core.models import ProxyConfig

logger = logging.getLogger(__name__)

REFRESH_JS_PATH = "/_devloop/refresh.js"
REFRESH_WS_PATH = "/_devloop/refresh.ws"
REFRESH_PROTOCOL = "reloadprotocol"
REFRESH_MARKER = "2"

REFRESH_SCRIPT = f"""\
(function () {{
    var scheme = location.protocol === "https:" ? "wss://" : "ws://";
    var socket = new WebSocket(scheme + location.host + "{REFRESH_WS_PATH}", "{REFRESH_PROTOCOL}");
    socket.onclose = function () {{ location.reload(); }};
}})();
"""

# Interval between connection attempts while the origin is starting.
CONNECT_RETRY_INTERVAL = 0.05

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)


class ProxyCoordinator:
    """Forward one listen address to one origin while builds are idle.

    The coordinator is only read: the proxy waits on build state, it never
    changes it.
    """

    def __init__(self, config: ProxyConfig, coordinator: BuildStateCoordinator):
        self.config = config
        self.coordinator = coordinator
        self.target = URL(config.target)
        self.app: web.Application | None = None
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None
        self.session: ClientSession | None = None
        self.websockets: set[web.WebSocketResponse] = set()

    @property
    def port(self) -> int | None:
        """Port actually bound (useful when listening on port 0)."""
        if not self.runner or not self.runner.addresses:
            return None
        return self.runner.addresses[0][1]

    async def start(self) -> None:
        """Bind the listen address and start serving."""
        host, port = self.config.listen_address()

        # decompression off: bodies are relayed byte for byte
        self.session = ClientSession(auto_decompress=False, timeout=ClientTimeout(total=None))

        self.app = web.Application()
        self._setup_routes()

        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, host, port)
        await self.site.start()

        logger.info(f"Proxy listening on {self.config.listen} -> {self.target}")

    async def stop(self) -> None:
        """Close signal sockets, the upstream session and the listener."""
        for ws in list(self.websockets):
            await ws.close()
        if self.session:
            await self.session.close()
        if self.runner:
            await self.runner.cleanup()
        logger.info(f"Proxy on {self.config.listen} stopped")

    def _setup_routes(self) -> None:
        self.app.router.add_get(REFRESH_JS_PATH, self._handle_refresh_js)
        self.app.router.add_get(REFRESH_WS_PATH, self._handle_refresh_ws)
        self.app.router.add_route("*", "/{tail:.*}", self._handle_proxy)

    async def _handle_refresh_js(self, request: web.Request) -> web.Response:
        return web.Response(text=REFRESH_SCRIPT, content_type="text/javascript")

    async def _handle_refresh_ws(self, request: web.Request) -> web.WebSocketResponse:
        """Hold the socket until a rebuild starts, send one marker, close.

        The client never sends anything; reading only serves to notice it
        hanging up so the socket does not wait for the next build.
        """
        ws = web.WebSocketResponse(protocols=(REFRESH_PROTOCOL,))
        await ws.prepare(request)
        self.websockets.add(ws)

        rebuild = asyncio.ensure_future(self.coordinator.wait_for_state(BuildState.COMPILING))
        hangup = asyncio.ensure_future(self._read_until_closed(ws))
        try:
            await asyncio.wait({rebuild, hangup}, return_when=asyncio.FIRST_COMPLETED)
            if rebuild.done():
                await ws.send_str(REFRESH_MARKER)
            else:
                logger.debug("Refresh socket closed by the client")
        except ConnectionResetError:
            logger.debug("Refresh socket went away before the rebuild")
        finally:
            rebuild.cancel()
            self.websockets.discard(ws)
            # close() also ends the pending read in the hangup task
            await ws.close()
            hangup.cancel()

        return ws

    @staticmethod
    async def _read_until_closed(ws: web.WebSocketResponse) -> None:
        async for _ in ws:
            pass

    async def _handle_proxy(self, request: web.Request) -> web.StreamResponse:
        # no timeout: a broken build holds requests until the next good one
        await self.coordinator.wait_for_state(BuildState.IDLE)
        await self.wait_for_origin()

        url = self.upstream_url(request)
        headers = self._forward_headers(request)
        data = request.content if request.body_exists else None

        try:
            async with self.session.request(
                request.method,
                url,
                headers=headers,
                data=data,
                allow_redirects=False,
            ) as upstream:
                response = web.StreamResponse(status=upstream.status, reason=upstream.reason)
                for name, value in upstream.headers.items():
                    if name.lower() not in HOP_BY_HOP_HEADERS:
                        response.headers.add(name, value)
                await response.prepare(request)
                async for chunk in upstream.content.iter_any():
                    await response.write(chunk)
                await response.write_eof()
                return response
        except aiohttp.ClientError as e:
            logger.warning(f"Proxy error for {request.method} {request.rel_url}: {e}")
            return web.Response(status=502, text=f"Bad gateway: {e}\n")

    async def wait_for_origin(self) -> None:
        """Poll the origin with bare TCP connects until one succeeds."""
        host = self.target.host
        port = self.target.port
        while True:
            try:
                _, writer = await asyncio.open_connection(host, port)
            except OSError:
                await asyncio.sleep(CONNECT_RETRY_INTERVAL)
                continue
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug(f"Closing origin readiness connection failed: {e}")
            return

    def upstream_url(self, request: web.Request) -> URL:
        """Origin URL for a request: target prefix + request path and query."""
        prefix = self.target.raw_path.rstrip("/")
        return URL(f"{self.target.origin()}{prefix}{request.rel_url.raw_path_qs}", encoded=True)

    def _forward_headers(self, request: web.Request) -> list[tuple[str, str]]:
        headers = [(name, value) for name, value in request.headers.items() if name.lower() not in HOP_BY_HOP_HEADERS]
        forwarded_for = request.headers.get("X-Forwarded-For")
        if request.remote:
            forwarded_for = f"{forwarded_for}, {request.remote}" if forwarded_for else request.remote
        if forwarded_for:
            headers = [(name, value) for name, value in headers if name.lower() != "x-forwarded-for"]
            headers.append(("X-Forwarded-For", forwarded_for))
        return headers
