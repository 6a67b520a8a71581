"""Tests for ProxyCoordinator against a local origin server."""

import asyncio
import socket

import aiohttp
import pytest
from aiohttp import web
from conftest import FakeSupervisor, wait_until

from devloop.proxy import REFRESH_JS_PATH, REFRESH_PROTOCOL, REFRESH_WS_PATH, ProxyCoordinator
from devloop_core.coordinator import BuildStateCoordinator
from devloop_core.errors import CommandFailedError
from devloop_core.models import ProxyConfig


def free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def hello(request):
    return web.Response(text=f"hello {request.query_string}", headers={"X-Origin": "yes"})


async def echo(request):
    body = await request.read()
    return web.Response(body=body, status=201)


async def headers(request):
    return web.json_response({"forwarded_for": request.headers.get("X-Forwarded-For", "")})


async def missing(request):
    return web.Response(status=404, text="nope")


async def start_origin(port: int = 0) -> tuple[web.AppRunner, int]:
    app = web.Application()
    app.router.add_get("/hello", hello)
    app.router.add_post("/echo", echo)
    app.router.add_get("/headers", headers)
    app.router.add_get("/missing", missing)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", port)
    await site.start()
    return runner, runner.addresses[0][1]


async def fetch(client, url):
    async with client.get(url) as response:
        return response.status, await response.text()


async def start_proxy(origin_port: int, coordinator: BuildStateCoordinator) -> ProxyCoordinator:
    proxy = ProxyCoordinator(
        ProxyConfig(listen="127.0.0.1:0", target=f"http://127.0.0.1:{origin_port}"),
        coordinator,
    )
    await proxy.start()
    return proxy


class TestProxyForwarding:
    @pytest.mark.asyncio
    async def test_get_forwarded_with_headers_and_query(self):
        origin, origin_port = await start_origin()
        proxy = await start_proxy(origin_port, BuildStateCoordinator(flush_delay=0))
        try:
            async with aiohttp.ClientSession() as client:
                async with client.get(f"http://127.0.0.1:{proxy.port}/hello?x=1") as response:
                    assert response.status == 200
                    assert response.headers["X-Origin"] == "yes"
                    assert await response.text() == "hello x=1"
        finally:
            await proxy.stop()
            await origin.cleanup()

    @pytest.mark.asyncio
    async def test_post_body_and_status(self):
        origin, origin_port = await start_origin()
        proxy = await start_proxy(origin_port, BuildStateCoordinator(flush_delay=0))
        try:
            async with aiohttp.ClientSession() as client:
                async with client.post(f"http://127.0.0.1:{proxy.port}/echo", data=b"payload") as response:
                    assert response.status == 201
                    assert await response.read() == b"payload"
                async with client.get(f"http://127.0.0.1:{proxy.port}/missing") as response:
                    assert response.status == 404
        finally:
            await proxy.stop()
            await origin.cleanup()

    @pytest.mark.asyncio
    async def test_forwarded_for_header(self):
        origin, origin_port = await start_origin()
        proxy = await start_proxy(origin_port, BuildStateCoordinator(flush_delay=0))
        try:
            async with aiohttp.ClientSession() as client:
                url = f"http://127.0.0.1:{proxy.port}/headers"
                async with client.get(url, headers={"X-Forwarded-For": "10.0.0.1"}) as response:
                    data = await response.json()
            assert data["forwarded_for"] == "10.0.0.1, 127.0.0.1"
        finally:
            await proxy.stop()
            await origin.cleanup()

    @pytest.mark.asyncio
    async def test_refresh_script_served_locally(self):
        proxy = await start_proxy(free_port(), BuildStateCoordinator(flush_delay=0))
        try:
            async with aiohttp.ClientSession() as client:
                async with client.get(f"http://127.0.0.1:{proxy.port}{REFRESH_JS_PATH}") as response:
                    assert response.status == 200
                    assert response.content_type == "text/javascript"
                    script = await response.text()
            assert REFRESH_WS_PATH in script
            assert REFRESH_PROTOCOL in script
        finally:
            await proxy.stop()


class TestProxyGating:
    @pytest.mark.asyncio
    async def test_request_held_while_compiling(self):
        """Requests wait until the build finishes."""
        coordinator = BuildStateCoordinator(flush_delay=0)
        origin, origin_port = await start_origin()
        proxy = await start_proxy(origin_port, coordinator)
        build = FakeSupervisor("build")
        try:
            done = await coordinator.start_compile("build", build)
            async with aiohttp.ClientSession() as client:
                request = asyncio.create_task(fetch(client, f"http://127.0.0.1:{proxy.port}/hello"))
                await asyncio.sleep(0.2)
                assert not request.done()

                build.finish(None)
                await done
                assert await asyncio.wait_for(request, 5) == (200, "hello ")
        finally:
            await proxy.stop()
            await origin.cleanup()

    @pytest.mark.asyncio
    async def test_request_held_while_build_broken(self):
        """A failed build keeps requests waiting until a build succeeds."""
        coordinator = BuildStateCoordinator(flush_delay=0)
        origin, origin_port = await start_origin()
        proxy = await start_proxy(origin_port, coordinator)
        broken, fixed = FakeSupervisor("build"), FakeSupervisor("build")
        try:
            done = await coordinator.start_compile("build", broken)
            broken.finish(CommandFailedError("go build", 1))
            await done

            async with aiohttp.ClientSession() as client:
                request = asyncio.create_task(fetch(client, f"http://127.0.0.1:{proxy.port}/hello"))
                await asyncio.sleep(0.2)
                assert not request.done()

                done = await coordinator.start_compile("build", fixed)
                fixed.finish(None)
                await done
                assert await asyncio.wait_for(request, 5) == (200, "hello ")
        finally:
            await proxy.stop()
            await origin.cleanup()

    @pytest.mark.asyncio
    async def test_waits_for_origin_to_accept(self):
        """Requests are held until the origin starts listening."""
        origin_port = free_port()
        proxy = await start_proxy(origin_port, BuildStateCoordinator(flush_delay=0))
        origin = None
        try:
            async with aiohttp.ClientSession() as client:
                request = asyncio.create_task(fetch(client, f"http://127.0.0.1:{proxy.port}/hello"))
                await asyncio.sleep(0.2)
                assert not request.done()

                origin, _ = await start_origin(origin_port)
                assert await asyncio.wait_for(request, 5) == (200, "hello ")
        finally:
            await proxy.stop()
            if origin is not None:
                await origin.cleanup()


class TestRefreshSocket:
    @pytest.mark.asyncio
    async def test_marker_then_close_on_rebuild(self):
        coordinator = BuildStateCoordinator(flush_delay=0)
        proxy = await start_proxy(free_port(), coordinator)
        build = FakeSupervisor("build")
        try:
            async with aiohttp.ClientSession() as client:
                url = f"http://127.0.0.1:{proxy.port}{REFRESH_WS_PATH}"
                async with client.ws_connect(url, protocols=(REFRESH_PROTOCOL,)) as ws:
                    assert ws.protocol == REFRESH_PROTOCOL

                    await coordinator.start_compile("build", build)

                    message = await asyncio.wait_for(ws.receive(), 5)
                    assert message.type == aiohttp.WSMsgType.TEXT
                    assert message.data == "2"
                    message = await asyncio.wait_for(ws.receive(), 5)
                    assert message.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED)
            build.finish(None)
        finally:
            await proxy.stop()

    @pytest.mark.asyncio
    async def test_socket_stays_open_while_idle(self):
        proxy = await start_proxy(free_port(), BuildStateCoordinator(flush_delay=0))
        try:
            async with aiohttp.ClientSession() as client:
                url = f"http://127.0.0.1:{proxy.port}{REFRESH_WS_PATH}"
                async with client.ws_connect(url, protocols=(REFRESH_PROTOCOL,)) as ws:
                    with pytest.raises(asyncio.TimeoutError):
                        await asyncio.wait_for(ws.receive(), 0.2)
        finally:
            await proxy.stop()

    @pytest.mark.asyncio
    async def test_client_hangup_releases_socket(self):
        """A page closed while builds are idle does not keep its socket until the next build."""
        proxy = await start_proxy(free_port(), BuildStateCoordinator(flush_delay=0))
        try:
            async with aiohttp.ClientSession() as client:
                url = f"http://127.0.0.1:{proxy.port}{REFRESH_WS_PATH}"
                async with client.ws_connect(url, protocols=(REFRESH_PROTOCOL,)):
                    await wait_until(lambda: len(proxy.websockets) == 1)

            await wait_until(lambda: not proxy.websockets)
        finally:
            await proxy.stop()
