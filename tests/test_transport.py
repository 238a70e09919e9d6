import pytest
from aiohttp import web
from aiohttp import test_utils

from send_scheduler.persistence import Persistence
from send_scheduler.transport import HttpTransport, InstanceRegistry


def make_gateway(received, status=200, text="accepted"):
    async def send(request):
        received.append(
            {
                "instance": request.match_info["instance"],
                "auth": request.headers.get("Authorization"),
                "body": await request.json(),
            }
        )
        return web.Response(status=status, text=text)

    app = web.Application()
    app.router.add_post("/instances/{instance}/send", send)
    return app


@pytest.mark.asyncio
async def test_deliver_posts_to_instance_endpoint():
    received = []
    async with test_utils.TestServer(make_gateway(received)) as server:
        transport = HttpTransport(str(server.make_url("/")), gateway_token="tok")
        ok, error = await transport.deliver("rcp-1", "inst-1", {"text": "hi"})

    assert (ok, error) == (True, None)
    assert received == [
        {"instance": "inst-1", "auth": "Bearer tok", "body": {"recipient": "rcp-1", "payload": {"text": "hi"}}}
    ]


@pytest.mark.asyncio
async def test_deliver_reports_http_errors():
    received = []
    async with test_utils.TestServer(make_gateway(received, status=503, text="instance offline")) as server:
        transport = HttpTransport(str(server.make_url("/")))
        ok, error = await transport.deliver("rcp-1", "inst-1", None)

    assert ok is False
    assert error == "HTTP 503: instance offline"
    assert received[0]["auth"] is None
    assert received[0]["body"]["payload"] == {}


@pytest.mark.asyncio
async def test_deliver_reports_connection_errors():
    transport = HttpTransport("http://127.0.0.1:9")
    ok, error = await transport.deliver("rcp-1", "inst-1", {})
    assert ok is False
    assert error.startswith("Client")


@pytest.mark.asyncio
async def test_deliver_without_gateway():
    ok, error = await HttpTransport().deliver("rcp-1", "inst-1", {})
    assert (ok, error) == (False, "Gateway URL is not configured")


@pytest.mark.asyncio
async def test_deliver_callable_override():
    calls = []

    async def fake(recipient_ref, instance_ref, payload):
        calls.append((recipient_ref, instance_ref, payload))
        return False, "queue full"

    transport = HttpTransport("http://unused", deliver_callable=fake)
    assert await transport.deliver("r", "i", {"a": 1}) == (False, "queue full")
    assert calls == [("r", "i", {"a": 1})]


@pytest.mark.asyncio
async def test_registry_requires_connected_instance(tmp_path):
    persistence = Persistence(str(tmp_path / "registry.db"))
    await persistence.init_db()
    await persistence.add_instance({"id": "up", "status": "CONNECTED"})
    await persistence.add_instance({"id": "down", "status": "qr_required"})
    registry = InstanceRegistry(persistence)

    assert await registry.is_available("up") is True
    assert await registry.is_available("down") is False
    assert await registry.is_available("ghost") is False
