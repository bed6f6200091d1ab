import json

import pytest
from aiohttp.test_utils import make_mocked_request

from bots.smolbot.health import HealthServer


@pytest.mark.asyncio
async def test_health_reports_status_and_live_stats():
    server = HealthServer(port=0, status=lambda: {"queues": {"channels": 2}, "models": {"text": "text-a"}})

    response = await server.handle_health(make_mocked_request("GET", "/health"))

    body = json.loads(response.body)
    assert response.status == 200
    assert body["status"] == "ok"
    assert body["uptime"] >= 0
    assert body["queues"] == {"channels": 2}
    assert body["models"] == {"text": "text-a"}


@pytest.mark.asyncio
async def test_health_degraded_when_status_callback_fails():
    def broken():
        raise RuntimeError("stats unavailable")

    server = HealthServer(port=0, status=broken)
    response = await server.handle_health(make_mocked_request("GET", "/health"))

    assert json.loads(response.body)["status"] == "degraded"


def test_routes_registered():
    server = HealthServer(port=0)
    paths = {resource.canonical for resource in server.app.router.resources()}
    assert {"/health", "/"} <= paths
