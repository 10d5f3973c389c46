"""
Tests for the HTTP + WebSocket UI binding, using aiohttp's test client
against a real engine with a fake transport.
"""

import asyncio

import pytest
from aiohttp.test_utils import TestClient, TestServer

from lib.playback import PlaybackState, Snapshot
from lib.sync_engine import SyncEngine
from lib.ui_server import UiServer


@pytest.fixture
async def engine(transport, mock_store):
    engine = SyncEngine(transport, mock_store)
    await engine.start()
    engine.on_local_duration_changed(200)
    engine.on_local_position_changed(50)
    engine.on_local_state_changed(PlaybackState.PAUSED)
    yield engine
    await engine.close()


@pytest.fixture
async def client(engine):
    ui = UiServer(engine, port=0)
    async with TestClient(TestServer(ui.create_app())) as client:
        yield client


@pytest.mark.anyio
async def test_view(client):
    resp = await client.get("/player/view")
    assert resp.status == 200
    assert await resp.json() == {
        "position_text": "00:50",
        "duration_text": "03:20",
        "slider_value": 0.25,
        "is_playing": False,
    }
    assert resp.headers["Access-Control-Allow-Origin"] == "*"


@pytest.mark.anyio
async def test_status(client):
    resp = await client.get("/player/status")
    data = await resp.json()
    assert data["engine"]["state"] == "paused"
    assert data["transport"]["transport"] == "fake"
    assert data["ws_clients"] == 0


@pytest.mark.anyio
async def test_toggle_goes_through_engine(client, engine, transport, mock_store):
    resp = await client.post("/player/toggle")
    assert resp.status == 200
    await engine.flush()

    assert transport.calls == [("play",)]
    mock_store.publish.assert_awaited_once_with(Snapshot(PlaybackState.PLAYING, 0.25))


@pytest.mark.anyio
async def test_slider(client, engine, transport):
    resp = await client.post("/player/slider", json={"value": 0.5})
    assert resp.status == 200
    await engine.flush()
    assert transport.calls == [("seek", 100.0)]


@pytest.mark.anyio
@pytest.mark.parametrize("body", [{"value": "half"}, {"value": True}, {}, [0.5]])
async def test_slider_rejects_bad_values(client, engine, transport, body):
    resp = await client.post("/player/slider", json=body)
    assert resp.status == 400
    assert (await resp.json())["status"] == "error"
    await engine.flush()
    assert transport.calls == []


@pytest.mark.anyio
async def test_skip_defaults_to_configured_interval(client, engine, transport):
    resp = await client.post("/player/skip", json={"direction": "forward"})
    assert resp.status == 200
    await engine.flush()
    assert transport.calls == [("seek", 65.0)]


@pytest.mark.anyio
async def test_skip_backward_with_seconds(client, engine, transport):
    await client.post("/player/skip", json={"direction": "backward", "seconds": 30})
    await engine.flush()
    assert transport.calls == [("seek", 20.0)]


@pytest.mark.anyio
@pytest.mark.parametrize("body", [{"direction": "sideways"}, {}, {"direction": "forward", "seconds": "ten"}])
async def test_skip_rejects_bad_requests(client, body):
    resp = await client.post("/player/skip", json=body)
    assert resp.status == 400


@pytest.mark.anyio
async def test_options_preflight(client):
    resp = await client.options("/player/slider")
    assert resp.status == 200
    assert "POST" in resp.headers["Access-Control-Allow-Methods"]


@pytest.mark.anyio
async def test_websocket_pushes_view_updates(client, engine):
    ws = await client.ws_connect("/ws")

    hello = await ws.receive_json(timeout=2)
    assert hello["type"] == "playback_update"
    assert hello["reason"] == "client_connect"
    assert hello["data"]["position_text"] == "00:50"

    await client.post("/player/slider", json={"value": 0.75})
    await engine.flush()

    update = await ws.receive_json(timeout=2)
    assert update["reason"] == "update"
    assert update["data"]["slider_value"] == 0.75
    assert update["data"]["position_text"] == "02:30"
    await ws.close()


@pytest.mark.anyio
async def test_cleanup_cancels_pending_broadcast(engine):
    ui = UiServer(engine, port=0)
    stuck = asyncio.Event()

    async def slow_broadcast(data, reason="update"):
        await stuck.wait()

    ui.broadcast_view = slow_broadcast
    async with TestClient(TestServer(ui.create_app())) as client:
        ws = await client.ws_connect("/ws")
        await ws.receive_json(timeout=2)
        engine.on_local_position_changed(60)
        pending = ui._pending_broadcast
        assert pending is not None
        await ws.close()

    assert pending.cancelled()
    assert ui._pending_broadcast is None
    assert len(engine._view_listeners) == 0
