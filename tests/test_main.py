"""Tests for the application wiring."""

from httpx import ASGITransport, AsyncClient

from livestate.main import app, build_granian_kwargs


def test_routes_are_loaded():
    paths = app.openapi()["paths"]

    for path, method in (
        ("/health", "get"),
        ("/metrics", "get"),
        ("/webhook", "post"),
        ("/streams", "get"),
        ("/streams", "post"),
        ("/streams/{stream_id}", "delete"),
        ("/streams/{stream_id}/join", "post"),
        ("/streams/{stream_id}/state", "get"),
        ("/streams/{stream_id}/updates", "get"),
    ):
        assert method in paths.get(path, {}), f"{method.upper()} {path} not loaded"


async def test_health_is_served():
    transport = ASGITransport(app=app)  # type: ignore[arg-type]
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        response = await ac.get("/health")

    assert response.status_code == 200
    assert response.json()["results"] == "OK"


def test_granian_kwargs():
    kwargs = build_granian_kwargs()

    assert kwargs["interface"] == "asgi"
    assert kwargs["reload"] is True
