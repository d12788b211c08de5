"""HTTP surface tests that do not start the bot."""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.config import Settings
from app.main import register_routes, webhook_secret


def build_app() -> FastAPI:
    fastapi_app = FastAPI()
    register_routes(fastapi_app)
    return fastapi_app


def test_healthcheck() -> None:
    client = TestClient(build_app())

    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_webhook_rejects_unknown_secret() -> None:
    fastapi_app = build_app()
    fastapi_app.state.webhook_secret = "expected"
    client = TestClient(fastapi_app)

    response = client.post("/telegram/wrong", json={"update_id": 1})

    assert response.status_code == 404


def test_webhook_without_bot_is_unavailable() -> None:
    fastapi_app = build_app()
    fastapi_app.state.webhook_secret = "expected"
    client = TestClient(fastapi_app)

    response = client.post("/telegram/expected", json={"update_id": 1})

    assert response.status_code == 503


def test_webhook_secret_prefers_configuration() -> None:
    configured = Settings(_env_file=None, WEBHOOK_SECRET="s3cret")
    generated = Settings(_env_file=None)

    assert webhook_secret(configured) == "s3cret"
    first = webhook_secret(generated)
    assert first and first != webhook_secret(generated)
