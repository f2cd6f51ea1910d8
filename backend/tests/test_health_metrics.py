import anyio

from glasswallet.domain.outbox.service import enqueue_webhook
from glasswallet.infra.metrics import Metrics
from glasswallet.main import app
from glasswallet.settings import settings


def test_healthz_is_cheap(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert client.head("/healthz").status_code == 200


def test_readyz_reports_database_and_outbox_backlog(client, async_session_maker, user_id):
    async def _seed():
        async with async_session_maker() as session:
            event = await enqueue_webhook(
                session, user_id=user_id, url="https://example.com/dead", payload={}, dedupe_key="ready:dead"
            )
            event.status = "dead"
            await enqueue_webhook(
                session, user_id=user_id, url="https://example.com/next", payload={}, dedupe_key="ready:pending"
            )
            await session.commit()

    anyio.run(_seed)

    response = client.get("/readyz")

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    checks = {check["name"]: check for check in body["checks"]}
    assert checks["db"]["ok"] is True
    assert checks["outbox"]["ok"] is True
    assert (checks["outbox"]["pending"], checks["outbox"]["retry"], checks["outbox"]["dead"]) == (1, 0, 1)


def test_metrics_exposes_request_counters(client, auth_headers):
    client.get("/leads", headers=auth_headers)

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "http_requests_total" in response.text
    assert 'path="/leads"' in response.text


def test_metrics_disabled_returns_404(client):
    app.state.metrics = Metrics(enabled=False)

    response = client.get("/metrics")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


def test_metrics_requires_token_in_prod(client):
    app.state.app_settings = settings.model_copy(update={"app_env": "prod", "metrics_token": "scrape-token"})

    assert client.get("/metrics").status_code == 401
    assert client.get("/metrics", headers={"X-API-Key": "wrong"}).status_code == 401
    assert client.get("/metrics", headers={"X-API-Key": "scrape-token"}).status_code == 200
    assert client.get("/metrics", headers={"Authorization": "Bearer scrape-token"}).status_code == 200
    assert client.get("/metrics", params={"token": "scrape-token"}).status_code == 200


def test_metrics_without_configured_token_in_prod_is_misconfigured(client):
    app.state.app_settings = settings.model_copy(update={"app_env": "prod", "metrics_token": None})

    assert client.get("/metrics").status_code == 500


def test_disabled_metrics_render_placeholder():
    payload, content_type = Metrics(enabled=False).render()

    assert payload == b"metrics_disabled 1\n"
    assert content_type.startswith("text/plain")
