import json
import uuid
from datetime import timedelta

import anyio
import httpx
import pytest
from sqlalchemy import func, select

from glasswallet.domain.errors import ValidationError
from glasswallet.domain.leads.service import create_lead
from glasswallet.domain.outbox.db_models import OutboxEvent
from glasswallet.domain.outbox.service import (
    OutboxAdapters,
    enqueue_outbox_event,
    enqueue_webhook,
    process_outbox,
    replay_outbox_event,
)
from glasswallet.domain.pixels.adapters import PushOutcome, build_pixel_adapters
from glasswallet.domain.pixels.service import create_connection
from glasswallet.domain.tagging.service import upsert_tag
from glasswallet.jobs.run import run_once
from glasswallet.main import app
from glasswallet.settings import settings
from glasswallet.shared.timeutils import as_utc, utcnow


def test_outbox_enqueue_idempotent(async_session_maker, user_id):
    async def _run():
        dedupe_key = "idempotent:test"
        async with async_session_maker() as session:
            first = await enqueue_outbox_event(
                session,
                user_id=user_id,
                kind="webhook",
                payload={"url": "https://example.com", "payload": {}},
                dedupe_key=dedupe_key,
            )
            await session.commit()

        async with async_session_maker() as session:
            second = await enqueue_outbox_event(
                session,
                user_id=user_id,
                kind="webhook",
                payload={"url": "https://example.com", "payload": {"changed": True}},
                dedupe_key=dedupe_key,
            )
            await session.commit()
            count = await session.scalar(select(func.count()).where(OutboxEvent.dedupe_key == dedupe_key))
            return first.event_id, second.event_id, count

    first_id, second_id, count = anyio.run(_run)

    assert count == 1
    assert first_id == second_id


def test_dedupe_keys_are_scoped_per_user(async_session_maker, user_id, other_user_id):
    async def _run():
        async with async_session_maker() as session:
            for owner in (user_id, other_user_id):
                await enqueue_outbox_event(
                    session, user_id=owner, kind="webhook", payload={"url": "https://example.com"}, dedupe_key="shared"
                )
            await session.commit()
            return await session.scalar(select(func.count()).where(OutboxEvent.dedupe_key == "shared"))

    assert anyio.run(_run) == 2


def test_enqueue_webhook_rejects_non_http_urls(async_session_maker, user_id):
    async def _run():
        async with async_session_maker() as session:
            with pytest.raises(ValidationError):
                await enqueue_webhook(
                    session, user_id=user_id, url="ftp://example.com/drop", payload={}, dedupe_key="bad-url"
                )

    anyio.run(_run)


def test_outbox_processes_and_marks_sent(async_session_maker, user_id):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200)

    async def _run():
        async with async_session_maker() as session:
            event = await enqueue_webhook(
                session,
                user_id=user_id,
                url="https://example.com/hook",
                payload={"event": "lead.qualified", "leadId": "abc"},
                headers={"X-Batch-ID": "batch-1"},
                dedupe_key=f"webhook:{uuid.uuid4()}",
            )
            await session.commit()
            result = await process_outbox(session, OutboxAdapters(webhook_transport=httpx.MockTransport(handler)))
            await session.refresh(event)
            return result, event

    result, event = anyio.run(_run)

    assert result == {"sent": 1, "dead": 0, "pending": 1}
    assert event.status == "sent"
    assert event.attempts == 1
    assert event.last_error is None
    assert event.next_attempt_at is None
    request = seen[0]
    assert json.loads(request.content) == {"event": "lead.qualified", "leadId": "abc"}
    assert request.headers["X-Batch-ID"] == "batch-1"
    assert request.headers["User-Agent"] == settings.webhook_user_agent


def test_failed_delivery_backs_off_exponentially(async_session_maker, user_id):
    settings.outbox_max_attempts = 3
    settings.outbox_base_backoff_seconds = 30
    failing = OutboxAdapters(webhook_transport=httpx.MockTransport(lambda request: httpx.Response(503)))

    async def _run():
        async with async_session_maker() as session:
            event = await enqueue_webhook(
                session, user_id=user_id, url="https://example.com/down", payload={}, dedupe_key="backoff"
            )
            await session.commit()
            before = utcnow()
            await process_outbox(session, failing)
            await session.refresh(event)
            first_status, first_next = event.status, as_utc(event.next_attempt_at)
            second = await process_outbox(session, failing)
            return before, event, first_status, first_next, second

    before, event, first_status, first_next, second = anyio.run(_run)

    assert first_status == "retry"
    assert event.attempts == 1
    assert event.last_error == "status_503"
    assert before + timedelta(seconds=29) <= first_next <= before + timedelta(seconds=40)
    assert second["pending"] == 0


def test_outbox_dlq_and_replay(async_session_maker, user_id):
    settings.outbox_max_attempts = 1

    async def _run():
        failing = OutboxAdapters(webhook_transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        async with async_session_maker() as session:
            event = await enqueue_webhook(
                session,
                user_id=user_id,
                url="https://example.com/fail",
                payload={},
                dedupe_key=f"webhook:{uuid.uuid4()}",
            )
            await session.commit()
            result = await process_outbox(session, failing)
            await session.refresh(event)
            assert result["dead"] == 1
            assert event.status == "dead"
            assert event.last_error is not None

            await replay_outbox_event(session, event)
            assert event.status == "pending"
            assert event.attempts == 0

            healthy = OutboxAdapters(webhook_transport=httpx.MockTransport(lambda request: httpx.Response(200)))
            await process_outbox(session, healthy)
            await session.refresh(event)
            assert event.status == "sent"

    anyio.run(_run)


def test_pixel_sync_event_is_redelivered(async_session_maker, user_id):
    adapters = build_pixel_adapters(settings, mock_mode=True)

    async def _run():
        async with async_session_maker() as session:
            lead = await create_lead(
                session, user_id, first_name="Re", last_name="Try", email="retry@example.com", consent_given=True
            )
            await upsert_tag(session, user_id, lead.lead_id, "qualified", "Manual review", lead=lead)
            connection = await create_connection(
                session,
                user_id,
                platform_type="GOOGLE_ADS",
                connection_name="Google retry",
                customer_id="123-456-7890",
                access_token="g-token",
                connection_status="active",
            )
            event = await enqueue_outbox_event(
                session,
                user_id=user_id,
                kind="pixel_sync",
                payload={
                    "connectionId": str(connection.connection_id),
                    "leadIds": [str(lead.lead_id)],
                    "syncType": "qualified",
                },
                dedupe_key=f"pixel_sync:{connection.connection_id}:retry",
            )
            await session.commit()
            result = await process_outbox(session, OutboxAdapters(pixel_adapters=adapters))
            await session.refresh(event)
            await session.refresh(connection)
            return result, event, connection

    result, event, connection = anyio.run(_run)

    assert result["sent"] == 1
    assert event.status == "sent"
    assert connection.last_sync_at is not None


class AcceptFirstAdapter:
    platform = "META"

    async def push_leads(self, connection, leads, sync_type):
        return PushOutcome(
            synced_count=1,
            failed_count=len(leads) - 1,
            sync_id="sync_meta_first",
            errors=["rejected"],
            synced_lead_ids=[leads[0].lead_id],
        )


def test_partial_redelivery_keeps_only_unconfirmed_leads(async_session_maker, user_id):
    async def _run():
        async with async_session_maker() as session:
            first = await create_lead(
                session, user_id, first_name="One", last_name="Ok", email="one.ok@example.com", consent_given=True
            )
            second = await create_lead(
                session, user_id, first_name="Two", last_name="Late", email="two.late@example.com", consent_given=True
            )
            connection = await create_connection(
                session,
                user_id,
                platform_type="META",
                connection_name="Meta retry",
                pixel_id="px_9",
                access_token="m-token",
                connection_status="active",
            )
            event = await enqueue_outbox_event(
                session,
                user_id=user_id,
                kind="pixel_sync",
                payload={
                    "connectionId": str(connection.connection_id),
                    "leadIds": [str(first.lead_id), str(second.lead_id)],
                    "syncType": "qualified",
                },
                dedupe_key=f"pixel_sync:{connection.connection_id}:partial",
            )
            await session.commit()
            await process_outbox(session, OutboxAdapters(pixel_adapters={"META": AcceptFirstAdapter()}))
            await session.refresh(event)
            pending = await session.scalar(select(func.count()).select_from(OutboxEvent))
            return event, second, pending

    event, second, pending = anyio.run(_run)

    assert event.status == "retry"
    assert event.last_error == "rejected"
    assert event.payload_json["leadIds"] == [str(second.lead_id)]
    assert pending == 1


def test_pixel_sync_event_for_missing_connection_retries(async_session_maker, user_id):
    async def _run():
        async with async_session_maker() as session:
            event = await enqueue_outbox_event(
                session,
                user_id=user_id,
                kind="pixel_sync",
                payload={"connectionId": str(uuid.uuid4()), "leadIds": [str(uuid.uuid4())], "syncType": "qualified"},
                dedupe_key="pixel_sync:missing",
            )
            await session.commit()
            await process_outbox(session, OutboxAdapters(pixel_adapters=build_pixel_adapters(settings)))
            await session.refresh(event)
            return event

    event = anyio.run(_run)

    assert event.status == "retry"
    assert "not found" in event.last_error


def test_outbox_api_lists_and_replays_only_dead_events(
    client, auth_headers, other_auth_headers, async_session_maker, user_id
):
    async def _seed():
        async with async_session_maker() as session:
            dead = await enqueue_webhook(
                session, user_id=user_id, url="https://example.com/dead", payload={}, dedupe_key="api:dead"
            )
            pending = await enqueue_webhook(
                session, user_id=user_id, url="https://example.com/later", payload={}, dedupe_key="api:pending"
            )
            dead.status = "dead"
            dead.attempts = 1
            dead.last_error = "status_500"
            await session.commit()
            return dead.event_id, pending.event_id

    dead_id, pending_id = anyio.run(_seed)

    listed = client.get("/outbox/events", headers=auth_headers).json()["data"]
    assert listed["counts"] == {"pending": 1, "retry": 0, "sent": 0, "dead": 1}
    dead_only = client.get("/outbox/events", params={"status": "dead"}, headers=auth_headers).json()["data"]
    assert [event["eventId"] for event in dead_only["events"]] == [dead_id]
    assert client.get("/outbox/events", params={"status": "lost"}, headers=auth_headers).status_code == 400

    not_dead = client.post(f"/outbox/events/{pending_id}/replay", headers=auth_headers)
    assert not_dead.status_code == 409
    assert not_dead.json()["error"]["code"] == "OUTBOX_EVENT_NOT_DEAD"

    assert client.post(f"/outbox/events/{dead_id}/replay", headers=other_auth_headers).status_code == 404

    replayed = client.post(f"/outbox/events/{dead_id}/replay", headers=auth_headers)
    assert replayed.status_code == 200
    body = replayed.json()["data"]
    assert body["status"] == "pending"
    assert body["attempts"] == 0
    assert body["lastError"] is None


def test_jobs_run_once_delivers_pending_webhooks(async_session_maker, user_id):
    services = app.state.services
    services.webhook_transport = httpx.MockTransport(lambda request: httpx.Response(204))

    async def _run():
        async with async_session_maker() as session:
            await enqueue_webhook(
                session, user_id=user_id, url="https://example.com/job", payload={}, dedupe_key="job:1"
            )
            await session.commit()
        results = await run_once(services, async_session_maker)
        async with async_session_maker() as session:
            status = await session.scalar(select(OutboxEvent.status).where(OutboxEvent.dedupe_key == "job:1"))
        return results, status

    results, status = anyio.run(_run)

    assert results["outbox-delivery"]["sent"] == 1
    assert status == "sent"
