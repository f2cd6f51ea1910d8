import uuid

import anyio
from sqlalchemy import func, select

from glasswallet.domain.leads.service import create_lead
from glasswallet.domain.pixels.adapters import PushOutcome
from glasswallet.domain.tagging import service as tagging_service
from glasswallet.domain.tagging.db_models import LeadTag
from glasswallet.main import app


def _create_lead(client, headers, email="tag.me@example.com", **extra):
    payload = {"firstName": "Tag", "lastName": "Target", "email": email, "consentGiven": True, **extra}
    response = client.post("/leads", json=payload, headers=headers)
    assert response.status_code == 201
    return response.json()["data"]


def test_tag_upsert_creates_then_updates_single_row(client, auth_headers, async_session_maker):
    lead = _create_lead(client, auth_headers)

    created = client.post(
        f"/leads/{lead['leadId']}/tag",
        json={"tagType": "qualified", "tagReason": "Manual review"},
        headers=auth_headers,
    )
    assert created.status_code == 201
    assert created.json()["data"]["action"] == "created"

    updated = client.post(
        f"/leads/{lead['leadId']}/tag",
        json={"tagType": "qualified", "tagReason": "Second look"},
        headers=auth_headers,
    )
    assert updated.status_code == 200
    body = updated.json()["data"]
    assert body["action"] == "updated"
    assert body["tagId"] == created.json()["data"]["tagId"]
    assert body["tagReason"] == "Second look"

    async def _count() -> int:
        async with async_session_maker() as session:
            return await session.scalar(
                select(func.count()).select_from(LeadTag).where(LeadTag.lead_id == uuid.UUID(lead["leadId"]))
            )

    assert anyio.run(_count) == 1


def test_tag_rejects_unknown_type_and_foreign_lead(client, auth_headers, other_auth_headers):
    lead = _create_lead(client, auth_headers)

    invalid = client.post(
        f"/leads/{lead['leadId']}/tag",
        json={"tagType": "gold", "tagReason": "nope"},
        headers=auth_headers,
    )
    assert invalid.status_code == 400

    foreign = client.post(
        f"/leads/{lead['leadId']}/tag",
        json={"tagType": "whitelist", "tagReason": "not mine"},
        headers=other_auth_headers,
    )
    assert foreign.status_code == 404


def test_tag_with_rule_of_another_user_is_rejected(client, auth_headers, other_auth_headers):
    lead = _create_lead(client, auth_headers)
    rule = client.post(
        "/rules",
        json={"ruleName": "Foreign", "conditions": {}, "actions": {"addTag": "qualified"}},
        headers=other_auth_headers,
    ).json()["data"]

    response = client.post(
        f"/leads/{lead['leadId']}/tag",
        json={"tagType": "qualified", "tagReason": "borrowed rule", "ruleId": rule["ruleId"]},
        headers=auth_headers,
    )

    assert response.status_code == 400


def test_remove_tag(client, auth_headers):
    lead = _create_lead(client, auth_headers)
    client.post(
        f"/leads/{lead['leadId']}/tag",
        json={"tagType": "blacklist", "tagReason": "Fraud signal"},
        headers=auth_headers,
    )

    removed = client.delete(f"/leads/{lead['leadId']}/tag", params={"tagType": "blacklist"}, headers=auth_headers)
    assert removed.status_code == 200
    assert removed.json()["data"]["removed"] is True

    again = client.delete(f"/leads/{lead['leadId']}/tag", params={"tagType": "blacklist"}, headers=auth_headers)
    assert again.status_code == 404

    invalid = client.delete(f"/leads/{lead['leadId']}/tag", params={"tagType": "gold"}, headers=auth_headers)
    assert invalid.status_code == 400


def test_bulk_tag_reports_per_lead_actions(client, auth_headers):
    first = _create_lead(client, auth_headers, email="bulk1@example.com")
    second = _create_lead(client, auth_headers, email="bulk2@example.com")
    client.post(
        f"/leads/{first['leadId']}/tag",
        json={"tagType": "whitelist", "tagReason": "existing"},
        headers=auth_headers,
    )

    response = client.post(
        "/leads/bulk-tag",
        json={
            "leadIds": [first["leadId"], second["leadId"]],
            "tagType": "whitelist",
            "tagReason": "Campaign import",
        },
        headers=auth_headers,
    )

    assert response.status_code == 200
    body = response.json()["data"]
    assert body["successCount"] == 2
    assert body["failureCount"] == 0
    actions = {item["leadId"]: item["action"] for item in body["results"]}
    assert actions == {first["leadId"]: "updated", second["leadId"]: "created"}


def test_bulk_tag_rejects_more_than_one_hundred_leads(client, auth_headers):
    response = client.post(
        "/leads/bulk-tag",
        json={
            "leadIds": [str(uuid.uuid4()) for _ in range(101)],
            "tagType": "qualified",
            "tagReason": "Too many",
        },
        headers=auth_headers,
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_bulk_tag_rejects_unowned_leads_without_writing(client, auth_headers, other_auth_headers):
    mine = _create_lead(client, auth_headers, email="mine@example.com")
    theirs = _create_lead(client, other_auth_headers, email="theirs@example.com")

    response = client.post(
        "/leads/bulk-tag",
        json={"leadIds": [mine["leadId"], theirs["leadId"]], "tagType": "qualified", "tagReason": "mixed"},
        headers=auth_headers,
    )

    assert response.status_code == 400
    assert response.json()["error"]["details"]["missingLeadIds"] == [theirs["leadId"]]
    fetched = client.get(f"/leads/{mine['leadId']}", headers=auth_headers).json()["data"]
    assert fetched["tags"] == []


def test_tag_and_sync_without_connections_writes_tags_only(client, auth_headers):
    lead = _create_lead(client, auth_headers)

    response = client.post(
        f"/leads/{lead['leadId']}/tag-and-sync",
        json={"tags": ["qualified", "whitelist"], "reason": "Sales call"},
        headers=auth_headers,
    )

    assert response.status_code == 200
    body = response.json()["data"]
    assert [tag["tagType"] for tag in body["tags"]] == ["qualified", "whitelist"]
    assert body["pixelSync"]["attempted"] is False
    assert body["pixelSync"]["syncType"] == "whitelist"


def test_tag_and_sync_pushes_to_active_connections(client, auth_headers):
    lead = _create_lead(client, auth_headers, phone="555-100-2000")
    connection = client.post(
        "/pixels/connections",
        json={"platformType": "META", "connectionName": "Meta main", "pixelId": "px_1", "accessToken": "tok"},
        headers=auth_headers,
    ).json()["data"]
    tested = client.post(f"/pixels/connections/{connection['connectionId']}/test", headers=auth_headers)
    assert tested.json()["data"]["newStatus"] == "active"

    response = client.post(
        f"/leads/{lead['leadId']}/tag-and-sync",
        json={"tags": ["qualified"], "reason": "Qualified by phone"},
        headers=auth_headers,
    )

    body = response.json()["data"]
    assert body["pixelSync"]["attempted"] is True
    assert body["pixelSync"]["successfulPlatforms"] == 1
    assert body["pixelSync"]["results"][0]["syncedCount"] == 1

    fetched = client.get(f"/leads/{lead['leadId']}", headers=auth_headers).json()["data"]
    assert fetched["tags"][0]["syncedToPixels"] is True
    assert fetched["tags"][0]["pixelSyncAt"]


def test_auto_tag_endpoint_uses_rules_and_ai_signals(client, auth_headers):
    lead = _create_lead(client, auth_headers)
    client.post(
        "/rules",
        json={
            "ruleName": "AI high score",
            "conditions": {"ai.overallScore": {"gte": 80}},
            "actions": {"addTag": "qualified"},
        },
        headers=auth_headers,
    )

    untagged = client.post(f"/leads/{lead['leadId']}/auto-tag", json={}, headers=auth_headers)
    assert untagged.status_code == 200
    assert untagged.json()["data"]["untagged"] is True

    tagged = client.post(
        f"/leads/{lead['leadId']}/auto-tag",
        json={"signals": {"overallScore": 91}},
        headers=auth_headers,
    )
    body = tagged.json()["data"]
    assert body["appliedTags"] == ["qualified"]
    assert body["matchedRules"] == ["AI high score"]
    assert body["tags"][0]["tagType"] == "qualified"


def test_apply_auto_tagging_service_is_idempotent(async_session_maker, user_id):
    async def _run():
        async with async_session_maker() as session:
            lead = await create_lead(
                session, user_id, first_name="Idem", last_name="Potent", email="idem@example.com", consent_given=True
            )
            lead.credit_score = 560
            await session.flush()
            first = await tagging_service.apply_auto_tagging(session, user_id, lead)
            second = await tagging_service.apply_auto_tagging(session, user_id, lead)
            await session.commit()
            count = await session.scalar(
                select(func.count()).select_from(LeadTag).where(LeadTag.lead_id == lead.lead_id)
            )
            return first.evaluation.tag_types, second.evaluation.tag_types, count

    first_tags, second_tags, count = anyio.run(_run)

    assert first_tags == ["unqualified", "blacklist"]
    assert second_tags == first_tags
    assert count == 2


class RecordingAdapter:
    platform = "META"

    def __init__(self):
        self.pushes = []

    async def push_leads(self, connection, leads, sync_type):
        self.pushes.append([(lead.lead_id, lead.tags) for lead in leads])
        return PushOutcome(
            synced_count=len(leads),
            failed_count=0,
            sync_id="sync_meta_recorded",
            synced_lead_ids=[lead.lead_id for lead in leads],
        )


def _active_meta_connection(client, headers):
    connection = client.post(
        "/pixels/connections",
        json={"platformType": "META", "connectionName": "Meta main", "pixelId": "px_1", "accessToken": "tok"},
        headers=headers,
    ).json()["data"]
    activated = client.patch(
        f"/pixels/connections/{connection['connectionId']}", json={"connectionStatus": "active"}, headers=headers
    )
    assert activated.status_code == 200
    return connection


def test_tag_and_sync_pushes_the_tags_just_written(client, auth_headers):
    adapter = RecordingAdapter()
    app.state.services.pixel_adapters = {"META": adapter}
    lead = _create_lead(client, auth_headers)
    _active_meta_connection(client, auth_headers)

    response = client.post(
        f"/leads/{lead['leadId']}/tag-and-sync",
        json={"tags": ["qualified"], "reason": "Qualified by phone"},
        headers=auth_headers,
    )

    assert response.json()["data"]["pixelSync"]["results"][0]["syncedCount"] == 1
    assert adapter.pushes == [[(uuid.UUID(lead["leadId"]), ("qualified",))]]


def test_tag_and_sync_never_pushes_a_newly_blacklisted_lead(client, auth_headers):
    adapter = RecordingAdapter()
    app.state.services.pixel_adapters = {"META": adapter}
    lead = _create_lead(client, auth_headers, email="now.blocked@example.com")
    _active_meta_connection(client, auth_headers)

    response = client.post(
        f"/leads/{lead['leadId']}/tag-and-sync",
        json={"tags": ["blacklist"], "reason": "Chargeback"},
        headers=auth_headers,
    )

    assert response.status_code == 200
    result = response.json()["data"]["pixelSync"]["results"][0]
    assert result["success"] is False
    assert result["syncedCount"] == 0
    assert "blacklisted" in result["errors"][0]
    assert adapter.pushes == []
    events = client.get("/outbox/events", headers=auth_headers).json()["data"]["events"]
    assert events == []
