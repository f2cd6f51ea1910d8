import json
import uuid

import anyio
import httpx
from sqlalchemy import select

from glasswallet.domain.outbox.db_models import OutboxEvent
from glasswallet.domain.pixels.adapters import (
    PushOutcome,
    SyncLead,
    build_pixel_adapters,
    failed_operation_indexes,
    hashed_identity,
    tiktok_event_for,
    tiktok_lead_value,
)
from glasswallet.domain.pixels.service import accepted_lead_ids, partition_eligible
from glasswallet.main import app
from glasswallet.settings import settings
from glasswallet.shared.pii import sha256_hex


def _create_connection(client, headers, **overrides):
    payload = {
        "platformType": "META",
        "connectionName": "Meta primary",
        "pixelId": "px_100",
        "accessToken": "meta-token",
    }
    payload.update(overrides)
    response = client.post("/pixels/connections", json=payload, headers=headers)
    assert response.status_code == 201
    return response.json()["data"]


def _create_lead(client, headers, email="pixel.lead@example.com", phone=None):
    payload = {"firstName": "Pix", "lastName": "Lead", "email": email, "consentGiven": True}
    if phone:
        payload["phone"] = phone
    response = client.post("/leads", json=payload, headers=headers)
    assert response.status_code == 201
    return response.json()["data"]


def _activate(client, headers, connection_id):
    response = client.patch(
        f"/pixels/connections/{connection_id}", json={"connectionStatus": "active"}, headers=headers
    )
    assert response.status_code == 200


def test_connection_crud_hides_tokens(client, auth_headers, other_auth_headers):
    created = _create_connection(client, auth_headers, syncSettings={"autoSync": True, "minimumCreditScore": 680})

    assert created["connectionStatus"] == "inactive"
    assert created["hasAccessToken"] is True
    assert "accessToken" not in created
    assert created["syncSettings"]["autoSync"] is True
    assert created["syncSettings"]["excludeBlacklisted"] is True
    assert created["syncSettings"]["minimumCreditScore"] == 680

    listed = client.get("/pixels/connections", headers=auth_headers).json()["data"]
    assert [item["connectionId"] for item in listed] == [created["connectionId"]]
    assert client.get("/pixels/connections", headers=other_auth_headers).json()["data"] == []

    renamed = client.patch(
        f"/pixels/connections/{created['connectionId']}",
        json={"connectionName": "Meta renamed", "syncSettings": {"autoSync": False}},
        headers=auth_headers,
    ).json()["data"]
    assert renamed["connectionName"] == "Meta renamed"
    assert renamed["syncSettings"]["autoSync"] is False
    assert renamed["syncSettings"]["minimumCreditScore"] == 680

    refreshed = client.get("/pixels/connections", headers=auth_headers).json()["data"]
    assert refreshed[0]["connectionName"] == "Meta renamed"

    other_view = client.get(f"/pixels/connections/{created['connectionId']}", headers=other_auth_headers)
    assert other_view.status_code == 404

    deleted = client.delete(f"/pixels/connections/{created['connectionId']}", headers=auth_headers)
    assert deleted.json()["data"]["deleted"] is True
    assert client.get(f"/pixels/connections/{created['connectionId']}", headers=auth_headers).status_code == 404


def test_duplicate_connection_name_conflicts(client, auth_headers):
    _create_connection(client, auth_headers)

    response = client.post(
        "/pixels/connections",
        json={"platformType": "TIKTOK", "connectionName": "Meta primary", "pixelId": "C1"},
        headers=auth_headers,
    )

    assert response.status_code == 409


def test_unknown_platform_is_rejected(client, auth_headers):
    response = client.post(
        "/pixels/connections",
        json={"platformType": "SNAPCHAT", "connectionName": "Snap"},
        headers=auth_headers,
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_connection_test_activates_in_mock_mode(client, auth_headers):
    connection = _create_connection(client, auth_headers)

    response = client.post(f"/pixels/connections/{connection['connectionId']}/test", headers=auth_headers)

    data = response.json()["data"]
    assert data["testResult"]["success"] is True
    assert data["statusUpdated"] is True
    assert data["newStatus"] == "active"


def test_connection_test_failure_marks_error(client, auth_headers):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Invalid OAuth access token"}})

    app.state.services.pixel_adapters = build_pixel_adapters(
        settings, transport=httpx.MockTransport(handler), mock_mode=False
    )
    connection = _create_connection(client, auth_headers)

    data = client.post(f"/pixels/connections/{connection['connectionId']}/test", headers=auth_headers).json()["data"]

    assert data["testResult"]["success"] is False
    assert "Invalid OAuth access token" in data["testResult"]["message"]
    assert data["newStatus"] == "error"
    fetched = client.get(f"/pixels/connections/{connection['connectionId']}", headers=auth_headers).json()["data"]
    assert fetched["lastError"]


def test_sync_rejects_inactive_connections(client, auth_headers):
    connection = _create_connection(client, auth_headers)
    lead = _create_lead(client, auth_headers)

    response = client.post(
        "/pixels/sync",
        json={"connectionIds": [connection["connectionId"]], "leadIds": [lead["leadId"]], "syncType": "qualified"},
        headers=auth_headers,
    )

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "INACTIVE_CONNECTIONS"
    assert error["details"]["inactiveConnections"] == ["Meta primary"]


def test_sync_rejects_foreign_connections_and_leads(client, auth_headers, other_auth_headers):
    mine = _create_connection(client, auth_headers)
    _activate(client, auth_headers, mine["connectionId"])
    theirs = _create_connection(client, other_auth_headers, connectionName="Other meta")
    lead = _create_lead(client, auth_headers)
    foreign_lead = _create_lead(client, other_auth_headers, email="foreign@example.com")

    bad_connection = client.post(
        "/pixels/sync",
        json={"connectionIds": [theirs["connectionId"]], "leadIds": [lead["leadId"]]},
        headers=auth_headers,
    )
    assert bad_connection.status_code == 400
    assert bad_connection.json()["error"]["details"]["missingConnectionIds"] == [theirs["connectionId"]]

    bad_lead = client.post(
        "/pixels/sync",
        json={"connectionIds": [mine["connectionId"]], "leadIds": [foreign_lead["leadId"]]},
        headers=auth_headers,
    )
    assert bad_lead.status_code == 400


def test_sync_success_marks_tags_and_updates_connection(client, auth_headers):
    connection = _create_connection(client, auth_headers)
    client.post(f"/pixels/connections/{connection['connectionId']}/test", headers=auth_headers)
    lead = _create_lead(client, auth_headers)
    client.post(
        f"/leads/{lead['leadId']}/tag",
        json={"tagType": "whitelist", "tagReason": "Partner referral"},
        headers=auth_headers,
    )

    response = client.post(
        "/pixels/sync",
        json={"connectionIds": [connection["connectionId"]], "leadIds": [lead["leadId"]], "syncType": "whitelist"},
        headers=auth_headers,
    )

    assert response.status_code == 200
    body = response.json()["data"]
    assert body["summary"]["totalConnections"] == 1
    assert body["summary"]["totalSynced"] == 1
    assert body["summary"]["successfulPlatforms"] == 1
    assert body["summary"]["syncType"] == "whitelist"
    result = body["results"][0]
    assert result["success"] is True
    assert result["platformType"] == "META"
    assert result["syncId"].startswith("sync_meta_")

    fetched = client.get(f"/leads/{lead['leadId']}", headers=auth_headers).json()["data"]
    assert fetched["tags"][0]["syncedToPixels"] is True
    connection_view = client.get(
        f"/pixels/connections/{connection['connectionId']}", headers=auth_headers
    ).json()["data"]
    assert connection_view["lastSyncAt"]


def test_meta_push_sends_hashed_identities(client, auth_headers):
    captured = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"events_received": 1, "fbtrace_id": "trace-1"})

    app.state.services.pixel_adapters = build_pixel_adapters(
        settings, transport=httpx.MockTransport(handler), mock_mode=False
    )
    connection = _create_connection(client, auth_headers)
    _activate(client, auth_headers, connection["connectionId"])
    lead = _create_lead(client, auth_headers, email="Hash.Me@Example.com", phone="(555) 010-2000")

    response = client.post(
        "/pixels/sync",
        json={"connectionIds": [connection["connectionId"]], "leadIds": [lead["leadId"]], "syncType": "qualified"},
        headers=auth_headers,
    )

    assert response.json()["data"]["results"][0]["metadata"]["fbtraceId"] == "trace-1"
    assert len(captured) == 1
    request = captured[0]
    assert request.url.path == "/v18.0/px_100/events"
    assert request.headers["Authorization"] == "Bearer meta-token"
    body = json.loads(request.content)
    user_data = body["data"][0]["user_data"]
    assert user_data["em"] == [sha256_hex("hash.me@example.com")]
    assert user_data["ph"] == [sha256_hex("+15550102000")]
    assert "Hash.Me@Example.com" not in request.content.decode()


def test_failed_push_is_queued_for_retry(client, auth_headers):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"message": "internal error"})

    app.state.services.pixel_adapters = build_pixel_adapters(
        settings, transport=httpx.MockTransport(handler), mock_mode=False
    )
    connection = _create_connection(client, auth_headers, platformType="TIKTOK", connectionName="TikTok", pixelId="C1")
    _activate(client, auth_headers, connection["connectionId"])
    lead = _create_lead(client, auth_headers)

    response = client.post(
        "/pixels/sync",
        json={"connectionIds": [connection["connectionId"]], "leadIds": [lead["leadId"]]},
        headers=auth_headers,
    )

    assert response.status_code == 200
    result = response.json()["data"]["results"][0]
    assert result["success"] is False
    assert result["failedCount"] == 1
    assert "internal error" in result["errors"][0]

    events = client.get("/outbox/events", headers=auth_headers).json()["data"]["events"]
    assert len(events) == 1
    assert events[0]["kind"] == "pixel_sync"
    assert events[0]["status"] == "pending"

    fetched = client.get(f"/pixels/connections/{connection['connectionId']}", headers=auth_headers).json()["data"]
    assert fetched["connectionStatus"] == "active"
    assert "internal error" in fetched["lastError"]


def test_sync_lead_limit_is_enforced(client, auth_headers):
    settings.pixel_sync_max_leads = 1
    connection = _create_connection(client, auth_headers)
    _activate(client, auth_headers, connection["connectionId"])
    first = _create_lead(client, auth_headers, email="one@example.com")
    second = _create_lead(client, auth_headers, email="two@example.com")

    response = client.post(
        "/pixels/sync",
        json={"connectionIds": [connection["connectionId"]], "leadIds": [first["leadId"], second["leadId"]]},
        headers=auth_headers,
    )

    assert response.status_code == 400
    assert response.json()["error"]["details"]["maxLeads"] == 1


def _sync_lead(**overrides) -> SyncLead:
    values = {
        "lead_id": uuid.uuid4(),
        "email": "lead@example.com",
        "first_name": "Lee",
        "last_name": "Dee",
    }
    values.update(overrides)
    return SyncLead(**values)


def test_tiktok_event_and_value_mapping():
    qualified = _sync_lead(credit_score=760, tags=("qualified", "whitelist"))
    whitelisted = _sync_lead(credit_score=660, tags=("whitelist",))
    high_score = _sync_lead(credit_score=710)
    plain = _sync_lead()

    assert tiktok_event_for(qualified) == "CompleteRegistration"
    assert tiktok_event_for(whitelisted) == "SubmitForm"
    assert tiktok_event_for(high_score) == "ViewContent"
    assert tiktok_event_for(plain) == "Lead"

    assert tiktok_lead_value(qualified) == 10 + 50 + 25 + 10
    assert tiktok_lead_value(whitelisted) == 10 + 15 + 10
    assert tiktok_lead_value(high_score) == 10 + 30
    assert tiktok_lead_value(plain) == 10


def test_hashed_identity_normalizes_before_hashing():
    identity = hashed_identity(
        _sync_lead(email="  Mixed.Case@Example.COM ", first_name=" Ana ", last_name="LOPEZ", phone="555-123-4567")
    )

    assert identity["email"] == sha256_hex("mixed.case@example.com")
    assert identity["phone"] == sha256_hex("+15551234567")
    assert identity["first_name"] == sha256_hex("ana")
    assert identity["last_name"] == sha256_hex("lopez")
    assert hashed_identity(_sync_lead())["phone"] is None


def test_partition_eligible_applies_connection_settings():
    blacklisted = _sync_lead(credit_score=720, tags=("blacklist",))
    low = _sync_lead(credit_score=610)
    unscored = _sync_lead()
    good = _sync_lead(credit_score=705)

    eligible, reasons = partition_eligible(
        {"excludeBlacklisted": True, "minimumCreditScore": 650}, [blacklisted, low, unscored, good]
    )

    assert eligible == [good]
    assert len(reasons) == 3
    assert "blacklisted" in reasons[0]

    relaxed, _ = partition_eligible({"excludeBlacklisted": False}, [blacklisted, unscored])
    assert relaxed == [blacklisted, unscored]


class PartialAdapter:
    platform = "META"

    def __init__(self, accepted):
        self.accepted = set(accepted)

    async def push_leads(self, connection, leads, sync_type):
        synced = [lead.lead_id for lead in leads if lead.lead_id in self.accepted]
        return PushOutcome(
            synced_count=len(synced),
            failed_count=len(leads) - len(synced),
            sync_id="sync_meta_partial",
            errors=["1 event rejected"] if len(synced) < len(leads) else [],
            synced_lead_ids=synced,
        )


def test_partial_push_marks_and_retries_per_lead(client, auth_headers, async_session_maker):
    connection = _create_connection(client, auth_headers)
    _activate(client, auth_headers, connection["connectionId"])
    accepted = _create_lead(client, auth_headers, email="accepted@example.com")
    rejected = _create_lead(client, auth_headers, email="rejected@example.com")
    for lead in (accepted, rejected):
        client.post(
            f"/leads/{lead['leadId']}/tag",
            json={"tagType": "qualified", "tagReason": "Manual review"},
            headers=auth_headers,
        )
    app.state.services.pixel_adapters = {"META": PartialAdapter([uuid.UUID(accepted["leadId"])])}

    response = client.post(
        "/pixels/sync",
        json={
            "connectionIds": [connection["connectionId"]],
            "leadIds": [accepted["leadId"], rejected["leadId"]],
            "syncType": "qualified",
        },
        headers=auth_headers,
    )

    result = response.json()["data"]["results"][0]
    assert result["success"] is True
    assert result["syncedCount"] == 1
    assert result["failedCount"] == 1
    synced = client.get(f"/leads/{accepted['leadId']}", headers=auth_headers).json()["data"]
    pending = client.get(f"/leads/{rejected['leadId']}", headers=auth_headers).json()["data"]
    assert synced["tags"][0]["syncedToPixels"] is True
    assert pending["tags"][0]["syncedToPixels"] is False

    async def _events():
        async with async_session_maker() as session:
            return (await session.execute(select(OutboxEvent))).scalars().all()

    events = anyio.run(_events)
    assert len(events) == 1
    assert events[0].kind == "pixel_sync"
    assert events[0].payload_json["leadIds"] == [rejected["leadId"]]


def test_google_partial_failure_names_failed_operations(client, auth_headers):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("offlineUserDataJobs:create"):
            return httpx.Response(200, json={"resourceName": "customers/1234567890/offlineUserDataJobs/9"})
        if request.url.path.endswith(":addOperations"):
            return httpx.Response(
                200,
                json={
                    "partialFailureError": {
                        "message": "1 operation failed",
                        "details": [
                            {
                                "errors": [
                                    {
                                        "message": "Invalid hashed email",
                                        "location": {
                                            "fieldPathElements": [{"fieldName": "operations", "index": 0}]
                                        },
                                    }
                                ]
                            }
                        ],
                    }
                },
            )
        return httpx.Response(200, json={})

    app.state.services.pixel_adapters = build_pixel_adapters(
        settings, transport=httpx.MockTransport(handler), mock_mode=False
    )
    connection = _create_connection(
        client,
        auth_headers,
        platformType="GOOGLE_ADS",
        connectionName="Google",
        pixelId="555",
        customerId="1234567890",
        accessToken="g-token",
    )
    _activate(client, auth_headers, connection["connectionId"])
    first = _create_lead(client, auth_headers, email="first@example.com")
    second = _create_lead(client, auth_headers, email="second@example.com")
    for lead in (first, second):
        client.post(
            f"/leads/{lead['leadId']}/tag",
            json={"tagType": "qualified", "tagReason": "Manual review"},
            headers=auth_headers,
        )

    response = client.post(
        "/pixels/sync",
        json={"connectionIds": [connection["connectionId"]], "leadIds": [first["leadId"], second["leadId"]]},
        headers=auth_headers,
    )

    result = response.json()["data"]["results"][0]
    assert result["syncedCount"] == 1
    assert result["failedCount"] == 1
    failed = client.get(f"/leads/{first['leadId']}", headers=auth_headers).json()["data"]
    pushed = client.get(f"/leads/{second['leadId']}", headers=auth_headers).json()["data"]
    assert failed["tags"][0]["syncedToPixels"] is False
    assert pushed["tags"][0]["syncedToPixels"] is True


def test_failed_operation_indexes_reads_operation_locations():
    located = {
        "details": [
            {"errors": [{"location": {"fieldPathElements": [{"fieldName": "operations", "index": 2}]}}]},
            {
                "errors": [
                    {
                        "location": {
                            "fieldPathElements": [
                                {"fieldName": "operations", "index": 0},
                                {"fieldName": "create"},
                            ]
                        }
                    }
                ]
            },
        ]
    }

    assert failed_operation_indexes(located) == {0, 2}
    assert failed_operation_indexes({}) == set()
    assert failed_operation_indexes({"details": [{"errors": [{"message": "no location"}]}]}) is None


def test_counts_only_partial_outcome_confirms_no_lead():
    leads = [_sync_lead(), _sync_lead(email="other@example.com")]

    partial = PushOutcome(synced_count=1, failed_count=1, sync_id="sync_meta_x")
    complete = PushOutcome(synced_count=2, failed_count=0, sync_id="sync_meta_y")
    named = PushOutcome(
        synced_count=1, failed_count=1, sync_id="sync_meta_z", synced_lead_ids=[leads[1].lead_id, uuid.uuid4()]
    )

    assert accepted_lead_ids(partial, leads) == []
    assert accepted_lead_ids(complete, leads) == [lead.lead_id for lead in leads]
    assert accepted_lead_ids(named, leads) == [leads[1].lead_id]
