import httpx

from conftest import STARTING_BALANCE
from glasswallet.domain.credit.providers import CreditProviderError
from glasswallet.domain.pixels.adapters import build_pixel_adapters
from glasswallet.main import app
from glasswallet.settings import settings


def _consumer_payload(**overrides):
    payload = {
        "firstName": "Morgan",
        "lastName": "Lee",
        "ssn": "123-45-6789",
        "dateOfBirth": "1988-04-12",
        "address": {"street": "12 Pine Street", "city": "Austin", "state": "tx", "zipCode": "73301"},
        "permissiblePurpose": "credit_transaction",
        "consentGiven": True,
    }
    payload.update(overrides)
    return payload


def _create_lead(client, headers, *, consent=True, email="pipeline@example.com"):
    response = client.post(
        "/leads",
        json={"firstName": "Jo", "lastName": "March", "email": email, "consentGiven": consent},
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()["data"]


def test_consumer_pull_masks_ssn_and_debits(client, auth_headers, credit_provider):
    response = client.post("/credit/pull", json=_consumer_payload(), headers=auth_headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["maskedSsn"] == "***-**-6789"
    assert "123-45-6789" not in response.text
    assert data["creditScore"] == credit_provider.credit_score
    assert data["scoreTier"] == "excellent"
    assert data["costInCents"] == settings.credit_pull_cost_cents
    assert data["creditBalance"] == STARTING_BALANCE - settings.credit_pull_cost_cents
    assert "Fair Credit Reporting Act" in data["fcraNotice"]

    balance = client.get("/credit/balance", headers=auth_headers).json()["data"]
    assert balance["creditBalance"] == data["creditBalance"]


def test_consumer_pull_requires_consent(client, auth_headers, credit_provider):
    response = client.post("/credit/pull", json=_consumer_payload(consentGiven=False), headers=auth_headers)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "CONSENT_REQUIRED"
    assert credit_provider.calls == 0


def test_consumer_pull_rejects_malformed_ssn(client, auth_headers):
    response = client.post("/credit/pull", json=_consumer_payload(ssn="12345"), headers=auth_headers)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_pre_qualify_charges_soft_pull_cost(client, auth_headers, credit_provider):
    credit_provider.credit_score = 640

    response = client.post("/credit/pre-qualify", json={"ssn": "123456789", "zipCode": "10001"}, headers=auth_headers)

    data = response.json()["data"]
    assert data == {
        "score": 640,
        "qualified": False,
        "confidence": "medium",
        "creditsDeducted": settings.prequalify_cost_cents,
        "creditBalance": STARTING_BALANCE - settings.prequalify_cost_cents,
    }


def test_transactions_list_newest_first(client, auth_headers, credit_provider):
    client.post("/credit/pre-qualify", json={"ssn": "123456789", "zipCode": "10001"}, headers=auth_headers)
    client.post("/credit/pull", json=_consumer_payload(), headers=auth_headers)

    response = client.get("/credit/transactions", params={"limit": 10}, headers=auth_headers)

    body = response.json()
    assert body["meta"]["pagination"]["total"] == 2
    costs = [row["costInCents"] for row in body["data"]]
    assert costs == [settings.credit_pull_cost_cents, settings.prequalify_cost_cents]
    for row in body["data"]:
        assert row["creditBalanceBefore"] - row["creditBalanceAfter"] == row["costInCents"]


def test_lead_credit_pull_with_seeded_rules_tags_and_reports(client, auth_headers, credit_provider):
    client.post("/rules/seed", headers=auth_headers)
    lead = _create_lead(client, auth_headers)

    response = client.post(f"/leads/{lead['leadId']}/credit-pull", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["creditScore"] == 750
    assert data["incomeEstimate"] == 7_500_000
    assert data["tags"] == ["qualified", "whitelist"]
    assert data["creditBalance"] == STARTING_BALANCE - settings.credit_pull_cost_cents
    assert data["webhookEventIds"] == []

    detail = client.get(f"/leads/{lead['leadId']}", headers=auth_headers).json()["data"]
    assert detail["processedAt"]
    assert sorted(tag["tagType"] for tag in detail["tags"]) == ["qualified", "whitelist"]
    assert len(detail["transactions"]) == 1


def test_lead_credit_pull_without_consent_costs_nothing(client, auth_headers, credit_provider):
    lead = _create_lead(client, auth_headers, consent=False)

    response = client.post(f"/leads/{lead['leadId']}/credit-pull", headers=auth_headers)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "CONSENT_REQUIRED"
    assert client.get("/credit/balance", headers=auth_headers).json()["data"]["creditBalance"] == STARTING_BALANCE


def test_lead_credit_pull_twice_is_too_recent(client, auth_headers, credit_provider):
    lead = _create_lead(client, auth_headers)

    assert client.post(f"/leads/{lead['leadId']}/credit-pull", headers=auth_headers).status_code == 200
    second = client.post(f"/leads/{lead['leadId']}/credit-pull", headers=auth_headers)

    assert second.status_code == 400
    assert second.json()["error"]["code"] == "CREDIT_PULL_TOO_RECENT"
    assert credit_provider.calls == 1


def test_lead_credit_pull_insufficient_balance(client, auth_headers, credit_provider):
    settings.credit_pull_cost_cents = STARTING_BALANCE * 2
    lead = _create_lead(client, auth_headers)

    response = client.post(f"/leads/{lead['leadId']}/credit-pull", headers=auth_headers)

    assert response.status_code == 402
    error = response.json()["error"]
    assert error["code"] == "INSUFFICIENT_CREDITS"
    assert error["details"] == {"required": STARTING_BALANCE * 2, "available": STARTING_BALANCE}


def test_lead_credit_pull_provider_outage_is_retryable(client, auth_headers, credit_provider):
    credit_provider.fail_with = CreditProviderError("PROVIDER_UNAVAILABLE", "Bureau unavailable", retryable=True)
    lead = _create_lead(client, auth_headers)

    response = client.post(f"/leads/{lead['leadId']}/credit-pull", headers=auth_headers)

    assert response.status_code == 503
    error = response.json()["error"]
    assert error["code"] == "PROVIDER_UNAVAILABLE"
    assert error["retryable"] is True
    assert client.get("/credit/balance", headers=auth_headers).json()["data"]["creditBalance"] == STARTING_BALANCE


def test_rule_webhook_with_destination_is_enqueued(client, auth_headers, credit_provider):
    client.post(
        "/rules",
        json={
            "ruleName": "Notify CRM",
            "conditions": {"creditScore": {"gte": 700}},
            "actions": {
                "addTag": "qualified",
                "webhookEvents": ["lead.qualified"],
                "webhookUrl": "https://crm.example.com/hooks",
            },
        },
        headers=auth_headers,
    )
    lead = _create_lead(client, auth_headers)

    response = client.post(f"/leads/{lead['leadId']}/credit-pull", headers=auth_headers)

    event_ids = response.json()["data"]["webhookEventIds"]
    assert len(event_ids) == 1
    events = client.get("/outbox/events", headers=auth_headers).json()["data"]["events"]
    assert [event["eventId"] for event in events] == event_ids
    assert events[0]["kind"] == "webhook"


def test_credit_pull_auto_syncs_rule_tags_to_auto_sync_connections(client, auth_headers, credit_provider):
    client.post("/rules/seed", headers=auth_headers)
    connection = client.post(
        "/pixels/connections",
        json={
            "platformType": "TIKTOK",
            "connectionName": "TikTok auto",
            "pixelId": "C123",
            "accessToken": "tt-token",
            "syncSettings": {"autoSync": True},
        },
        headers=auth_headers,
    ).json()["data"]
    client.post(f"/pixels/connections/{connection['connectionId']}/test", headers=auth_headers)
    lead = _create_lead(client, auth_headers)

    response = client.post(f"/leads/{lead['leadId']}/credit-pull", headers=auth_headers)

    summary = response.json()["data"]["pixelSync"]
    assert summary["syncType"] == "qualified"
    assert summary["totalSynced"] == 1
    assert summary["successfulPlatforms"] == 1


def test_auto_sync_failure_does_not_fail_the_pull(client, auth_headers, credit_provider):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"message": "tiktok down"})

    client.post("/rules/seed", headers=auth_headers)
    connection = client.post(
        "/pixels/connections",
        json={
            "platformType": "TIKTOK",
            "connectionName": "TikTok flaky",
            "pixelId": "C999",
            "accessToken": "tt-token",
            "syncSettings": {"autoSync": True},
        },
        headers=auth_headers,
    ).json()["data"]
    client.patch(
        f"/pixels/connections/{connection['connectionId']}",
        json={"connectionStatus": "active"},
        headers=auth_headers,
    )
    app.state.services.pixel_adapters = build_pixel_adapters(
        settings, transport=httpx.MockTransport(handler), mock_mode=False
    )
    lead = _create_lead(client, auth_headers)

    response = client.post(f"/leads/{lead['leadId']}/credit-pull", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["data"]["tags"] == ["qualified", "whitelist"]
    assert response.json()["data"]["pixelSync"]["totalFailed"] == 1
    pending = client.get("/outbox/events", params={"status": "pending"}, headers=auth_headers).json()["data"]
    assert [event["kind"] for event in pending["events"]] == ["pixel_sync"]
