from datetime import datetime, timedelta, timezone

OPERATOR = {"X-User-Id": "operator-1"}
OTHER_OPERATOR = {"X-User-Id": "operator-2"}

HIGH_SPENDERS = {"field": "totalSpend", "operator": ">", "value": 10000}


def _ingest(client):
    for index, name in enumerate(["Ada Obi", "Bola Ade", "Chi Eze", "Dayo Musa"], start=1):
        res = client.post(
            "/customers",
            json={"external_id": f"crm-{index}", "name": name, "email": f"user{index}@acme.io"},
        )
        assert res.status_code == 200, res.text

    for order_id, customer, amount in [
        ("ord-1", "crm-1", "12000.00"),
        ("ord-2", "crm-2", "9000.00"),
        ("ord-3", "crm-2", "6500.50"),
        ("ord-4", "crm-3", "200.00"),
    ]:
        res = client.post(
            "/customers/orders",
            json={"external_id": order_id, "customer_external_id": customer, "amount": amount},
        )
        assert res.status_code == 200, res.text


def _create_segment(client, name="High spenders", rules=None):
    res = client.post("/segments", headers=OPERATOR, json={"name": name, "rules": rules or HIGH_SPENDERS})
    assert res.status_code == 200, res.text
    return res.json()


def test_health_and_ready(test_context):
    client, _ = test_context

    assert client.get("/health").json() == {"ok": True}
    ready = client.get("/ready").json()
    assert ready == {"ok": True, "scheduler_running": False}


def test_operator_endpoints_require_user_header(test_context):
    client, _ = test_context

    res = client.get("/segments")

    assert res.status_code == 401
    body = res.json()["error"]
    assert body["code"] == "unauthorized"
    assert body["path"] == "/segments"
    assert body["request_id"]


def test_order_ingestion_rolls_up_customer_attributes(test_context):
    client, _ = test_context
    _ingest(client)

    listing = client.get("/customers", headers=OPERATOR, params={"q": "bola"}).json()
    assert listing["pagination"]["total"] == 1
    customer = listing["items"][0]
    assert customer["total_spend"] == 15500.5
    assert customer["visit_count"] == 2
    assert customer["last_purchase_at"] is not None

    duplicate = client.post(
        "/customers/orders",
        json={"external_id": "ord-1", "customer_external_id": "crm-1", "amount": "1.00"},
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "conflict"

    missing = client.post(
        "/customers/orders",
        json={"external_id": "ord-9", "customer_external_id": "crm-404", "amount": "1.00"},
    )
    assert missing.status_code == 404


def test_segment_preview_from_text_and_crud(test_context):
    client, _ = test_context
    _ingest(client)

    preview = client.post("/segments/preview", headers=OPERATOR, json={"rules": HIGH_SPENDERS})
    assert preview.status_code == 200
    assert preview.json()["audience_size"] == 2
    assert len(preview.json()["sample_customer_ids"]) == 2

    drafted = client.post("/segments/from-text", headers=OPERATOR, json={"query": "customers who spent more than 10k"})
    assert drafted.status_code == 200
    assert drafted.json()["rules"] == HIGH_SPENDERS
    assert drafted.json()["audience_size"] == 2

    vague = client.post("/segments/from-text", headers=OPERATOR, json={"query": "people I like"})
    assert vague.json()["rules"] is None

    segment = _create_segment(client)
    assert segment["audience_size"] == 2

    duplicate = client.post("/segments", headers=OPERATOR, json={"name": "high spenders", "rules": HIGH_SPENDERS})
    assert duplicate.status_code == 409

    invalid = client.post(
        "/segments",
        headers=OPERATOR,
        json={"name": "Broken", "rules": {"field": "shoeSize", "operator": ">", "value": 40}},
    )
    assert invalid.status_code == 400
    assert invalid.json()["error"]["code"] == "invalid_rule"

    updated = client.patch(
        f"/segments/{segment['id']}",
        headers=OPERATOR,
        json={"rules": {"field": "visitCount", "operator": ">=", "value": 1}},
    )
    assert updated.status_code == 200
    assert updated.json()["audience_size"] == 3

    assert client.get(f"/segments/{segment['id']}", headers=OTHER_OPERATOR).status_code == 404
    assert client.get("/segments", headers=OPERATOR).json()["pagination"]["total"] == 1

    deleted = client.delete(f"/segments/{segment['id']}", headers=OPERATOR)
    assert deleted.json() == {"ok": True}


def test_campaign_delivery_end_to_end(test_context):
    client, _ = test_context
    _ingest(client)
    segment = _create_segment(client)

    created = client.post(
        "/campaigns",
        headers=OPERATOR,
        json={"segment_id": segment["id"], "name": "Thank you", "message_template": "Hi {{name}}, thanks!"},
    )
    assert created.status_code == 200, created.text
    campaign = created.json()
    assert campaign["status"] == "COMPLETED"
    assert campaign["total_audience"] == 2
    assert campaign["sent_count"] + campaign["failed_count"] == 2
    assert campaign["ai_summary"].startswith("Thank you reached")

    detail = client.get(f"/campaigns/{campaign['id']}", headers=OPERATOR).json()
    assert detail["progress"]["is_complete"] is True
    assert detail["progress"]["pending"] == 0

    logs = client.get(f"/campaigns/{campaign['id']}/logs", headers=OPERATOR).json()
    assert logs["pagination"]["total"] == 2
    messages = sorted(item["rendered_message"] for item in logs["items"])
    assert messages == ["Hi Ada Obi, thanks!", "Hi Bola Ade, thanks!"]
    assert all(item["attempts"] == 1 for item in logs["items"])

    metrics = client.get("/campaigns/metrics", headers=OPERATOR).json()
    assert metrics["total_campaigns"] == 1
    assert metrics["campaigns_by_status"]["COMPLETED"] == 1
    assert metrics["messages_sent"] + metrics["messages_failed"] == 2
    assert metrics["total_customers"] == 4

    with client.stream("GET", f"/campaigns/{campaign['id']}/progress", headers=OPERATOR) as stream:
        assert stream.headers["content-type"].startswith("text/event-stream")
        body = "".join(stream.iter_text())
    assert "event: progress" in body
    assert '"is_complete": true' in body

    in_use = client.delete(f"/segments/{segment['id']}", headers=OPERATOR)
    assert in_use.status_code == 409

    listed = client.get("/campaigns", headers=OPERATOR, params={"status": "COMPLETED"}).json()
    assert [item["id"] for item in listed["items"]] == [campaign["id"]]
    assert client.get("/campaigns", headers=OTHER_OPERATOR).json()["items"] == []

    relaunch = client.post(f"/campaigns/{campaign['id']}/launch", headers=OPERATOR)
    assert relaunch.status_code == 409
    assert relaunch.json()["error"]["code"] == "illegal_transition"


def test_draft_and_scheduled_campaigns(test_context):
    client, _ = test_context
    _ingest(client)
    segment = _create_segment(client)

    draft = client.post(
        "/campaigns",
        headers=OPERATOR,
        json={"segment_id": segment["id"], "name": "Later", "message_template": "Hi", "launch": False},
    ).json()
    assert draft["status"] == "DRAFT"
    assert draft["total_audience"] == 2

    scheduled_at = (datetime.now(timezone.utc) + timedelta(days=3)).isoformat()
    scheduled = client.post(
        "/campaigns",
        headers=OPERATOR,
        json={"segment_id": segment["id"], "name": "Future", "message_template": "Hi", "scheduled_at": scheduled_at},
    ).json()
    assert scheduled["status"] == "SCHEDULED"

    launched = client.post(f"/campaigns/{draft['id']}/launch", headers=OPERATOR).json()
    assert launched["status"] == "COMPLETED"

    missing_segment = client.post(
        "/campaigns",
        headers=OPERATOR,
        json={"segment_id": "nope", "name": "Ghost", "message_template": "Hi"},
    )
    assert missing_segment.status_code == 404
    assert missing_segment.json()["error"]["code"] == "segment_not_found"

    assert client.get("/campaigns/unknown", headers=OPERATOR).status_code == 404


def test_vendor_receipts_single_and_batch(test_context):
    client, _ = test_context
    _ingest(client)
    segment = _create_segment(client)
    campaign = client.post(
        "/campaigns",
        headers=OPERATOR,
        json={"segment_id": segment["id"], "name": "Receipts", "message_template": "Hi {{name}}"},
    ).json()
    logs = client.get(f"/campaigns/{campaign['id']}/logs", headers=OPERATOR).json()["items"]
    first, second = (item["vendor_correlation_id"] for item in logs)
    later = (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()

    applied = client.post(
        "/receipts",
        json={"messageId": first, "status": "failed", "error": "Bounced", "timestamp": later},
    )
    assert applied.status_code == 200, applied.text
    assert applied.json()["status"] == "FAILED"
    assert applied.json()["failure_reason"] == "Bounced"

    unknown = client.post("/receipts", json={"messageId": "msg-missing", "status": "SENT", "timestamp": later})
    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == "unknown_receipt"

    batch = client.post(
        "/receipts/batch",
        json={
            "receipts": [
                {"messageId": second, "status": "SENT", "timestamp": later},
                {"messageId": "msg-missing", "status": "SENT", "timestamp": later},
                {"messageId": first, "status": "SENT"},
            ]
        },
    )
    assert batch.status_code == 200
    body = batch.json()
    assert (body["applied"], body["failed"]) == (1, 2)
    assert body["results"][0]["entry"]["status"] == "SENT"
    assert body["results"][1]["error"] == "unknown_receipt"
    assert "timestamp" in body["results"][2]["error"]

    refreshed = client.get(f"/campaigns/{campaign['id']}", headers=OPERATOR).json()
    assert (refreshed["sent_count"], refreshed["failed_count"]) == (1, 1)


def test_receipt_accepts_camel_case_field_names(test_context):
    client, _ = test_context
    _ingest(client)
    segment = _create_segment(client)
    campaign = client.post(
        "/campaigns",
        headers=OPERATOR,
        json={"segment_id": segment["id"], "name": "Aliases", "message_template": "Hi {{name}}"},
    ).json()
    logs = client.get(f"/campaigns/{campaign['id']}/logs", headers=OPERATOR).json()["items"]
    first, second = (item["vendor_correlation_id"] for item in logs)
    later = (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()

    applied = client.post(
        "/receipts",
        json={"correlationId": first, "status": "FAILED", "errorReason": "Mailbox full", "occurredAt": later},
    )
    assert applied.status_code == 200, applied.text
    assert applied.json()["status"] == "FAILED"
    assert applied.json()["failure_reason"] == "Mailbox full"

    batch = client.post(
        "/receipts/batch",
        json={"receipts": [{"correlationId": second, "status": "failed", "errorReason": "Blocked", "occurredAt": later}]},
    ).json()
    assert batch["results"][0]["correlation_id"] == second
    assert batch["results"][0]["entry"]["failure_reason"] == "Blocked"
