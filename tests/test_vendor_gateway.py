import random
import threading
import time
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from app.core.config import Settings
from app.core.errors import VendorCallFailed
from app.services.campaign_store import CustomerRecord
from app.services.vendor_gateway import (
    SIMULATED_FAILURE_REASON,
    HttpVendorGateway,
    SendRequest,
    SimulatedVendorGateway,
    get_vendor_gateway,
    send_batch,
)


def _recipient(recipient_id: str = "cust-1") -> CustomerRecord:
    return CustomerRecord(
        id=recipient_id,
        external_id=f"ext-{recipient_id}",
        name="Ada",
        email="ada@example.com",
        phone="+2348000000000",
        total_spend=Decimal("0"),
        visit_count=0,
        last_purchase_at=None,
    )


def test_simulated_gateway_replays_with_seed():
    first = SimulatedVendorGateway(success_rate=0.5, rng=random.Random(11))
    second = SimulatedVendorGateway(success_rate=0.5, rng=random.Random(11))

    first_run = [first.send(_recipient(), "hi").accepted for _ in range(50)]
    second_run = [second.send(_recipient(), "hi").accepted for _ in range(50)]

    assert first_run == second_run
    assert 0 < sum(first_run) < 50


def test_simulated_gateway_extremes_and_failure_reason():
    always = SimulatedVendorGateway(success_rate=1.0, rng=random.Random(1))
    never = SimulatedVendorGateway(success_rate=0.0, rng=random.Random(1))

    accepted = always.send(_recipient(), "hi")
    rejected = never.send(_recipient(), "hi")

    assert accepted.accepted and accepted.correlation_id.startswith("msg-")
    assert not rejected.accepted
    assert rejected.error_reason == SIMULATED_FAILURE_REASON
    assert rejected.correlation_id


def test_simulated_gateway_rejects_bad_rate():
    with pytest.raises(ValueError):
        SimulatedVendorGateway(success_rate=1.5)


class _FlakyGateway:
    name = "flaky"

    def __init__(self):
        self.lock = threading.Lock()
        self.active = 0
        self.peak = 0

    def send(self, recipient, rendered_message):
        with self.lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            time.sleep(0.01)
            if recipient.id.endswith("3"):
                raise RuntimeError("socket closed")
            return SimulatedVendorGateway(success_rate=1.0).send(recipient, rendered_message)
        finally:
            with self.lock:
                self.active -= 1


def test_send_batch_keeps_order_and_isolates_failures():
    gateway = _FlakyGateway()
    requests = [SendRequest(key=f"k{index}", recipient=_recipient(f"r{index}"), message="hi") for index in range(8)]

    attempts = send_batch(gateway, requests, max_workers=3)

    assert [attempt.request.key for attempt in attempts] == [f"k{index}" for index in range(8)]
    failed = [attempt for attempt in attempts if attempt.error is not None]
    assert [attempt.request.key for attempt in failed] == ["k3"]
    assert str(failed[0].error) == "socket closed"
    assert all(attempt.outcome.accepted for attempt in attempts if attempt.error is None)
    assert gateway.peak <= 3


def test_send_batch_stamps_each_attempt_when_its_call_returns():
    calls: list[str] = []
    stamps = iter([datetime(2026, 3, 1, 12, 0, second, tzinfo=timezone.utc) for second in range(3)])
    gateway = SimulatedVendorGateway(success_rate=1.0, rng=random.Random(3))
    requests = [SendRequest(key=f"k{index}", recipient=_recipient(f"r{index}"), message="hi") for index in range(3)]

    def clock():
        calls.append("tick")
        return next(stamps)

    attempts = send_batch(gateway, requests, max_workers=1, clock=clock)

    assert [attempt.attempted_at.second for attempt in attempts] == [0, 1, 2]
    assert len(calls) == 3


def test_send_batch_empty():
    assert send_batch(_FlakyGateway(), [], max_workers=4) == []


def _http_gateway(handler) -> HttpVendorGateway:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpVendorGateway(base_url="https://vendor.test/send", client=client)


def test_http_gateway_posts_payload_and_reads_message_id():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = request.read()
        return httpx.Response(200, json={"messageId": "vendor-123", "status": "SENT"})

    outcome = _http_gateway(handler).send(_recipient(), "Hello Ada")

    assert outcome.accepted
    assert outcome.correlation_id == "vendor-123"
    assert seen["url"] == "https://vendor.test/send"
    assert b'"recipientId":"cust-1"' in seen["body"].replace(b" ", b"")


def test_http_gateway_maps_vendor_rejection():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"messageId": "vendor-9", "status": "failed", "error": "Blocked number"})

    outcome = _http_gateway(handler).send(_recipient(), "Hello")

    assert not outcome.accepted
    assert outcome.error_reason == "Blocked number"
    assert outcome.correlation_id == "vendor-9"


def test_http_gateway_raises_on_server_error_and_transport_error():
    def server_error(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, json={"error": "upstream"})

    def transport_error(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(VendorCallFailed, match="HTTP 502"):
        _http_gateway(server_error).send(_recipient(), "Hello")
    with pytest.raises(VendorCallFailed, match="ConnectError"):
        _http_gateway(transport_error).send(_recipient(), "Hello")


def test_get_vendor_gateway_resolves_registry():
    config = Settings(vendor_random_seed=3, vendor_success_rate=0.25)
    gateway = get_vendor_gateway("simulated", config=config)
    assert isinstance(gateway, SimulatedVendorGateway)
    assert gateway.success_rate == 0.25

    http_gateway = get_vendor_gateway("HTTP", config=Settings(vendor_api_url="https://vendor.test/send"))
    assert isinstance(http_gateway, HttpVendorGateway)
    http_gateway.close()

    with pytest.raises(ValueError, match="Available: http, simulated"):
        get_vendor_gateway("carrier-pigeon", config=config)
    with pytest.raises(ValueError, match="VENDOR_API_URL"):
        get_vendor_gateway("http", config=Settings(vendor_api_url=None))
