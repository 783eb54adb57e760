import json
import logging
import random
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

import httpx

from app.core.clock import Clock, utc_now
from app.core.config import Settings, settings
from app.core.errors import VendorCallFailed
from app.core.id_utils import generate_correlation_id
from app.services.campaign_store import CustomerRecord

logger = logging.getLogger("campaigns.engine")

SIMULATED_FAILURE_REASON = "Simulated delivery failure"


@dataclass(frozen=True)
class DeliveryOutcome:
    accepted: bool
    correlation_id: str | None
    error_reason: str | None = None


@dataclass(frozen=True)
class SendRequest:
    key: str
    recipient: CustomerRecord
    message: str


@dataclass(frozen=True)
class SendAttempt:
    request: SendRequest
    outcome: DeliveryOutcome | None
    error: Exception | None = None
    attempted_at: datetime | None = None


class VendorGateway(Protocol):
    name: str

    def send(self, recipient: CustomerRecord, rendered_message: str) -> DeliveryOutcome:
        ...


class SimulatedVendorGateway:
    """Accepts each send with probability ``success_rate``.

    The random source is injected so runs can be replayed with a seed; draws are
    serialized because the gateway is called from a worker pool.
    """

    name = "simulated"

    def __init__(self, *, success_rate: float = 0.9, rng: random.Random | None = None):
        if not 0.0 <= success_rate <= 1.0:
            raise ValueError("success_rate must be between 0 and 1")
        self.success_rate = success_rate
        self._rng = rng or random.Random()
        self._lock = threading.Lock()

    def send(self, recipient: CustomerRecord, rendered_message: str) -> DeliveryOutcome:
        with self._lock:
            draw = self._rng.random()
        correlation_id = generate_correlation_id()
        if draw < self.success_rate:
            return DeliveryOutcome(accepted=True, correlation_id=correlation_id)
        return DeliveryOutcome(
            accepted=False,
            correlation_id=correlation_id,
            error_reason=SIMULATED_FAILURE_REASON,
        )


class HttpVendorGateway:
    name = "http"

    def __init__(self, *, base_url: str, timeout: float = 10.0, client: httpx.Client | None = None):
        if not base_url:
            raise ValueError("base_url is required for the http vendor gateway")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    @property
    def headers(self) -> dict:
        return {"Content-Type": "application/json"}

    def send(self, recipient: CustomerRecord, rendered_message: str) -> DeliveryOutcome:
        payload = {
            "recipientId": recipient.id,
            "email": recipient.email,
            "phone": recipient.phone,
            "message": rendered_message,
        }
        try:
            response = self._client.post(self.base_url, json=payload, headers=self.headers)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            raise VendorCallFailed(f"Vendor responded with HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise VendorCallFailed(f"Vendor request failed: {exc.__class__.__name__}") from exc
        except ValueError as exc:
            raise VendorCallFailed("Vendor response was not valid JSON") from exc

        if not isinstance(body, dict):
            raise VendorCallFailed("Vendor response was not a JSON object")
        correlation_id = body.get("messageId") or None
        status = str(body.get("status") or "SENT").strip().upper()
        if status == "FAILED":
            return DeliveryOutcome(
                accepted=False,
                correlation_id=correlation_id,
                error_reason=str(body.get("error") or "Vendor rejected message")[:255],
            )
        return DeliveryOutcome(accepted=True, correlation_id=correlation_id)

    def close(self) -> None:
        self._client.close()


def send_batch(
    gateway: VendorGateway,
    requests: Sequence[SendRequest],
    *,
    max_workers: int,
    clock: Clock = utc_now,
) -> list[SendAttempt]:
    """Send every request concurrently and join before returning.

    Results keep the input order. A call that raises is captured on its own
    attempt instead of aborting the batch. Each attempt is stamped when its
    own vendor call returns.
    """
    if not requests:
        return []
    workers = max(1, min(max_workers, len(requests)))

    def _send(request: SendRequest) -> SendAttempt:
        try:
            outcome = gateway.send(request.recipient, request.message)
        except Exception as exc:  # noqa: BLE001
            return SendAttempt(request=request, outcome=None, error=exc, attempted_at=clock())
        return SendAttempt(request=request, outcome=outcome, attempted_at=clock())

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="vendor-send") as pool:
        return list(pool.map(_send, requests))


def _build_simulated(config: Settings, rng: random.Random | None) -> VendorGateway:
    if rng is None and config.vendor_random_seed is not None:
        rng = random.Random(config.vendor_random_seed)
    return SimulatedVendorGateway(success_rate=config.vendor_success_rate, rng=rng)


def _build_http(config: Settings, rng: random.Random | None) -> VendorGateway:
    if not config.vendor_api_url:
        raise ValueError("VENDOR_API_URL is required when the http vendor gateway is selected")
    return HttpVendorGateway(base_url=config.vendor_api_url, timeout=config.vendor_timeout_seconds)


_VENDOR_GATEWAYS: dict[str, Callable[[Settings, random.Random | None], VendorGateway]] = {
    "simulated": _build_simulated,
    "http": _build_http,
}


def get_vendor_gateway(
    name: str | None = None,
    *,
    config: Settings | None = None,
    rng: random.Random | None = None,
) -> VendorGateway:
    config = config or settings
    normalized = (name or config.vendor_provider_default or "").strip().lower()
    factory = _VENDOR_GATEWAYS.get(normalized)
    if not factory:
        available = ", ".join(sorted(_VENDOR_GATEWAYS))
        raise ValueError(f"Unknown vendor gateway '{name}'. Available: {available}")
    gateway = factory(config, rng)
    logger.info(json.dumps({"event": "vendor_gateway_selected", "gateway": gateway.name}))
    return gateway
