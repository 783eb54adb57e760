import json
import logging
import threading
import traceback
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime

from app.core.clock import Clock, ensure_utc, utc_now
from app.core.errors import DoubleDispatchRejected
from app.models.campaign import CampaignStatus
from app.services.campaign_lifecycle import CampaignLifecycle
from app.services.campaign_store import CampaignRecord, CampaignStore

logger = logging.getLogger("campaigns.scheduler")

_DISPATCHED = "dispatched"
_SKIPPED = "skipped"
_FAILED = "failed"


@dataclass(frozen=True)
class TickResult:
    due: int
    dispatched: int
    skipped: int
    failed: int

    def to_dict(self) -> dict[str, int]:
        return {
            "due": self.due,
            "dispatched": self.dispatched,
            "skipped": self.skipped,
            "failed": self.failed,
        }


class SchedulerLoop:
    """Promotes due SCHEDULED campaigns on a fixed interval.

    A single daemon thread owns the loop. It sleeps on a trigger event with the
    interval as timeout, so ``trigger()`` runs a tick early and ``stop()`` wakes
    it for shutdown.
    """

    def __init__(
        self,
        store: CampaignStore,
        lifecycle: CampaignLifecycle,
        *,
        interval_seconds: float = 60.0,
        max_concurrent: int = 4,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.lifecycle = lifecycle
        self.interval_seconds = interval_seconds
        self.max_concurrent = max(1, max_concurrent)
        self.clock = clock
        self._trigger = threading.Event()
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def tick(self, now: datetime | None = None) -> TickResult:
        now = ensure_utc(now) if now is not None else self.clock()
        due = self.store.find_campaigns_due(now)
        if not due:
            return TickResult(due=0, dispatched=0, skipped=0, failed=0)

        workers = min(self.max_concurrent, len(due))
        if workers == 1:
            outcomes = [self._dispatch(campaign) for campaign in due]
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="campaign-dispatch") as pool:
                outcomes = list(pool.map(self._dispatch, due))

        result = TickResult(
            due=len(due),
            dispatched=outcomes.count(_DISPATCHED),
            skipped=outcomes.count(_SKIPPED),
            failed=outcomes.count(_FAILED),
        )
        logger.info(json.dumps({"event": "scheduler_tick", "now": now.isoformat(), **result.to_dict()}))
        return result

    def _dispatch(self, campaign: CampaignRecord) -> str:
        try:
            record = self.lifecycle.dispatch_scheduled(campaign.id)
        except DoubleDispatchRejected:
            logger.info(json.dumps({"event": "scheduler_claim_lost", "campaign_id": campaign.id}))
            return _SKIPPED
        except Exception as exc:  # noqa: BLE001
            logger.error(
                json.dumps(
                    {
                        "event": "scheduler_dispatch_failed",
                        "campaign_id": campaign.id,
                        "error": str(exc),
                        "traceback": traceback.format_exc(limit=10),
                    }
                )
            )
            return _FAILED
        return _FAILED if record.status == CampaignStatus.FAILED else _DISPATCHED

    def start(self) -> None:
        if self.is_running:
            return
        self._stopping.clear()
        self._trigger.clear()
        self._thread = threading.Thread(target=self._run, name="campaign-scheduler", daemon=True)
        self._thread.start()
        logger.info(json.dumps({"event": "scheduler_started", "interval_seconds": self.interval_seconds}))

    def stop(self, timeout: float = 10.0) -> None:
        self._stopping.set()
        self._trigger.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info(json.dumps({"event": "scheduler_stopped"}))

    def trigger(self) -> None:
        self._trigger.set()

    def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                self.tick()
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    json.dumps(
                        {
                            "event": "scheduler_tick_failed",
                            "error": str(exc),
                            "traceback": traceback.format_exc(limit=10),
                        }
                    )
                )
            self._trigger.wait(self.interval_seconds)
            self._trigger.clear()
