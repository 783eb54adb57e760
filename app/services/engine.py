import random
from dataclasses import dataclass

from sqlalchemy.orm import sessionmaker

from app.core.clock import Clock, utc_now
from app.core.config import Settings, settings
from app.services.audience_resolver import AudienceResolver
from app.services.campaign_lifecycle import CampaignLifecycle
from app.services.campaign_store import CampaignStore, SqlAlchemyCampaignStore
from app.services.delivery_pipeline import DeliveryPipeline
from app.services.progress import ProgressProjector
from app.services.receipt_reconciler import ReceiptReconciler
from app.services.scheduler import SchedulerLoop
from app.services.text_generation import TextGenerator, get_text_generator
from app.services.vendor_gateway import VendorGateway, get_vendor_gateway


@dataclass
class CampaignEngine:
    store: CampaignStore
    resolver: AudienceResolver
    gateway: VendorGateway
    pipeline: DeliveryPipeline
    lifecycle: CampaignLifecycle
    reconciler: ReceiptReconciler
    scheduler: SchedulerLoop
    progress: ProgressProjector
    text_generator: TextGenerator
    progress_poll_seconds: float = 5.0


def build_engine(
    session_factory: sessionmaker,
    config: Settings | None = None,
    *,
    gateway: VendorGateway | None = None,
    text_generator: TextGenerator | None = None,
    rng: random.Random | None = None,
    clock: Clock = utc_now,
) -> CampaignEngine:
    config = config or settings
    store = SqlAlchemyCampaignStore(session_factory)
    resolver = AudienceResolver(store, clock=clock)
    gateway = gateway or get_vendor_gateway(config=config, rng=rng)
    text_generator = text_generator or get_text_generator(config)
    pipeline = DeliveryPipeline(
        store,
        resolver,
        gateway,
        batch_size=config.dispatch_batch_size,
        max_workers=config.dispatch_max_workers,
        clock=clock,
    )
    lifecycle = CampaignLifecycle(store, resolver, pipeline, text_generator, clock=clock)
    return CampaignEngine(
        store=store,
        resolver=resolver,
        gateway=gateway,
        pipeline=pipeline,
        lifecycle=lifecycle,
        reconciler=ReceiptReconciler(store),
        scheduler=SchedulerLoop(
            store,
            lifecycle,
            interval_seconds=config.scheduler_interval_seconds,
            max_concurrent=config.scheduler_max_concurrent_campaigns,
            clock=clock,
        ),
        progress=ProgressProjector(store, clock=clock),
        text_generator=text_generator,
        progress_poll_seconds=config.progress_poll_seconds,
    )
