import os
import random
from datetime import datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["SCHEDULER_ENABLED"] = "false"

import app.models  # noqa: F401
from app.core.config import settings
from app.core.deps import get_db
from app.db.base import Base
from app.main import app
from app.models.campaign import Segment
from app.models.customer import Customer
from app.services.engine import build_engine
from app.services.vendor_gateway import SimulatedVendorGateway

OWNER = "operator-1"


@pytest.fixture()
def session_local(tmp_path):
    # File-backed so worker threads each get their own connection.
    engine = create_engine(
        f"sqlite:///{tmp_path / 'campaigns.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def campaign_engine(session_local):
    return build_engine(
        session_local,
        settings,
        gateway=SimulatedVendorGateway(success_rate=0.9, rng=random.Random(7)),
    )


@pytest.fixture()
def test_context(session_local, campaign_engine):
    def override_get_db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.campaign_engine = campaign_engine

    with TestClient(app) as client:
        yield client, session_local

    app.dependency_overrides.clear()
    app.state.campaign_engine = None


@pytest.fixture()
def add_customer(session_local):
    def _add(
        customer_id: str,
        *,
        total_spend: str | int = 0,
        visit_count: int = 0,
        last_purchase_at: datetime | None = None,
        name: str | None = None,
        email: str | None = None,
    ) -> None:
        with session_local() as db:
            db.add(
                Customer(
                    id=customer_id,
                    external_id=f"ext-{customer_id}",
                    name=name or f"Customer {customer_id}",
                    email=email,
                    total_spend=Decimal(str(total_spend)),
                    visit_count=visit_count,
                    last_purchase_at=last_purchase_at,
                )
            )
            db.commit()

    return _add


@pytest.fixture()
def add_segment(session_local):
    def _add(segment_id: str, rules: dict, *, owner_user_id: str = OWNER) -> None:
        with session_local() as db:
            db.add(
                Segment(
                    id=segment_id,
                    owner_user_id=owner_user_id,
                    name=f"Segment {segment_id}",
                    rules_json=rules,
                    audience_size=0,
                )
            )
            db.commit()

    return _add
