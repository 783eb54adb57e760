import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app.core.api_docs import error_responses
from app.core.clock import ensure_utc, utc_now
from app.core.deps import get_current_user_id, get_db
from app.core.id_utils import generate_shortuuid
from app.core.money import ZERO_MONEY, add_spend, to_money
from app.models.customer import Customer
from app.models.order import Order
from app.schemas.common import page_meta
from app.schemas.customer import CustomerListOut, CustomerOut, CustomerUpsertIn, OrderCreateIn, OrderOut

router = APIRouter(prefix="/customers", tags=["customers"])
logger = logging.getLogger("campaigns.api")


def _customer_out(customer: Customer) -> CustomerOut:
    return CustomerOut(
        id=customer.id,
        external_id=customer.external_id,
        name=customer.name,
        email=customer.email,
        phone=customer.phone,
        total_spend=float(customer.total_spend or 0),
        visit_count=customer.visit_count or 0,
        last_purchase_at=ensure_utc(customer.last_purchase_at),
        created_at=ensure_utc(customer.created_at),
        updated_at=ensure_utc(customer.updated_at),
    )


@router.post(
    "",
    response_model=CustomerOut,
    summary="Ingest or update a customer",
    responses=error_responses(400, 422, 500),
)
def upsert_customer(payload: CustomerUpsertIn, db: Session = Depends(get_db)):
    customer = db.execute(
        select(Customer).where(Customer.external_id == payload.external_id)
    ).scalar_one_or_none()
    created = customer is None
    if customer is None:
        customer = Customer(
            id=generate_shortuuid(),
            external_id=payload.external_id,
            name=payload.name,
            total_spend=ZERO_MONEY,
            visit_count=0,
        )
        db.add(customer)

    customer.name = payload.name
    customer.email = str(payload.email) if payload.email else None
    customer.phone = payload.phone
    if payload.total_spend is not None:
        customer.total_spend = to_money(payload.total_spend)
    if payload.visit_count is not None:
        customer.visit_count = payload.visit_count
    if payload.last_purchase_at is not None:
        customer.last_purchase_at = ensure_utc(payload.last_purchase_at)

    db.commit()
    db.refresh(customer)
    logger.info(
        json.dumps(
            {
                "event": "customer_created" if created else "customer_updated",
                "customer_id": customer.id,
                "external_id": customer.external_id,
            }
        )
    )
    return _customer_out(customer)


@router.get(
    "",
    response_model=CustomerListOut,
    summary="List customers",
    responses=error_responses(401, 422, 500),
)
def list_customers(
    q: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    count_stmt = select(func.count(Customer.id))
    stmt = select(Customer)
    if q and q.strip():
        pattern = f"%{q.strip().lower()}%"
        condition = or_(
            func.lower(Customer.name).like(pattern),
            func.lower(Customer.email).like(pattern),
            Customer.phone.like(pattern),
            Customer.external_id.like(pattern),
        )
        count_stmt = count_stmt.where(condition)
        stmt = stmt.where(condition)

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        stmt.order_by(Customer.created_at.desc(), Customer.id.desc()).offset(offset).limit(limit)
    ).scalars().all()
    count = len(rows)
    return CustomerListOut(
        items=[_customer_out(row) for row in rows],
        pagination=page_meta(total=total, limit=limit, offset=offset, count=count),
    )


@router.post(
    "/orders",
    response_model=OrderOut,
    summary="Ingest an order and roll it into customer spend",
    responses=error_responses(400, 404, 409, 422, 500),
)
def ingest_order(payload: OrderCreateIn, db: Session = Depends(get_db)):
    customer = db.execute(
        select(Customer).where(Customer.external_id == payload.customer_external_id)
    ).scalar_one_or_none()
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")

    existing = db.execute(
        select(Order.id).where(Order.external_id == payload.external_id)
    ).scalar_one_or_none()
    if existing:
        raise HTTPException(status_code=409, detail="Order already ingested")

    amount = to_money(payload.amount)
    ordered_at = ensure_utc(payload.ordered_at) if payload.ordered_at else utc_now()
    order = Order(
        id=generate_shortuuid(),
        external_id=payload.external_id,
        customer_id=customer.id,
        amount=amount,
        status=payload.status.strip().lower(),
        ordered_at=ordered_at,
    )
    db.add(order)

    customer.total_spend = add_spend(customer.total_spend, amount)
    customer.visit_count = (customer.visit_count or 0) + 1
    last_purchase_at = ensure_utc(customer.last_purchase_at)
    if last_purchase_at is None or ordered_at > last_purchase_at:
        customer.last_purchase_at = ordered_at

    db.commit()
    db.refresh(order)
    db.refresh(customer)
    logger.info(
        json.dumps(
            {
                "event": "order_ingested",
                "order_id": order.id,
                "customer_id": customer.id,
                "amount": str(amount),
            }
        )
    )
    return OrderOut(
        id=order.id,
        external_id=order.external_id,
        customer_id=order.customer_id,
        amount=float(order.amount),
        status=order.status,
        ordered_at=ensure_utc(order.ordered_at),
        customer=_customer_out(customer),
    )
