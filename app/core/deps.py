from collections.abc import Generator

from fastapi import Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.db.session import SessionLocal
from app.services.engine import CampaignEngine


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_engine(request: Request) -> CampaignEngine:
    engine = getattr(request.app.state, "campaign_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Campaign engine is not running")
    return engine


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    # Identity is asserted by the fronting auth layer; this service only scopes by it.
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header is required",
        )
    return user_id[:64]
