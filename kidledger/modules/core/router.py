import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from kidledger.core.migrations import CurrentRevision, HeadRevision
from kidledger.db import GetDb

router = APIRouter(prefix="/api", tags=["health"])
logger = logging.getLogger("ledger.health")


@router.get("/health")
async def api_health() -> dict:
    return {"status": "ok"}


@router.get("/health/db")
def api_health_db(db: Session = Depends(GetDb)) -> dict:
    """Database reachability plus the schema revision it is on."""
    try:
        db.execute(text("SELECT 1")).scalar()
        revision = CurrentRevision(db.connection())
    except SQLAlchemyError:
        logger.exception("ledger database check failed")
        return {"status": "error", "detail": "database unavailable"}
    head = HeadRevision()
    return {
        "status": "ok" if revision == head else "outdated",
        "revision": revision,
        "head": head,
    }
