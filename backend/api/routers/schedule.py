"""Day entries, availability and week view router."""
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, Query

from aplib.errors import NotFoundError
from ..dependencies import (
    get_db, get_current_session, current_user_id, request_payload, require_id, _logger,
)

router = APIRouter()


def _who(session) -> str:
    return session.get('email', '?') if session else '?'


@router.get("/api/day-entries", tags=["Day entries"], summary="List day entries", description="Entries with work_day in [from, to] inclusive. Without both bounds: the latest 200 entries.")
def get_day_entries(
    date_from: Optional[str] = Query(None, alias='from'),
    date_to: Optional[str] = Query(None, alias='to'),
):
    return {"ok": True, "entries": get_db().get_entries(date_from, date_to)}


@router.get("/api/day-entries/remaining", tags=["Day entries"], summary="Remaining AW of one bucket")
def get_remaining(work_day: str = Query(''), category: str = Query('')):
    return {"ok": True, "work_day": work_day, "category": category, **get_db().remaining(work_day, category)}


@router.post("/api/day-entries", tags=["Day entries"], summary="Book day entry", status_code=201, description="Rejected with INSUFFICIENT_CAPACITY when aw exceeds the free AW of its day and category.")
def create_day_entry(
    payload: dict = Depends(request_payload),
    session: dict = Depends(get_current_session),
    user_id: Optional[str] = Depends(current_user_id),
):
    entry = get_db().create_entry(payload, created_by=user_id)
    _logger.warning(
        "AUDIT ENTRY_CREATE | by=%s id=%s day=%s category=%s aw=%d",
        _who(session), entry['id'], entry['work_day'], entry['category'], entry['aw'],
    )
    return {"ok": True, "entry": entry}


@router.patch("/api/day-entries", tags=["Day entries"], summary="Update day entry")
def update_day_entry(payload: dict = Depends(request_payload), session: dict = Depends(get_current_session)):
    data = dict(payload)
    entry_id = require_id(data.pop('id', None))
    data.pop('created_by', None)
    entry = get_db().update_entry(entry_id, data)
    _logger.warning(
        "AUDIT ENTRY_UPDATE | by=%s id=%s fields=%s", _who(session), entry_id, sorted(data.keys())
    )
    return {"ok": True, "entry": entry}


@router.delete("/api/day-entries", tags=["Day entries"], summary="Delete day entry")
def delete_day_entry(id: str = Query(''), session: dict = Depends(get_current_session)):
    entry_id = require_id(id)
    if not get_db().delete_entry(entry_id):
        raise NotFoundError(f"Eintrag ID {entry_id} nicht gefunden")
    _logger.warning("AUDIT ENTRY_DELETE | by=%s id=%s", _who(session), entry_id)
    return {"ok": True, "id": entry_id}


@router.get("/api/availability", tags=["Schedule"], summary="Daily availability", description="Capacity, used, free and signed delta per day and category (max. 62 days).")
def get_availability(
    date_from: Optional[str] = Query(None, alias='from'),
    date_to: Optional[str] = Query(None, alias='to'),
):
    return {"ok": True, "days": get_db().daily_availability(date_from, date_to)}


@router.get("/api/week", tags=["Schedule"], summary="Week view", description="Monday to Sunday around the given date with availability and entries per day.")
def get_week(date: Optional[str] = Query(None)):
    db = get_db()
    if not date:
        # today in the workshop timezone
        tz = ZoneInfo(db.get_settings()['timezone'])
        date = datetime.now(tz).date().isoformat()
    return {"ok": True, **db.get_week(date)}
