"""Workshop settings router: timezone, opening hours, holidays, base AW."""
from fastapi import APIRouter, Depends

from ..dependencies import get_db, get_current_session, request_payload, _logger

router = APIRouter()


@router.get("/api/settings", tags=["Settings"], summary="Get settings", description="Public. Returns the stored settings or the defaults (is_default=true).")
def get_settings():
    settings = get_db().get_settings()
    is_default = settings.pop('is_default')
    return {"ok": True, "settings": settings, "is_default": is_default}


@router.put("/api/settings", tags=["Settings"], summary="Save settings", description="Upsert timezone, opening hours and optionally base_aw_per_day. Requires MASTER role.")
def put_settings(payload: dict = Depends(request_payload), session: dict = Depends(get_current_session)):
    settings = get_db().put_settings(payload)
    settings.pop('is_default', None)
    _logger.warning(
        "AUDIT SETTINGS_UPDATE | by=%s timezone=%s base_aw_per_day=%s",
        session.get('email', '?') if session else '?', settings['timezone'], settings['base_aw_per_day'],
    )
    return {"ok": True, "settings": settings}
