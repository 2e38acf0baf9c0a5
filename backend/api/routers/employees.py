"""Employees and capacity router."""
from fastapi import APIRouter, Depends, Query

from aplib.errors import NotFoundError
from ..dependencies import get_db, get_current_session, request_payload, require_id, _logger

router = APIRouter()


def _who(session) -> str:
    return session.get('email', '?') if session else '?'


@router.get("/api/employees", tags=["Employees"], summary="List employees", description="Return all employees ordered by name.")
def get_employees():
    return {"ok": True, "employees": get_db().get_employees()}


@router.post("/api/employees", tags=["Employees"], summary="Create employee", status_code=201, description="Create a new employee. Requires MASTER role.")
def create_employee(payload: dict = Depends(request_payload), session: dict = Depends(get_current_session)):
    employee = get_db().create_employee(payload)
    _logger.warning(
        "AUDIT EMPLOYEE_CREATE | by=%s id=%s category=%s performance=%s",
        _who(session), employee['id'], employee['category'], employee['performance'],
    )
    return {"ok": True, "employee": employee}


@router.patch("/api/employees", tags=["Employees"], summary="Update employee", description="Partial update; body carries the id. Requires MASTER role.")
def update_employee(payload: dict = Depends(request_payload), session: dict = Depends(get_current_session)):
    data = dict(payload)
    emp_id = require_id(data.pop('id', None))
    employee = get_db().update_employee(emp_id, data)
    _logger.warning(
        "AUDIT EMPLOYEE_UPDATE | by=%s id=%s fields=%s", _who(session), emp_id, sorted(data.keys())
    )
    return {"ok": True, "employee": employee}


@router.delete("/api/employees", tags=["Employees"], summary="Delete employee", description="Requires MASTER role.")
def delete_employee(id: str = Query(''), session: dict = Depends(get_current_session)):
    emp_id = require_id(id)
    if not get_db().delete_employee(emp_id):
        raise NotFoundError(f"Mitarbeiter ID {emp_id} nicht gefunden")
    _logger.warning("AUDIT EMPLOYEE_DELETE | by=%s id=%s", _who(session), emp_id)
    return {"ok": True, "id": emp_id}


@router.get("/api/capacity", tags=["Capacity"], summary="Daily capacity per category", description="AW (and nominal minutes) per category for one working day, from the current roster.")
def get_capacity():
    return {"ok": True, **get_db().capacity_per_category()}
