import datetime
from typing import Literal, Union

from django.http import HttpRequest
from ninja import NinjaAPI, Swagger
from ninja.security import django_auth

from .exceptions import PermissionDenied, TrackingError
from .models import RecordStatus
from .schemas import (
    AssignEmployeesSchema, AssignmentResponseSchema, AttendanceSchema, AttendanceUpdateSchema,
    EmployeeCreateSchema, EmployeeDetailSchema, EmployeeSchema, EmployeeUpdateSchema,
    ManpowerStatsSchema, MessageSchema, MonthlyAttendanceSchema, PurgeResultSchema,
    RecordCreateSchema, RecordEmployeeSchema, RecordSchema, RecordUpdateSchema, RosterEntrySchema
)
from .services import AttendanceService, EmployeeService, ManpowerService, RecordService

api = NinjaAPI(
    title="Production Tracker",
    docs=Swagger(settings={"persistAuthorization": True}),
    auth=django_auth,
)


@api.exception_handler(TrackingError)
def tracking_error(request: HttpRequest, exc: TrackingError):
    return api.create_response(request, {"error": exc.message}, status=exc.status_code)


def require_admin(request: HttpRequest) -> None:
    if not request.user.is_staff:
        raise PermissionDenied("Admin access required")


# Records

@api.get("/records", response=list[RecordSchema])
def list_records(request: HttpRequest, status: RecordStatus | None = None):
    """Live records, PENDING first, then most recently updated."""
    return RecordService.list_records(status)


@api.post("/records", response={201: RecordSchema})
def create_record(request: HttpRequest, payload: RecordCreateSchema):
    """Create a PENDING record; `employee_ids` are assigned under its date and shift."""
    return 201, RecordService.create_record(payload.model_dump())


@api.get("/records/{record_id}", response=RecordSchema)
def get_record(request: HttpRequest, record_id: int):
    return RecordService.get_record(record_id)


@api.patch("/records/{record_id}", response=RecordSchema)
def update_record(request: HttpRequest, record_id: int, payload: RecordUpdateSchema):
    """
    Save, submit or cancel a record.

    - save: update the fields sent
    - submit: PENDING -> COMPLETED, sets the monthly vehicle count and hours
    - cancel: COMPLETED -> PENDING, removes the record's employees
    """
    return RecordService.update_record(record_id, payload.model_dump(exclude_unset=True))


@api.delete("/records/{record_id}", response=MessageSchema)
def delete_record(request: HttpRequest, record_id: int):
    """Move a record to the recycle bin."""
    RecordService.soft_delete(record_id)
    return {"message": "Record deleted successfully"}


@api.get("/records/{record_id}/employees", response=list[RecordEmployeeSchema])
def get_record_employees(request: HttpRequest, record_id: int):
    return RecordService.record_employees(record_id)


@api.put("/records/{record_id}/employees", response=AssignmentResponseSchema)
def assign_record_employees(request: HttpRequest, record_id: int, payload: AssignEmployeesSchema):
    """
    Replace the employees working on a record.

    Split counts are reconciled across the record's whole date and shift, so
    other records of that shift can change too; all of them are returned in
    `affected_records`.
    """
    record, affected = RecordService.assign_employees(record_id, payload.employee_ids)
    return {"record": record, "affected_records": affected}


# Recycle bin (admin)

@api.get("/recycle-bin", response=list[RecordSchema])
def list_deleted_records(request: HttpRequest):
    require_admin(request)
    return RecordService.list_deleted()


@api.delete("/recycle-bin", response=PurgeResultSchema)
def purge_expired_records(request: HttpRequest):
    """Permanently delete records that have been in the bin past the retention window."""
    require_admin(request)
    return {"deleted_count": RecordService.purge_expired()}


@api.post("/recycle-bin/{record_id}/restore", response=RecordSchema)
def restore_record(request: HttpRequest, record_id: int):
    require_admin(request)
    return RecordService.restore(record_id)


@api.delete("/recycle-bin/{record_id}", response=MessageSchema)
def purge_record(request: HttpRequest, record_id: int):
    require_admin(request)
    RecordService.purge(record_id)
    return {"message": "Record permanently deleted"}


# Employees

@api.get("/employees", response=list[EmployeeSchema])
def list_employees(request: HttpRequest, search: str | None = None):
    return EmployeeService.list_employees(search)


@api.post("/employees", response={201: EmployeeSchema})
def create_employee(request: HttpRequest, payload: EmployeeCreateSchema):
    return 201, EmployeeService.create_employee(payload.name, payload.role, payload.is_active)


@api.get("/employees/{employee_id}", response=EmployeeDetailSchema)
def get_employee(request: HttpRequest, employee_id: int, month: str | None = None):
    """Employee with attendance stats for `month` (YYYY-MM)."""
    return EmployeeService.get_employee_detail(employee_id, month)


@api.patch("/employees/{employee_id}", response=EmployeeSchema)
def update_employee(request: HttpRequest, employee_id: int, payload: EmployeeUpdateSchema):
    return EmployeeService.update_employee(employee_id, payload.model_dump(exclude_unset=True))


# Attendance

@api.get("/employees/{employee_id}/attendance", response=MonthlyAttendanceSchema)
def get_employee_attendance(request: HttpRequest, employee_id: int, month: str):
    return AttendanceService.monthly_attendance(employee_id, month)


@api.patch("/employees/{employee_id}/attendance", response=Union[AttendanceSchema, MessageSchema])
def update_employee_attendance(request: HttpRequest, employee_id: int, payload: AttendanceUpdateSchema):
    """Add or remove a Day/Night mark; only within 72 hours of the date."""
    attendance = AttendanceService.update_attendance(
        employee_id, payload.date, payload.shift, payload.action
    )
    if attendance is None:
        return {"message": "Attendance removed"}
    return attendance


@api.get("/attendance", response=list[RosterEntrySchema])
def get_shift_roster(request: HttpRequest, date: datetime.date, shift: str):
    return AttendanceService.shift_roster(date, shift)


# Manpower

@api.get("/manpower", response=ManpowerStatsSchema)
def get_manpower_stats(request: HttpRequest,
                       filter: Literal['total', 'today', 'yesterday', 'range'] = 'today',
                       from_date: datetime.date | None = None,
                       to_date: datetime.date | None = None) -> ManpowerStatsSchema:
    """
    Headcount of employees who worked on records in the window.

    - total: every employee in the directory (unless a date range is given)
    - today / yesterday: local calendar day
    - range: `from_date` .. `to_date`, either side optional
    """
    return ManpowerService.stats(filter, from_date, to_date)
