import datetime
from decimal import Decimal
from typing import Literal

from ninja import Schema

from .models import AttendanceShift, Role, Shift


class EmployeeRefSchema(Schema):
    """Employee as embedded in records and rosters."""
    id: int
    employee_code: str
    name: str
    role: str


class AssignmentSchema(Schema):
    employee: EmployeeRefSchema
    split_count: float


class RecordSchema(Schema):
    """Production record with its employee assignments."""
    id: int
    serial_no: str | None
    status: str
    supervisor: str
    shift: str
    date: datetime.date | None
    in_time: datetime.datetime | None
    out_time: datetime.datetime | None
    bin_no: str
    model_no: str
    chassis_no: str
    vehicle_type: str
    electrician: float
    fitter: float
    painter: float
    helper: float
    production_incharge: str
    remarks: str | None
    sr_no_vehicle_count: int | None
    hours: float | None
    completed_at: datetime.datetime | None
    deleted_at: datetime.datetime | None
    created_at: datetime.datetime
    updated_at: datetime.datetime
    assignments: list[AssignmentSchema]

    @staticmethod
    def resolve_assignments(obj):
        return obj.assignments.all()


class RecordCreateSchema(Schema):
    supervisor: str
    shift: Shift
    bin_no: str
    model_no: str
    chassis_no: str
    vehicle_type: str
    date: datetime.date | None = None
    in_time: datetime.datetime | None = None
    out_time: datetime.datetime | None = None
    production_incharge: str = ""
    remarks: str | None = None
    employee_ids: list[int] | None = None


class RecordUpdateSchema(Schema):
    """Partial update; `action` selects save, submit or cancel."""
    action: Literal['save', 'submit', 'cancel'] = 'save'
    supervisor: str | None = None
    shift: Shift | None = None
    date: datetime.date | None = None
    in_time: datetime.datetime | None = None
    out_time: datetime.datetime | None = None
    bin_no: str | None = None
    model_no: str | None = None
    chassis_no: str | None = None
    vehicle_type: str | None = None
    production_incharge: str | None = None
    remarks: str | None = None
    employee_ids: list[int] | None = None


class AssignEmployeesSchema(Schema):
    employee_ids: list[int]


class AssignmentResponseSchema(Schema):
    """Edited record plus every record of its scope the reconciliation rewrote."""
    record: RecordSchema
    affected_records: list[RecordSchema]


class RecordEmployeeSchema(Schema):
    id: int
    employee_code: str
    name: str
    role: str
    split_count: float


class ScopeProjection(Schema):
    """Target split counts by assignment id and rounded role counts by record id."""
    split_counts: dict[int, float]
    role_counts: dict[int, dict[str, Decimal]]


class ReconciliationSchema(Schema):
    date: datetime.date
    shift: str
    record_ids: list[int]
    employee_count: int


class PurgeResultSchema(Schema):
    deleted_count: int


class MessageSchema(Schema):
    message: str


class EmployeeCreateSchema(Schema):
    name: str
    role: Role
    is_active: bool = True


class EmployeeUpdateSchema(Schema):
    name: str | None = None
    role: Role | None = None
    is_active: bool | None = None


class EmployeeSchema(Schema):
    id: int
    employee_code: str
    name: str
    role: str
    is_active: bool
    created_at: datetime.datetime
    updated_at: datetime.datetime


class AttendanceStatsSchema(Schema):
    present: int
    working_days: int


class EmployeeDetailSchema(EmployeeSchema):
    attendance_stats: AttendanceStatsSchema


class AttendanceDaySchema(Schema):
    day: bool = False
    night: bool = False


class AttendanceSummarySchema(Schema):
    present: int
    absent: int
    working_days: int


class MonthlyAttendanceSchema(Schema):
    month: str
    attendance: dict[str, AttendanceDaySchema]  # key is ISO date
    summary: AttendanceSummarySchema


class AttendanceUpdateSchema(Schema):
    date: datetime.date
    shift: AttendanceShift
    action: Literal['add', 'remove']


class AttendanceSchema(Schema):
    id: int
    employee_id: int
    date: datetime.date
    shift: str


class VehicleEntrySchema(Schema):
    record_id: int
    bin_no: str
    model_no: str
    chassis_no: str
    sr_no_vehicle_count: int | None
    split_count: float


class RosterEntrySchema(Schema):
    """Attendance row for a shift with the vehicles the employee worked on."""
    id: int
    date: datetime.date
    shift: str
    employee: EmployeeRefSchema
    vehicle_entries: list[VehicleEntrySchema]


class ManpowerStatsSchema(Schema):
    total: int
    onrole: int
    electrician: int
    fitter: int
    painter: int
    helper: int
    gini_coefficient: float
