import calendar
import logging
import re
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Any

import numpy as np
from django.conf import settings
from django.db import transaction
from django.db.models import Case, IntegerField, Max, Q, Sum, Value, When
from django.utils import timezone
from inequality import gini  # type: ignore

from .exceptions import (
    AttendanceLocked, DuplicateEmployee, InvalidEmployee, InvalidRecordState, InvalidScope, NotFound
)
from .models import (
    RECORD_SHIFTS, ROLE_CODES, AttendanceShift, Employee, EmployeeAssignment, EmployeeAttendance,
    ProductionRecord, RecordStatus, Role
)
from .reconciliation import AssignmentOrchestrator, Scope
from .schemas import (
    AttendanceDaySchema, AttendanceSummarySchema, EmployeeRefSchema, ManpowerStatsSchema,
    MonthlyAttendanceSchema, RosterEntrySchema, VehicleEntrySchema
)

logger = logging.getLogger(__name__)

MONTH_ABBR = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
EMPLOYEE_CODE_RE = re.compile(r"DLPL/[A-Z]+/(\d+)")

REQUIRED_RECORD_FIELDS = ("supervisor", "shift", "bin_no", "model_no", "chassis_no", "vehicle_type")
EDITABLE_RECORD_FIELDS = REQUIRED_RECORD_FIELDS + (
    "date", "in_time", "out_time", "production_incharge", "remarks",
)


def generate_serial_number(record_date: date) -> str:
    """Next serial for the day, formatted Month/Day/Sequence, e.g. Jan/05/001."""
    prefix = f"{MONTH_ABBR[record_date.month - 1]}/{record_date.day:02d}/"
    sequences = []
    serials = ProductionRecord.all_objects.filter(
        date=record_date,
        serial_no__startswith=prefix,
    ).values_list('serial_no', flat=True)
    for serial in serials:
        try:
            sequences.append(int(serial.split('/')[2]))
        except (IndexError, ValueError):
            continue
    return f"{prefix}{max(sequences, default=0) + 1:03d}"


def working_hours(in_time: datetime | None, out_time: datetime | None) -> float | None:
    if not in_time or not out_time:
        return None
    return (out_time - in_time).total_seconds() / 3600


def month_bounds(moment: datetime) -> tuple[datetime, datetime]:
    """Start of the local calendar month containing `moment` and start of the next one."""
    local = timezone.localtime(moment)
    start = local.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    days = calendar.monthrange(start.year, start.month)[1]
    return start, start + timedelta(days=days)


class RecordService:
    """Production record workflow: create, save, submit, cancel and the recycle bin."""

    @staticmethod
    def _with_assignments(queryset):
        return queryset.prefetch_related('assignments__employee')

    @classmethod
    def list_records(cls, status: str | None = None):
        """Live records, PENDING first, then most recently updated."""
        queryset = ProductionRecord.objects.all()
        if status:
            queryset = queryset.filter(status=status)
        queryset = queryset.annotate(
            status_rank=Case(
                When(status=RecordStatus.PENDING, then=Value(0)),
                default=Value(1),
                output_field=IntegerField(),
            )
        ).order_by('status_rank', '-updated_at')
        return cls._with_assignments(queryset)

    @classmethod
    def get_record(cls, record_id: int) -> ProductionRecord:
        record = cls._with_assignments(ProductionRecord.objects.filter(pk=record_id)).first()
        if record is None:
            raise NotFound("Record not found")
        return record

    @classmethod
    def create_record(cls, data: dict[str, Any]) -> ProductionRecord:
        """Create a PENDING record, assigning employees when any are given."""
        data = dict(data)
        employee_ids = data.pop('employee_ids', None)
        if any(not data.get(field) for field in REQUIRED_RECORD_FIELDS):
            raise InvalidRecordState("Missing required fields")

        with transaction.atomic():
            record = ProductionRecord(
                status=RecordStatus.PENDING,
                **{field: data[field] for field in EDITABLE_RECORD_FIELDS if field in data},
            )
            if record.date:
                record.serial_no = generate_serial_number(record.date)
            record.save()
            logger.info("Created record %s (%s)", record.pk, record.serial_no)

            if employee_ids:
                AssignmentOrchestrator.assign(record.pk, employee_ids, record.date, record.shift)

        return cls.get_record(record.pk)

    @staticmethod
    def _apply_fields(record: ProductionRecord, data: dict[str, Any]) -> None:
        for field in EDITABLE_RECORD_FIELDS:
            if field not in data:
                continue
            value = data[field]
            # Required text fields keep their value when sent empty
            if field in REQUIRED_RECORD_FIELDS and not value:
                continue
            setattr(record, field, value)

    @staticmethod
    def _next_vehicle_count(completed_at: datetime) -> int:
        start, end = month_bounds(completed_at)
        current = ProductionRecord.all_objects.filter(
            status=RecordStatus.COMPLETED,
            completed_at__gte=start,
            completed_at__lt=end,
        ).aggregate(Max('sr_no_vehicle_count'))['sr_no_vehicle_count__max']
        return (current or 0) + 1

    @classmethod
    def update_record(cls, record_id: int, data: dict[str, Any]) -> ProductionRecord:
        """
        Apply `action` to a live record.

        - save: partial update of the editable fields
        - submit: PENDING -> COMPLETED, numbering the vehicle within the month
        - cancel: COMPLETED -> PENDING, dropping the record's employees

        Moving a record to another date or shift reconciles the scope it left
        as well as the one it joined.
        """
        data = dict(data)
        action = data.pop('action', None) or 'save'
        employee_ids = data.pop('employee_ids', None)

        with transaction.atomic():
            record = ProductionRecord.objects.select_for_update().filter(pk=record_id).first()
            if record is None:
                raise NotFound("Record not found")
            old_scope = Scope.of(record)

            if action == 'submit':
                if record.status != RecordStatus.PENDING:
                    raise InvalidRecordState("Invalid action or status transition")
                cls._apply_fields(record, data)
                record.status = RecordStatus.COMPLETED
                record.completed_at = timezone.now()
                record.sr_no_vehicle_count = cls._next_vehicle_count(record.completed_at)
                record.hours = working_hours(record.in_time, record.out_time)
            elif action == 'cancel':
                if record.status != RecordStatus.COMPLETED:
                    raise InvalidRecordState("Invalid action or status transition")
                record.status = RecordStatus.PENDING
                record.sr_no_vehicle_count = None
                record.completed_at = None
            elif action == 'save':
                new_date = data.get('date', record.date)
                if new_date and (not record.serial_no or new_date != record.date):
                    record.serial_no = generate_serial_number(new_date)
                cls._apply_fields(record, data)
            else:
                raise InvalidRecordState(f"Unknown action: {action}")

            record.save()
            new_scope = Scope.of(record)
            logger.info("Record %s: %s (status %s)", record.pk, action, record.status)

            if action == 'cancel':
                EmployeeAssignment.objects.filter(record=record).delete()
                AssignmentOrchestrator.refresh(old_scope)
            elif employee_ids is not None:
                if new_scope is None:
                    raise InvalidScope("Date and shift are required to assign employees")
                AssignmentOrchestrator.assign(record.pk, employee_ids, new_scope.date, new_scope.shift)
                if old_scope != new_scope:
                    AssignmentOrchestrator.refresh(old_scope)
            elif old_scope != new_scope:
                AssignmentOrchestrator.refresh(old_scope, new_scope)

        return cls.get_record(record.pk)

    @classmethod
    def assign_employees(cls, record_id: int, employee_ids: list[int]):
        """Assign employees under the record's own date and shift."""
        record = cls.get_record(record_id)
        scope = Scope.of(record)
        if scope is None:
            raise InvalidScope("Date and shift are required to assign employees")
        return AssignmentOrchestrator.assign(record.pk, employee_ids, scope.date, scope.shift)

    @classmethod
    def record_employees(cls, record_id: int) -> list[dict[str, Any]]:
        record = cls.get_record(record_id)
        return [
            {
                'id': assignment.employee.id,
                'employee_code': assignment.employee.employee_code,
                'name': assignment.employee.name,
                'role': assignment.employee.role,
                'split_count': assignment.split_count,
            }
            for assignment in record.assignments.all()
        ]

    @staticmethod
    def soft_delete(record_id: int) -> None:
        updated = ProductionRecord.objects.filter(pk=record_id).update(deleted_at=timezone.now())
        if not updated:
            raise NotFound("Record not found")
        logger.info("Record %s moved to recycle bin", record_id)

    @classmethod
    def list_deleted(cls):
        return cls._with_assignments(
            ProductionRecord.all_objects.filter(deleted_at__isnull=False).order_by('-deleted_at')
        )

    @classmethod
    def restore(cls, record_id: int) -> ProductionRecord:
        updated = ProductionRecord.all_objects.filter(
            pk=record_id, deleted_at__isnull=False
        ).update(deleted_at=None)
        if not updated:
            raise NotFound("Record not found in recycle bin")
        logger.info("Record %s restored", record_id)
        return cls.get_record(record_id)

    @staticmethod
    def purge(record_id: int) -> None:
        """Permanently delete one record and its assignments."""
        with transaction.atomic():
            record = ProductionRecord.all_objects.filter(pk=record_id).first()
            if record is None:
                raise NotFound("Record not found")
            scope = Scope.of(record)
            record.delete()
            AssignmentOrchestrator.refresh(scope)
        logger.info("Record %s permanently deleted", record_id)

    @staticmethod
    def purge_expired(now: datetime | None = None) -> int:
        """Permanently delete records soft-deleted longer than the retention window."""
        now = now or timezone.now()
        cutoff = now - timedelta(days=getattr(settings, "RECYCLE_BIN_RETENTION_DAYS", 7))
        with transaction.atomic():
            expired = list(ProductionRecord.all_objects.filter(deleted_at__lte=cutoff))
            if not expired:
                return 0
            scopes = {Scope.of(record) for record in expired}
            ProductionRecord.all_objects.filter(pk__in=[record.pk for record in expired]).delete()
            AssignmentOrchestrator.refresh(*scopes)
        logger.info("Purged %d records deleted before %s", len(expired), cutoff.isoformat())
        return len(expired)


class EmployeeService:
    """Employee directory."""

    @staticmethod
    def list_employees(search: str | None = None):
        queryset = Employee.objects.all()
        if search:
            queryset = queryset.filter(Q(name__icontains=search) | Q(employee_code__icontains=search))
        return queryset.order_by('employee_code')

    @staticmethod
    def get_employee(employee_id: int) -> Employee:
        employee = Employee.objects.filter(pk=employee_id).first()
        if employee is None:
            raise NotFound("Employee not found")
        return employee

    @staticmethod
    def next_employee_code(role: str) -> str:
        """DLPL/{role code}/{n}, n one past the highest number used by any employee."""
        numbers = []
        for code in Employee.objects.values_list('employee_code', flat=True):
            match = EMPLOYEE_CODE_RE.match(code)
            if match and int(match.group(1)) > 0:
                numbers.append(int(match.group(1)))
        return f"DLPL/{ROLE_CODES.get(role, 'X')}/{max(numbers, default=0) + 1:02d}"

    @staticmethod
    def _clean_name(name: str | None) -> str:
        name = (name or "").strip()
        if not name:
            raise InvalidEmployee("Employee name cannot be empty")
        return name

    @staticmethod
    def _clean_role(role: str | None) -> str:
        if role not in Role.values:
            raise InvalidEmployee(f"Valid role is required. Allowed: {', '.join(Role.values)}")
        return str(role)

    @classmethod
    def create_employee(cls, name: str, role: str, is_active: bool = True) -> Employee:
        name = cls._clean_name(name)
        role = cls._clean_role(role)
        with transaction.atomic():
            if Employee.objects.filter(name=name, role=role).exists():
                raise DuplicateEmployee("Employee with this name and role already exists")
            employee = Employee.objects.create(
                employee_code=cls.next_employee_code(role),
                name=name,
                role=role,
                is_active=is_active,
            )
        logger.info("Created employee %s (%s)", employee.employee_code, role)
        return employee

    @classmethod
    def update_employee(cls, employee_id: int, data: dict[str, Any]) -> Employee:
        employee = cls.get_employee(employee_id)
        if data.get('name') is not None:
            employee.name = cls._clean_name(data['name'])
        if data.get('role') is not None:
            role = cls._clean_role(data['role'])
            if role != employee.role:
                # Persisted aggregates keep the old role until their scope reconciles again
                logger.warning(
                    "Employee %s role changed %s -> %s",
                    employee.employee_code, employee.role, role,
                )
            employee.role = role
        if data.get('is_active') is not None:
            employee.is_active = bool(data['is_active'])

        if Employee.objects.filter(name=employee.name, role=employee.role).exclude(pk=employee.pk).exists():
            raise DuplicateEmployee("Employee with this name and role already exists")
        employee.save()
        return employee

    @classmethod
    def get_employee_detail(cls, employee_id: int, month: str | None = None) -> Employee:
        """Employee with `attendance_stats` for the given YYYY-MM month (zeros without one)."""
        employee = cls.get_employee(employee_id)
        stats = {'present': 0, 'working_days': 0}
        if month:
            year, month_num = AttendanceService.parse_month(month)
            stats['present'] = EmployeeAttendance.objects.filter(
                employee=employee,
                date__year=year,
                date__month=month_num,
            ).values('date').distinct().count()
            stats['working_days'] = AttendanceService.working_days(year, month_num)
        employee.attendance_stats = stats
        return employee


class AttendanceService:
    """Per-employee day/night attendance log."""

    @staticmethod
    def parse_month(month: str) -> tuple[int, int]:
        try:
            year, month_num = (int(part) for part in month.split('-'))
        except (AttributeError, ValueError) as e:
            raise InvalidScope("Month must be in YYYY-MM format") from e
        if not 1 <= month_num <= 12:
            raise InvalidScope("Month must be in YYYY-MM format")
        return year, month_num

    @staticmethod
    def working_days(year: int, month: int) -> int:
        """Days in the month excluding Sundays."""
        days = calendar.monthrange(year, month)[1]
        return sum(1 for day in range(1, days + 1) if date(year, month, day).weekday() != calendar.SUNDAY)

    @classmethod
    def monthly_attendance(cls, employee_id: int, month: str) -> MonthlyAttendanceSchema:
        year, month_num = cls.parse_month(month)
        employee = EmployeeService.get_employee(employee_id)

        days: defaultdict[str, AttendanceDaySchema] = defaultdict(AttendanceDaySchema)
        entries = EmployeeAttendance.objects.filter(
            employee=employee,
            date__year=year,
            date__month=month_num,
        ).order_by('date')
        for entry in entries:
            day = days[entry.date.isoformat()]
            if entry.shift == AttendanceShift.DAY:
                day.day = True
            elif entry.shift == AttendanceShift.NIGHT:
                day.night = True

        working = cls.working_days(year, month_num)
        present = len(days)
        return MonthlyAttendanceSchema(
            month=f"{year:04d}-{month_num:02d}",
            attendance=dict(days),
            summary=AttendanceSummarySchema(
                present=present,
                absent=working - present,
                working_days=working,
            ),
        )

    @staticmethod
    def update_attendance(employee_id: int, attendance_date: date, shift: str, action: str,
                          now: datetime | None = None) -> EmployeeAttendance | None:
        """
        Add or remove one attendance mark. Only allowed within the edit window
        (72 hours by default) counted from the start of the attendance day.
        Returns the attendance row on add, None on remove.
        """
        employee = EmployeeService.get_employee(employee_id)
        if shift not in AttendanceShift.values:
            raise InvalidScope("Shift must be 'Day' or 'Night'")

        now = now or timezone.now()
        day_start = timezone.make_aware(datetime.combine(attendance_date, time.min))
        window = getattr(settings, "ATTENDANCE_EDIT_WINDOW_HOURS", 72)
        if (now - day_start).total_seconds() / 3600 > window:
            raise AttendanceLocked(f"Attendance can only be edited within {window} hours of the date")

        if action == 'add':
            attendance, _ = EmployeeAttendance.objects.get_or_create(
                employee=employee, date=attendance_date, shift=shift,
            )
            return attendance
        if action == 'remove':
            EmployeeAttendance.objects.filter(employee=employee, date=attendance_date, shift=shift).delete()
            return None
        raise InvalidRecordState("Action must be 'add' or 'remove'")

    @staticmethod
    def shift_roster(attendance_date: date, shift: str) -> list[RosterEntrySchema]:
        """Attendees of a shift with the vehicles they worked on and their credit on each."""
        if shift not in AttendanceShift.values:
            raise InvalidScope("Shift must be 'Day' or 'Night'")

        attendance = list(
            EmployeeAttendance.objects.filter(date=attendance_date, shift=shift)
            .select_related('employee')
            .order_by('employee__name')
        )
        assignments = EmployeeAssignment.objects.filter(
            employee_id__in=[entry.employee_id for entry in attendance],
            record__date=attendance_date,
            record__shift=RECORD_SHIFTS[shift],
            record__deleted_at__isnull=True,
        ).select_related('record').order_by('record_id')

        entries_by_employee = defaultdict(list)
        for assignment in assignments:
            record = assignment.record
            entries_by_employee[assignment.employee_id].append(VehicleEntrySchema(
                record_id=record.id,
                bin_no=record.bin_no,
                model_no=record.model_no,
                chassis_no=record.chassis_no,
                sr_no_vehicle_count=record.sr_no_vehicle_count,
                split_count=assignment.split_count,
            ))

        return [
            RosterEntrySchema(
                id=entry.id,
                date=entry.date,
                shift=entry.shift,
                employee=EmployeeRefSchema.from_orm(entry.employee),
                vehicle_entries=entries_by_employee[entry.employee_id],
            )
            for entry in attendance
        ]


class ManpowerService:
    """Headcount KPIs over a date window."""

    @staticmethod
    def _calculate_gini_coefficient(values):
        """Calculate Gini coefficient for a list of values."""
        if not values or len(values) == 1:
            return 0.0
        return gini.Gini(np.asarray(values, dtype=float)).g

    @staticmethod
    def resolve_window(period: str, from_date: date | None = None, to_date: date | None = None,
                       today: date | None = None) -> tuple[date | None, date | None] | None:
        """Date bounds for a period; None means no window at all."""
        today = today or timezone.localdate()
        if period == 'today':
            return today, today
        if period == 'yesterday':
            yesterday = today - timedelta(days=1)
            return yesterday, yesterday
        if period == 'total' and not from_date and not to_date:
            return None
        return from_date, to_date

    @classmethod
    def stats(cls, period: str = 'today', from_date: date | None = None, to_date: date | None = None,
              today: date | None = None) -> ManpowerStatsSchema:
        window = cls.resolve_window(period, from_date, to_date, today)

        assignments = EmployeeAssignment.objects.filter(record__deleted_at__isnull=True)
        if window is None:
            employees = list(Employee.objects.all())
        else:
            start, end = window
            if start:
                assignments = assignments.filter(record__date__gte=start)
            if end:
                assignments = assignments.filter(record__date__lte=end)
            employees = list(Employee.objects.filter(
                id__in=assignments.values('employee_id')
            ))

        credits = [
            row['credit']
            for row in assignments.values('employee_id').annotate(credit=Sum('split_count'))
        ]
        by_role = defaultdict(int)
        for employee in employees:
            by_role[employee.role] += 1

        return ManpowerStatsSchema(
            total=len(employees),
            onrole=sum(1 for employee in employees if employee.is_active),
            electrician=by_role[Role.ELECTRICIAN.value],
            fitter=by_role[Role.FITTER.value],
            painter=by_role[Role.PAINTER.value],
            helper=by_role[Role.HELPER.value],
            gini_coefficient=round(cls._calculate_gini_coefficient(credits), 3),
        )
