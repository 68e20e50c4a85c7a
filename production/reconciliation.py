"""
Employee split-count reconciliation.

An employee is worth exactly one full-time equivalent per (date, shift) scope.
When they are assigned to several records of the same scope that credit is
divided evenly between those records, and each record's electrician / fitter /
painter / helper fields hold the sum of the credits of its employees by role.

Assignment edges are the source of truth; the role fields are a projection
rebuilt wholesale for the whole scope every time any record of it changes.
"""
import logging
from collections import defaultdict
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from fractions import Fraction
from typing import Iterable, NamedTuple

from django.conf import settings
from django.db import DatabaseError, OperationalError, transaction

from .exceptions import ConcurrencyConflict, InvalidScope, NotFound, PartialReconciliation
from .models import (
    ROLE_FIELDS, Employee, EmployeeAssignment, ProductionRecord, ScopeLock, Shift
)
from .schemas import ReconciliationSchema, ScopeProjection

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")


class Scope(NamedTuple):
    """One work shift's worth of records."""
    date: date
    shift: str

    @classmethod
    def parse(cls, value, shift) -> "Scope":
        """Build a scope from a date (or ISO string) and a canonical shift label."""
        if not value:
            raise InvalidScope("Date is required")
        if isinstance(value, datetime):
            value = value.date()
        elif isinstance(value, str):
            try:
                value = date.fromisoformat(value)
            except ValueError as e:
                raise InvalidScope(f"Invalid date: {value!r}") from e
        elif not isinstance(value, date):
            raise InvalidScope(f"Invalid date: {value!r}")

        if shift not in Shift.values:
            raise InvalidScope(f"Shift must be one of: {', '.join(Shift.values)}")
        return cls(value, str(shift))

    @classmethod
    def of(cls, record: ProductionRecord) -> "Scope | None":
        if record.date is None or not record.shift:
            return None
        return cls(record.date, str(record.shift))

    def __str__(self):
        return f"{self.date.isoformat()}/{self.shift}"


def lock_scopes(*scopes: Scope) -> None:
    """Row-lock the given scopes until the surrounding transaction ends."""
    # Sorted so two transactions locking the same pair cannot deadlock
    for scope in sorted(set(scopes)):
        ScopeLock.objects.select_for_update().get_or_create(date=scope.date, shift=scope.shift)


def round_credit(value) -> Decimal:
    """Round half-up to two decimal places."""
    if isinstance(value, Fraction):
        value = Decimal(value.numerator) / Decimal(value.denominator)
    return Decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


class AssignmentStore:
    """Persistence of (record, employee) -> split count edges."""

    @staticmethod
    def replace_assignments(record_id: int, employee_ids: Iterable[int]) -> list[EmployeeAssignment]:
        """
        Delete every assignment of the record, then create one per distinct
        employee with a placeholder split count of 1.0.
        """
        if not ProductionRecord.all_objects.filter(pk=record_id).exists():
            raise NotFound(f"Record {record_id} not found")

        # Duplicates are meaningless; keep first-seen order
        unique_ids = list(dict.fromkeys(employee_ids))
        found = Employee.objects.in_bulk(unique_ids)
        missing = [emp_id for emp_id in unique_ids if emp_id not in found]
        if missing:
            raise NotFound(f"Employees not found: {', '.join(map(str, missing))}")

        with transaction.atomic():
            EmployeeAssignment.objects.filter(record_id=record_id).delete()
            return EmployeeAssignment.objects.bulk_create([
                EmployeeAssignment(record_id=record_id, employee_id=emp_id, split_count=1.0)
                for emp_id in unique_ids
            ])

    @staticmethod
    def list_assignments(scope: Scope):
        """All assignments of the scope joined with their record and employee."""
        return EmployeeAssignment.objects.filter(
            record__date=scope.date,
            record__shift=scope.shift,
        ).select_related('record', 'employee').order_by('record_id', 'id')

    @staticmethod
    def set_split_count(assignment_id: int, value: float) -> None:
        if not 0 < value <= 1:
            raise ValueError(f"Split count must be in (0, 1], got {value}")
        updated = EmployeeAssignment.objects.filter(pk=assignment_id).update(split_count=value)
        if not updated:
            raise NotFound(f"Assignment {assignment_id} not found")


class SplitCountReconciler:
    """Restores the one-credit-per-employee-per-shift invariant for a scope."""

    @staticmethod
    def project_scope(records, assignments) -> ScopeProjection:
        """
        Compute target split counts and rounded role counts for a scope.

        `assignments` must each expose `id`, `record_id`, `employee_id` and
        `employee.role`. Records without assignments project to all zeros.
        """
        records_by_employee: defaultdict[int, set[int]] = defaultdict(set)
        for assignment in assignments:
            records_by_employee[assignment.employee_id].add(assignment.record_id)

        split_counts: dict[int, Fraction] = {}
        role_totals: defaultdict[int, defaultdict[str, Fraction]] = defaultdict(lambda: defaultdict(Fraction))
        for assignment in assignments:
            share = Fraction(1, len(records_by_employee[assignment.employee_id]))
            split_counts[assignment.id] = share

            field = ROLE_FIELDS.get(assignment.employee.role)
            if field:
                role_totals[assignment.record_id][field] += share

        role_counts = {
            record.id: {
                field: round_credit(role_totals[record.id][field])
                for field in ROLE_FIELDS.values()
            }
            for record in records
        }
        return ScopeProjection(
            split_counts={assignment_id: float(share) for assignment_id, share in split_counts.items()},
            role_counts=role_counts,
        )

    @classmethod
    def reconcile(cls, scope: Scope) -> list[ProductionRecord]:
        """
        Recompute every split count and role count of the scope.

        Returns the records of the scope with their refreshed role fields;
        an empty scope is a no-op and returns an empty list.
        """
        try:
            with transaction.atomic():
                lock_scopes(scope)

                # Soft-deleted records keep their edges, so they still share credit
                records = list(ProductionRecord.all_objects.filter(
                    date=scope.date,
                    shift=scope.shift,
                ).order_by('id'))
                if not records:
                    logger.debug("Reconcile %s: no records in scope", scope)
                    return []

                assignments = list(AssignmentStore.list_assignments(scope))
                projection = cls.project_scope(records, assignments)

                for assignment in assignments:
                    assignment.split_count = projection.split_counts[assignment.id]
                for record in records:
                    for field, value in projection.role_counts[record.id].items():
                        setattr(record, field, value)

                try:
                    EmployeeAssignment.objects.bulk_update(assignments, ['split_count'])
                    ProductionRecord.all_objects.bulk_update(records, list(ROLE_FIELDS.values()))
                except OperationalError:
                    raise
                except DatabaseError as e:
                    logger.exception("Reconcile %s: write batch failed", scope)
                    raise PartialReconciliation(
                        f"Failed to write reconciliation for {scope}; re-run it for this scope",
                        scope=scope,
                    ) from e
        except OperationalError as e:
            raise ConcurrencyConflict(f"Could not reconcile {scope}: {e}") from e

        logger.info(
            "Reconciled %s: %d records, %d assignments, %d employees",
            scope, len(records), len(assignments),
            len({a.employee_id for a in assignments}),
        )
        return records

    @classmethod
    def summarize(cls, scope: Scope, records: list[ProductionRecord]) -> ReconciliationSchema:
        employee_ids = EmployeeAssignment.objects.filter(
            record__in=records
        ).values_list('employee_id', flat=True).distinct()
        return ReconciliationSchema(
            date=scope.date,
            shift=scope.shift,
            record_ids=[record.id for record in records],
            employee_count=len(employee_ids),
        )


class AssignmentOrchestrator:
    """Entry point for changing which employees worked on a record."""

    @staticmethod
    def _attempts() -> int:
        return max(1, getattr(settings, "RECONCILE_ATTEMPTS", 2))

    @classmethod
    def _with_retry(cls, label: str, func):
        attempts = cls._attempts()
        for attempt in range(1, attempts + 1):
            try:
                try:
                    with transaction.atomic():
                        return func()
                except OperationalError as e:
                    # Lock timeouts surface here when the first lock of the pass is taken
                    raise ConcurrencyConflict(f"{label}: {e}") from e
            except ConcurrencyConflict as e:
                if attempt == attempts:
                    logger.error("%s: giving up after %d attempts", label, attempts)
                    raise
                logger.warning("%s: %s; retrying (%d/%d)", label, e, attempt, attempts)

    @classmethod
    def assign(cls, record_id: int, employee_ids: Iterable[int], date, shift) -> tuple[ProductionRecord, list[ProductionRecord]]:
        """
        Replace the record's employees and reconcile its whole scope.

        Every other record in the same (date, shift) may have its role counts
        rewritten as a side effect. Returns the edited record and all records
        of the scope, both fetched after the reconciliation committed. The
        replacement and the reconciliation share one transaction: either both
        apply or neither does. `date` and `shift` must be the record's own,
        otherwise InvalidScope is raised.
        """
        scope = Scope.parse(date, shift)
        employee_ids = list(employee_ids)

        def run():
            lock_scopes(scope)
            record = ProductionRecord.all_objects.filter(pk=record_id).first()
            if record is None:
                raise NotFound(f"Record {record_id} not found")
            # Edges must be reconciled in the scope the record actually belongs to
            if Scope.of(record) != scope:
                raise InvalidScope(f"Record {record_id} belongs to {Scope.of(record)}, not {scope}")
            AssignmentStore.replace_assignments(record_id, employee_ids)
            return SplitCountReconciler.reconcile(scope)

        touched = cls._with_retry(f"Assign record {record_id} ({scope})", run)
        affected = list(
            ProductionRecord.all_objects.filter(pk__in=[record.id for record in touched])
            .prefetch_related('assignments__employee')
            .order_by('id')
        )
        record = next(r for r in affected if r.id == record_id)
        return record, affected

    @classmethod
    def refresh(cls, *scopes: Scope | None) -> list[ProductionRecord]:
        """Reconcile one or more scopes in a single transaction."""
        scopes = sorted({scope for scope in scopes if scope is not None})
        if not scopes:
            return []

        def run():
            lock_scopes(*scopes)
            touched = []
            for scope in scopes:
                touched.extend(SplitCountReconciler.reconcile(scope))
            return touched

        return cls._with_retry(f"Refresh {', '.join(map(str, scopes))}", run)
