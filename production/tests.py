import json
from datetime import date, datetime, timedelta
from decimal import Decimal
from io import StringIO
from types import SimpleNamespace
from unittest import mock

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import DatabaseError, OperationalError
from django.test import SimpleTestCase, TestCase
from django.test.client import Client
from django.utils import timezone

from .exceptions import (
    AttendanceLocked, ConcurrencyConflict, DuplicateEmployee, InvalidEmployee, InvalidRecordState,
    InvalidScope, NotFound, PartialReconciliation
)
from .models import (
    EmployeeAssignment, EmployeeAttendance, ProductionRecord, RecordStatus, Role, Shift
)
from .reconciliation import (
    AssignmentOrchestrator, AssignmentStore, Scope, SplitCountReconciler, lock_scopes
)
from .services import AttendanceService, EmployeeService, ManpowerService, RecordService

User = get_user_model()


class ProductionTestBase(TestCase):
    """Base test class with common setup and helper methods."""

    def setUp(self):
        """Set up common test data"""
        self.client = Client()
        self.user = User.objects.create_user(username="supervisor", password="pass")
        self.client.force_login(self.user)
        self.day = date(2024, 1, 5)

        # Create employees (codes DLPL/E/01 .. DLPL/H/04)
        self.electrician = EmployeeService.create_employee("Asha Rao", Role.ELECTRICIAN)
        self.fitter = EmployeeService.create_employee("Bilal Khan", Role.FITTER)
        self.painter = EmployeeService.create_employee("Chetan Das", Role.PAINTER)
        self.helper = EmployeeService.create_employee("Deepa Iyer", Role.HELPER)

    def make_record(self, chassis_no, record_date=None, shift=Shift.DAY, **extra):
        """Helper to create a live record in the given scope."""
        return ProductionRecord.objects.create(
            supervisor="R. Deshmukh",
            shift=shift,
            date=record_date or self.day,
            bin_no=f"BIN-{chassis_no}",
            model_no="LPT-1613",
            chassis_no=chassis_no,
            vehicle_type="Truck",
            **extra,
        )

    def assign(self, record, *employees):
        """Helper to assign employees through the orchestrator."""
        return AssignmentOrchestrator.assign(
            record.pk, [employee.pk for employee in employees], record.date, record.shift
        )

    def split_of(self, record, employee):
        return EmployeeAssignment.objects.get(record=record, employee=employee).split_count

    def credit_total(self, employee, record_date=None, shift=Shift.DAY):
        """Sum of an employee's split counts over one scope."""
        return sum(AssignmentStore.list_assignments(Scope(record_date or self.day, shift))
                   .filter(employee=employee)
                   .values_list('split_count', flat=True))

    def refreshed(self, record):
        record.refresh_from_db()
        return record


class SplitCountScenarioTest(ProductionTestBase):
    """Reconciliation of one employee spread over records of the same shift."""

    def test_single_record_gets_full_credit(self):
        r1 = self.make_record("C1")
        self.assign(r1, self.electrician)

        self.assertEqual(self.split_of(r1, self.electrician), 1.0)
        self.assertEqual(self.refreshed(r1).electrician, Decimal("1.00"))

    def test_two_records_split_in_half(self):
        r1 = self.make_record("C1")
        r2 = self.make_record("C2")
        self.assign(r1, self.electrician)
        self.assign(r2, self.electrician)

        self.assertEqual(self.split_of(r1, self.electrician), 0.5)
        self.assertEqual(self.split_of(r2, self.electrician), 0.5)
        self.assertEqual(self.refreshed(r1).electrician, Decimal("0.50"))
        self.assertEqual(self.refreshed(r2).electrician, Decimal("0.50"))

    def test_three_records_split_in_thirds(self):
        records = [self.make_record(f"C{i}") for i in range(1, 4)]
        for record in records:
            self.assign(record, self.electrician)

        for record in records:
            self.assertAlmostEqual(self.split_of(record, self.electrician), 1 / 3, places=12)
            self.assertEqual(self.refreshed(record).electrician, Decimal("0.33"))

    def test_reassignment_moves_credit(self):
        r1, r2, r3 = (self.make_record(f"C{i}") for i in range(1, 4))
        for record in (r1, r2, r3):
            self.assign(record, self.electrician)

        # Drop the electrician from R1, put the fitter there instead
        self.assign(r1, self.fitter)

        self.assertEqual(self.split_of(r2, self.electrician), 0.5)
        self.assertEqual(self.split_of(r3, self.electrician), 0.5)
        self.assertEqual(self.split_of(r1, self.fitter), 1.0)
        self.assertFalse(EmployeeAssignment.objects.filter(record=r1, employee=self.electrician).exists())

        r1 = self.refreshed(r1)
        self.assertEqual(r1.electrician, Decimal("0.00"))
        self.assertEqual(r1.fitter, Decimal("1.00"))
        self.assertEqual(self.refreshed(r2).electrician, Decimal("0.50"))
        self.assertEqual(self.refreshed(r3).electrician, Decimal("0.50"))

    def test_empty_scope_is_noop(self):
        self.make_record("C1")
        result = SplitCountReconciler.reconcile(Scope(date(2024, 2, 1), Shift.DAY))
        self.assertEqual(result, [])


class SplitCountPropertyTest(ProductionTestBase):
    """Invariants that hold after any reconciliation."""

    def setUp(self):
        super().setUp()
        self.r1 = self.make_record("C1")
        self.r2 = self.make_record("C2")
        self.r3 = self.make_record("C3")
        self.assign(self.r1, self.electrician, self.fitter, self.helper)
        self.assign(self.r2, self.electrician, self.painter)
        self.assign(self.r3, self.electrician, self.fitter)

    def test_each_employee_sums_to_one(self):
        for employee in (self.electrician, self.fitter, self.painter, self.helper):
            self.assertAlmostEqual(self.credit_total(employee), 1.0, delta=1e-9)

    def test_reconcile_is_idempotent(self):
        scope = Scope(self.day, Shift.DAY)

        def snapshot():
            splits = dict(EmployeeAssignment.objects.values_list('id', 'split_count'))
            counts = list(ProductionRecord.objects.order_by('id').values_list(
                'electrician', 'fitter', 'painter', 'helper'
            ))
            return splits, counts

        SplitCountReconciler.reconcile(scope)
        first = snapshot()
        SplitCountReconciler.reconcile(scope)
        self.assertEqual(snapshot(), first)

    def test_role_counts_add_up_to_record_credit(self):
        for record in (self.r1, self.r2, self.r3):
            record = self.refreshed(record)
            credit = sum(record.assignments.values_list('split_count', flat=True))
            total = record.electrician + record.fitter + record.painter + record.helper
            # At most half a cent of rounding per role field
            self.assertAlmostEqual(float(total), credit, delta=0.02)

    def test_other_scopes_untouched(self):
        night = self.make_record("N1", shift=Shift.NIGHT)
        next_day = self.make_record("D1", record_date=self.day + timedelta(days=1))
        self.assign(night, self.electrician)
        self.assign(next_day, self.electrician)

        # Corrupt the other scopes, then reconcile only the day shift
        for record in (night, next_day):
            assignment = EmployeeAssignment.objects.get(record=record)
            AssignmentStore.set_split_count(assignment.id, 0.25)
        ProductionRecord.objects.filter(pk__in=[night.pk, next_day.pk]).update(electrician=Decimal("7.00"))

        SplitCountReconciler.reconcile(Scope(self.day, Shift.DAY))

        for record in (night, next_day):
            self.assertEqual(EmployeeAssignment.objects.get(record=record).split_count, 0.25)
            self.assertEqual(self.refreshed(record).electrician, Decimal("7.00"))

    def test_soft_deleted_records_still_share_credit(self):
        RecordService.soft_delete(self.r3.pk)
        SplitCountReconciler.reconcile(Scope(self.day, Shift.DAY))
        self.assertAlmostEqual(self.split_of(self.r3, self.electrician), 1 / 3, places=12)


class ScopeProjectionTest(SimpleTestCase):
    """The projection is a pure function of records and edges."""

    @staticmethod
    def edge(assignment_id, record_id, employee_id, role):
        return SimpleNamespace(
            id=assignment_id,
            record_id=record_id,
            employee_id=employee_id,
            employee=SimpleNamespace(role=role),
        )

    def test_rounds_half_up(self):
        # One electrician over eight records: 0.125 each
        records = [SimpleNamespace(id=i) for i in range(1, 9)]
        edges = [self.edge(i, i, 1, Role.ELECTRICIAN.value) for i in range(1, 9)]

        projection = SplitCountReconciler.project_scope(records, edges)

        self.assertEqual(projection.split_counts[1], 0.125)
        self.assertEqual(projection.role_counts[1]["electrician"], Decimal("0.13"))

    def test_records_without_edges_project_to_zero(self):
        records = [SimpleNamespace(id=1), SimpleNamespace(id=2)]
        edges = [self.edge(10, 1, 7, Role.PAINTER.value)]

        projection = SplitCountReconciler.project_scope(records, edges)

        self.assertEqual(projection.role_counts[1]["painter"], Decimal("1.00"))
        self.assertEqual(
            projection.role_counts[2],
            {"electrician": Decimal("0"), "fitter": Decimal("0"), "painter": Decimal("0"), "helper": Decimal("0")},
        )

    def test_roles_are_bucketed_separately(self):
        records = [SimpleNamespace(id=1), SimpleNamespace(id=2)]
        edges = [
            self.edge(1, 1, 100, Role.FITTER.value),
            self.edge(2, 2, 100, Role.FITTER.value),
            self.edge(3, 1, 200, Role.HELPER.value),
            self.edge(4, 1, 300, "Supervisor"),
        ]

        projection = SplitCountReconciler.project_scope(records, edges)

        self.assertEqual(projection.role_counts[1]["fitter"], Decimal("0.50"))
        self.assertEqual(projection.role_counts[1]["helper"], Decimal("1.00"))
        # Unknown roles keep their split but land in no bucket
        self.assertEqual(projection.split_counts[4], 1.0)
        self.assertEqual(sum(projection.role_counts[1].values()), Decimal("1.50"))


class AssignmentStoreTest(ProductionTestBase):

    def test_replace_drops_duplicates_with_placeholder_split(self):
        record = self.make_record("C1")
        created = AssignmentStore.replace_assignments(
            record.pk, [self.fitter.pk, self.fitter.pk, self.helper.pk]
        )

        self.assertEqual(len(created), 2)
        self.assertEqual(
            sorted(EmployeeAssignment.objects.filter(record=record).values_list('employee_id', flat=True)),
            sorted([self.fitter.pk, self.helper.pk]),
        )
        self.assertTrue(all(a.split_count == 1.0 for a in EmployeeAssignment.objects.filter(record=record)))

    def test_replace_unknown_record(self):
        with self.assertRaises(NotFound):
            AssignmentStore.replace_assignments(999999, [self.fitter.pk])

    def test_replace_unknown_employee_keeps_existing_edges(self):
        record = self.make_record("C1")
        AssignmentStore.replace_assignments(record.pk, [self.fitter.pk])

        with self.assertRaises(NotFound):
            AssignmentStore.replace_assignments(record.pk, [self.helper.pk, 999999])

        self.assertEqual(
            list(EmployeeAssignment.objects.filter(record=record).values_list('employee_id', flat=True)),
            [self.fitter.pk],
        )

    def test_list_assignments_is_scoped(self):
        day = self.make_record("C1")
        night = self.make_record("N1", shift=Shift.NIGHT)
        AssignmentStore.replace_assignments(day.pk, [self.fitter.pk])
        AssignmentStore.replace_assignments(night.pk, [self.helper.pk])

        assignments = list(AssignmentStore.list_assignments(Scope(self.day, Shift.DAY)))

        self.assertEqual([a.record_id for a in assignments], [day.pk])
        self.assertEqual(assignments[0].employee.role, Role.FITTER)

    def test_set_split_count(self):
        record = self.make_record("C1")
        assignment = AssignmentStore.replace_assignments(record.pk, [self.fitter.pk])[0]

        AssignmentStore.set_split_count(assignment.id, 0.5)
        self.assertEqual(self.split_of(record, self.fitter), 0.5)

        with self.assertRaises(ValueError):
            AssignmentStore.set_split_count(assignment.id, 0)
        with self.assertRaises(NotFound):
            AssignmentStore.set_split_count(999999, 0.5)


class AssignmentOrchestratorTest(ProductionTestBase):

    def test_invalid_scope(self):
        record = self.make_record("C1")
        with self.assertRaises(InvalidScope):
            AssignmentOrchestrator.assign(record.pk, [self.fitter.pk], None, Shift.DAY)
        with self.assertRaises(InvalidScope):
            AssignmentOrchestrator.assign(record.pk, [self.fitter.pk], "2024-13-40", Shift.DAY)
        with self.assertRaises(InvalidScope):
            AssignmentOrchestrator.assign(record.pk, [self.fitter.pk], "2024-01-05", "Evening")

    def test_accepts_iso_date_strings(self):
        record = self.make_record("C1")
        edited, _ = AssignmentOrchestrator.assign(record.pk, [self.fitter.pk], "2024-01-05", "Day Shift")
        self.assertEqual(edited.fitter, Decimal("1.00"))

    def test_returns_every_touched_record(self):
        r1 = self.make_record("C1")
        r2 = self.make_record("C2")
        self.assign(r1, self.electrician)

        edited, affected = self.assign(r2, self.electrician)

        self.assertEqual(edited.pk, r2.pk)
        self.assertEqual([record.pk for record in affected], [r1.pk, r2.pk])
        sibling = next(record for record in affected if record.pk == r1.pk)
        self.assertEqual(sibling.electrician, Decimal("0.50"))

    def test_lock_timeout_is_retried(self):
        record = self.make_record("C1")
        calls = []

        def locked_once(*scopes):
            calls.append(scopes)
            if len(calls) == 1:
                raise OperationalError("database is locked")
            return lock_scopes(*scopes)

        with mock.patch("production.reconciliation.lock_scopes", side_effect=locked_once):
            edited, _ = self.assign(record, self.fitter)

        # Failed first pass, then the pass lock and the reconciler's own lock
        self.assertEqual(len(calls), 3)
        self.assertEqual(edited.fitter, Decimal("1.00"))
        self.assertEqual(self.split_of(record, self.fitter), 1.0)

    def test_lock_timeout_surfaces_as_conflict_and_rolls_back(self):
        record = self.make_record("C1")
        self.assign(record, self.fitter)

        with mock.patch("production.reconciliation.lock_scopes",
                        side_effect=OperationalError("database is locked")) as lock:
            with self.assertRaises(ConcurrencyConflict):
                self.assign(record, self.helper)

        self.assertEqual(lock.call_count, settings.RECONCILE_ATTEMPTS)
        self.assertEqual(
            list(EmployeeAssignment.objects.filter(record=record).values_list('employee_id', flat=True)),
            [self.fitter.pk],
        )

    def test_refresh_lock_timeout_surfaces_as_conflict(self):
        record = self.make_record("C1")
        with mock.patch("production.reconciliation.lock_scopes",
                        side_effect=OperationalError("database is locked")):
            with self.assertRaises(ConcurrencyConflict):
                AssignmentOrchestrator.refresh(Scope.of(record))

    def test_conflict_in_reconciler_is_retried(self):
        record = self.make_record("C1")
        real_reconcile = SplitCountReconciler.reconcile
        calls = []

        def flaky(scope):
            calls.append(scope)
            if len(calls) == 1:
                raise ConcurrencyConflict("database is locked")
            return real_reconcile(scope)

        with mock.patch.object(SplitCountReconciler, "reconcile", side_effect=flaky):
            edited, _ = self.assign(record, self.fitter)

        self.assertEqual(len(calls), 2)
        self.assertEqual(edited.fitter, Decimal("1.00"))

    def test_rejects_scope_other_than_records_own(self):
        r_day = self.make_record("C1")
        r_other = self.make_record("C2")
        self.assign(r_other, self.electrician)

        with self.assertRaises(InvalidScope):
            AssignmentOrchestrator.assign(r_day.pk, [self.electrician.pk], self.day, Shift.NIGHT)

        self.assertFalse(EmployeeAssignment.objects.filter(record=r_day).exists())
        self.assertAlmostEqual(self.credit_total(self.electrician), 1.0, delta=1e-9)
        self.assertAlmostEqual(self.credit_total(self.electrician, shift=Shift.NIGHT), 0.0, delta=1e-9)

    def test_unknown_record(self):
        with self.assertRaises(NotFound):
            AssignmentOrchestrator.assign(999999, [self.fitter.pk], self.day, Shift.DAY)

    def test_failed_write_batch_is_rolled_back(self):
        r1 = self.make_record("C1")
        r2 = self.make_record("C2")
        self.assign(r1, self.electrician)

        with mock.patch.object(ProductionRecord.all_objects, "bulk_update",
                               side_effect=DatabaseError("disk I/O error")):
            with self.assertRaises(PartialReconciliation) as ctx:
                self.assign(r2, self.electrician)

        self.assertEqual(ctx.exception.scope, Scope(self.day, Shift.DAY))
        self.assertEqual(self.split_of(r1, self.electrician), 1.0)
        self.assertFalse(EmployeeAssignment.objects.filter(record=r2).exists())

    def test_refresh_skips_missing_scopes(self):
        self.assertEqual(AssignmentOrchestrator.refresh(None), [])


class RecordServiceTest(ProductionTestBase):
    """Record workflow and the recycle bin."""

    def record_data(self, chassis_no="C1", **extra):
        data = {
            "supervisor": "R. Deshmukh",
            "shift": Shift.DAY,
            "date": self.day,
            "bin_no": "B-1",
            "model_no": "LPT-1613",
            "chassis_no": chassis_no,
            "vehicle_type": "Truck",
        }
        data.update(extra)
        return data

    def test_create_generates_daily_serials(self):
        first = RecordService.create_record(self.record_data("C1"))
        second = RecordService.create_record(self.record_data("C2"))
        undated = RecordService.create_record(self.record_data("C3", date=None))

        self.assertEqual(first.serial_no, "Jan/05/001")
        self.assertEqual(second.serial_no, "Jan/05/002")
        self.assertIsNone(undated.serial_no)
        self.assertEqual(first.status, RecordStatus.PENDING)

    def test_create_with_employees(self):
        record = RecordService.create_record(
            self.record_data(employee_ids=[self.electrician.pk, self.painter.pk])
        )
        self.assertEqual(record.electrician, Decimal("1.00"))
        self.assertEqual(record.painter, Decimal("1.00"))
        self.assertEqual(len(record.assignments.all()), 2)

    def test_create_requires_fields(self):
        with self.assertRaises(InvalidRecordState):
            RecordService.create_record(self.record_data(chassis_no=""))

    def test_create_with_employees_needs_date(self):
        with self.assertRaises(InvalidScope):
            RecordService.create_record(self.record_data(date=None, employee_ids=[self.fitter.pk]))
        self.assertFalse(ProductionRecord.all_objects.exists())

    def test_submit_numbers_vehicles_and_computes_hours(self):
        in_time = timezone.make_aware(datetime(2024, 1, 5, 8, 0))
        first = self.make_record("C1", in_time=in_time, out_time=in_time + timedelta(hours=8, minutes=30))
        second = self.make_record("C2")

        first = RecordService.update_record(first.pk, {"action": "submit"})
        second = RecordService.update_record(second.pk, {"action": "submit", "remarks": "late"})

        self.assertEqual(first.status, RecordStatus.COMPLETED)
        self.assertEqual(first.sr_no_vehicle_count, 1)
        self.assertEqual(first.hours, 8.5)
        self.assertIsNotNone(first.completed_at)
        self.assertEqual(second.sr_no_vehicle_count, 2)
        self.assertIsNone(second.hours)
        self.assertEqual(second.remarks, "late")

        with self.assertRaises(InvalidRecordState):
            RecordService.update_record(first.pk, {"action": "submit"})

    def test_cancel_releases_credit_to_siblings(self):
        r1 = self.make_record("C1")
        r2 = self.make_record("C2")
        self.assign(r1, self.electrician)
        self.assign(r2, self.electrician)
        RecordService.update_record(r1.pk, {"action": "submit"})

        r1 = RecordService.update_record(r1.pk, {"action": "cancel"})

        self.assertEqual(r1.status, RecordStatus.PENDING)
        self.assertIsNone(r1.sr_no_vehicle_count)
        self.assertEqual(r1.electrician, Decimal("0.00"))
        self.assertEqual(self.split_of(r2, self.electrician), 1.0)
        self.assertEqual(self.refreshed(r2).electrician, Decimal("1.00"))

    def test_cancel_requires_completed(self):
        record = self.make_record("C1")
        with self.assertRaises(InvalidRecordState):
            RecordService.update_record(record.pk, {"action": "cancel"})

    def test_moving_a_record_reconciles_both_scopes(self):
        r1 = self.make_record("C1", serial_no="Jan/05/001")
        r2 = self.make_record("C2")
        self.assign(r1, self.electrician)
        self.assign(r2, self.electrician)

        r1 = RecordService.update_record(r1.pk, {"date": date(2024, 1, 6)})

        self.assertEqual(r1.serial_no, "Jan/06/001")
        self.assertEqual(r1.electrician, Decimal("1.00"))
        self.assertEqual(self.refreshed(r2).electrician, Decimal("1.00"))
        self.assertAlmostEqual(self.credit_total(self.electrician), 1.0, delta=1e-9)
        self.assertAlmostEqual(self.credit_total(self.electrician, date(2024, 1, 6)), 1.0, delta=1e-9)

    def test_save_with_employees(self):
        record = self.make_record("C1")
        record = RecordService.update_record(record.pk, {"employee_ids": [self.helper.pk], "bin_no": ""})
        self.assertEqual(record.helper, Decimal("1.00"))
        # Empty required fields are ignored
        self.assertEqual(record.bin_no, "BIN-C1")

    def test_unknown_action(self):
        record = self.make_record("C1")
        with self.assertRaises(InvalidRecordState):
            RecordService.update_record(record.pk, {"action": "archive"})

    def test_list_puts_pending_first(self):
        done = self.make_record("C1")
        RecordService.update_record(done.pk, {"action": "submit"})
        pending = self.make_record("C2")
        deleted = self.make_record("C3")
        RecordService.soft_delete(deleted.pk)

        self.assertEqual([r.pk for r in RecordService.list_records()], [pending.pk, done.pk])
        self.assertEqual([r.pk for r in RecordService.list_records(RecordStatus.COMPLETED)], [done.pk])

    def test_soft_delete_and_restore(self):
        record = self.make_record("C1")
        RecordService.soft_delete(record.pk)

        with self.assertRaises(NotFound):
            RecordService.get_record(record.pk)
        self.assertEqual([r.pk for r in RecordService.list_deleted()], [record.pk])

        restored = RecordService.restore(record.pk)
        self.assertIsNone(restored.deleted_at)
        with self.assertRaises(NotFound):
            RecordService.restore(record.pk)

    def test_purge_reconciles_scope(self):
        r1 = self.make_record("C1")
        r2 = self.make_record("C2")
        self.assign(r1, self.electrician)
        self.assign(r2, self.electrician)
        RecordService.soft_delete(r1.pk)

        RecordService.purge(r1.pk)

        self.assertFalse(ProductionRecord.all_objects.filter(pk=r1.pk).exists())
        self.assertFalse(EmployeeAssignment.objects.filter(record_id=r1.pk).exists())
        self.assertEqual(self.refreshed(r2).electrician, Decimal("1.00"))

    def test_purge_expired_keeps_recent(self):
        old = self.make_record("C1")
        recent = self.make_record("C2")
        live = self.make_record("C3")
        now = timezone.now()
        ProductionRecord.objects.filter(pk=old.pk).update(deleted_at=now - timedelta(days=8))
        ProductionRecord.objects.filter(pk=recent.pk).update(deleted_at=now - timedelta(days=2))

        self.assertEqual(RecordService.purge_expired(now), 1)
        self.assertFalse(ProductionRecord.all_objects.filter(pk=old.pk).exists())
        self.assertTrue(ProductionRecord.all_objects.filter(pk=recent.pk).exists())
        self.assertTrue(ProductionRecord.objects.filter(pk=live.pk).exists())
        self.assertEqual(RecordService.purge_expired(now), 0)


class EmployeeServiceTest(ProductionTestBase):

    def test_codes_follow_global_sequence(self):
        self.assertEqual(self.electrician.employee_code, "DLPL/E/01")
        self.assertEqual(self.helper.employee_code, "DLPL/H/04")

        employee = EmployeeService.create_employee("  Farah Ali  ", Role.FITTER)
        self.assertEqual(employee.employee_code, "DLPL/F/05")
        self.assertEqual(employee.name, "Farah Ali")

    def test_rejects_bad_input(self):
        with self.assertRaises(DuplicateEmployee):
            EmployeeService.create_employee("Asha Rao", Role.ELECTRICIAN)
        with self.assertRaises(InvalidEmployee):
            EmployeeService.create_employee("   ", Role.HELPER)
        with self.assertRaises(InvalidEmployee):
            EmployeeService.create_employee("Gita", "Supervisor")

    def test_search(self):
        names = [e.name for e in EmployeeService.list_employees("bilal")]
        self.assertEqual(names, ["Bilal Khan"])
        codes = [e.employee_code for e in EmployeeService.list_employees("DLPL/P")]
        self.assertEqual(codes, ["DLPL/P/03"])

    def test_role_change_applies_on_next_reconciliation(self):
        record = self.make_record("C1")
        self.assign(record, self.helper)

        EmployeeService.update_employee(self.helper.pk, {"role": Role.PAINTER})
        record = self.refreshed(record)
        self.assertEqual(record.helper, Decimal("1.00"))
        self.assertEqual(record.painter, Decimal("0.00"))

        AssignmentOrchestrator.refresh(Scope.of(record))
        record = self.refreshed(record)
        self.assertEqual(record.helper, Decimal("0.00"))
        self.assertEqual(record.painter, Decimal("1.00"))

    def test_update_rejects_duplicate(self):
        EmployeeService.create_employee("Asha Rao", Role.FITTER)
        with self.assertRaises(DuplicateEmployee):
            EmployeeService.update_employee(self.electrician.pk, {"role": Role.FITTER})

    def test_detail_attendance_stats(self):
        EmployeeAttendance.objects.create(employee=self.fitter, date=date(2024, 1, 5), shift="Day")
        EmployeeAttendance.objects.create(employee=self.fitter, date=date(2024, 1, 5), shift="Night")
        EmployeeAttendance.objects.create(employee=self.fitter, date=date(2024, 1, 8), shift="Day")

        employee = EmployeeService.get_employee_detail(self.fitter.pk, "2024-01")

        self.assertEqual(employee.attendance_stats, {"present": 2, "working_days": 27})


class AttendanceServiceTest(ProductionTestBase):

    def test_add_and_remove_within_window(self):
        now = timezone.make_aware(datetime(2024, 1, 7, 12, 0))

        attendance = AttendanceService.update_attendance(self.fitter.pk, self.day, "Day", "add", now=now)
        again = AttendanceService.update_attendance(self.fitter.pk, self.day, "Day", "add", now=now)
        self.assertEqual(attendance.pk, again.pk)

        self.assertIsNone(AttendanceService.update_attendance(self.fitter.pk, self.day, "Day", "remove", now=now))
        self.assertFalse(EmployeeAttendance.objects.exists())

    def test_locked_after_window(self):
        now = timezone.make_aware(datetime(2024, 1, 9, 1, 0))
        with self.assertRaises(AttendanceLocked):
            AttendanceService.update_attendance(self.fitter.pk, self.day, "Day", "add", now=now)

    def test_rejects_unknown_shift_and_employee(self):
        now = timezone.make_aware(datetime(2024, 1, 5, 12, 0))
        with self.assertRaises(InvalidScope):
            AttendanceService.update_attendance(self.fitter.pk, self.day, "Evening", "add", now=now)
        with self.assertRaises(NotFound):
            AttendanceService.update_attendance(999999, self.day, "Day", "add", now=now)

    def test_monthly_summary(self):
        EmployeeAttendance.objects.create(employee=self.painter, date=date(2024, 1, 5), shift="Day")
        EmployeeAttendance.objects.create(employee=self.painter, date=date(2024, 1, 5), shift="Night")
        EmployeeAttendance.objects.create(employee=self.painter, date=date(2024, 1, 6), shift="Night")

        summary = AttendanceService.monthly_attendance(self.painter.pk, "2024-01")

        self.assertEqual(summary.month, "2024-01")
        self.assertTrue(summary.attendance["2024-01-05"].day)
        self.assertTrue(summary.attendance["2024-01-05"].night)
        self.assertFalse(summary.attendance["2024-01-06"].day)
        # January 2024 has four Sundays
        self.assertEqual(summary.summary.working_days, 27)
        self.assertEqual(summary.summary.present, 2)
        self.assertEqual(summary.summary.absent, 25)

    def test_bad_month(self):
        with self.assertRaises(InvalidScope):
            AttendanceService.monthly_attendance(self.painter.pk, "January")
        with self.assertRaises(InvalidScope):
            AttendanceService.monthly_attendance(self.painter.pk, "2024-13")

    def test_shift_roster_lists_vehicle_credit(self):
        r1 = self.make_record("C1")
        r2 = self.make_record("C2")
        self.assign(r1, self.electrician)
        self.assign(r2, self.electrician)
        EmployeeAttendance.objects.create(employee=self.electrician, date=self.day, shift="Day")
        EmployeeAttendance.objects.create(employee=self.helper, date=self.day, shift="Day")

        roster = AttendanceService.shift_roster(self.day, "Day")

        self.assertEqual([entry.employee.name for entry in roster], ["Asha Rao", "Deepa Iyer"])
        entries = roster[0].vehicle_entries
        self.assertEqual([entry.chassis_no for entry in entries], ["C1", "C2"])
        self.assertEqual([entry.split_count for entry in entries], [0.5, 0.5])
        self.assertEqual(roster[1].vehicle_entries, [])


class ManpowerServiceTest(ProductionTestBase):

    def test_total_counts_directory(self):
        EmployeeService.update_employee(self.helper.pk, {"is_active": False})

        stats = ManpowerService.stats('total')

        self.assertEqual(stats.total, 4)
        self.assertEqual(stats.onrole, 3)
        self.assertEqual(stats.electrician, 1)
        self.assertEqual(stats.helper, 1)

    def test_today_counts_assigned_employees(self):
        r1 = self.make_record("C1")
        r2 = self.make_record("C2")
        self.assign(r1, self.electrician, self.fitter)
        self.assign(r2, self.electrician)

        stats = ManpowerService.stats('today', today=self.day)

        self.assertEqual(stats.total, 2)
        self.assertEqual(stats.electrician, 1)
        self.assertEqual(stats.fitter, 1)
        self.assertEqual(stats.painter, 0)
        # Both worked exactly one full shift
        self.assertEqual(stats.gini_coefficient, 0.0)

        self.assertEqual(ManpowerService.stats('yesterday', today=self.day).total, 0)

    def test_range_measures_uneven_load(self):
        tomorrow = self.day + timedelta(days=1)
        self.assign(self.make_record("C1"), self.electrician, self.fitter)
        self.assign(self.make_record("C2", record_date=tomorrow), self.electrician)

        stats = ManpowerService.stats('range', from_date=self.day, to_date=tomorrow)

        self.assertEqual(stats.total, 2)
        self.assertGreater(stats.gini_coefficient, 0)


class ManagementCommandTest(ProductionTestBase):

    def test_reconcile_scope(self):
        record = self.make_record("C1")
        AssignmentStore.replace_assignments(record.pk, [self.fitter.pk, self.helper.pk])
        out = StringIO()

        call_command("reconcile_scope", date="2024-01-05", shift="Day Shift", stdout=out)

        self.assertIn("1 records, 2 employees", out.getvalue())
        record = self.refreshed(record)
        self.assertEqual(record.fitter, Decimal("1.00"))
        self.assertEqual(record.helper, Decimal("1.00"))

    def test_cleanup_deleted_records(self):
        record = self.make_record("C1")
        ProductionRecord.objects.filter(pk=record.pk).update(deleted_at=timezone.now() - timedelta(days=10))
        out = StringIO()

        call_command("cleanup_deleted_records", stdout=out)

        self.assertIn("deleted 1 old records", out.getvalue())
        self.assertFalse(ProductionRecord.all_objects.exists())

    def test_load_seed_data(self):
        call_command("load_seed_data", dir=str(settings.BASE_DIR / "seed_data"), stdout=StringIO())

        first = ProductionRecord.objects.get(chassis_no="MAT4470021")
        second = ProductionRecord.objects.get(chassis_no="MAT4470022")
        night = ProductionRecord.objects.get(chassis_no="MAT3910087")
        self.assertEqual(first.serial_no, "Jan/06/001")
        self.assertEqual(first.electrician, Decimal("0.50"))
        self.assertEqual(first.fitter, Decimal("1.00"))
        self.assertEqual(second.electrician, Decimal("0.50"))
        self.assertEqual(second.helper, Decimal("1.00"))
        self.assertEqual(night.painter, Decimal("1.00"))


class ProductionAPITest(ProductionTestBase):
    """HTTP surface of the tracker."""

    def send(self, method, url, payload=None):
        return getattr(self.client, method)(
            url, data=json.dumps(payload or {}), content_type="application/json"
        )

    def create_via_api(self, chassis_no, **extra):
        payload = {
            "supervisor": "R. Deshmukh",
            "shift": "Day Shift",
            "date": "2024-01-05",
            "bin_no": "B-1",
            "model_no": "LPT-1613",
            "chassis_no": chassis_no,
            "vehicle_type": "Truck",
        }
        payload.update(extra)
        return self.send("post", "/api/records", payload)

    def test_requires_login(self):
        response = Client().get("/api/records")
        self.assertEqual(response.status_code, 401)

    def test_create_and_fetch_record(self):
        response = self.create_via_api("C1", employee_ids=[self.electrician.pk, self.fitter.pk])

        self.assertEqual(response.status_code, 201)
        data = response.json()
        self.assertEqual(data["serial_no"], "Jan/05/001")
        self.assertEqual(data["status"], "PENDING")
        self.assertEqual(data["electrician"], 1.0)
        self.assertEqual(
            sorted(a["employee"]["employee_code"] for a in data["assignments"]),
            ["DLPL/E/01", "DLPL/F/02"],
        )

        fetched = self.client.get(f"/api/records/{data['id']}").json()
        self.assertEqual(fetched["id"], data["id"])

    def test_create_rejects_unknown_shift(self):
        response = self.create_via_api("C1", shift="Evening Shift")
        self.assertEqual(response.status_code, 422)

    def test_assign_returns_affected_records(self):
        r1 = self.create_via_api("C1", employee_ids=[self.electrician.pk]).json()
        r2 = self.create_via_api("C2").json()

        response = self.send("put", f"/api/records/{r2['id']}/employees",
                             {"employee_ids": [self.electrician.pk]})

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["record"]["id"], r2["id"])
        self.assertEqual(data["record"]["electrician"], 0.5)
        affected = {record["id"]: record for record in data["affected_records"]}
        self.assertEqual(set(affected), {r1["id"], r2["id"]})
        self.assertEqual(affected[r1["id"]]["electrician"], 0.5)

        employees = self.client.get(f"/api/records/{r1['id']}/employees").json()
        self.assertEqual(employees, [{
            "id": self.electrician.pk,
            "employee_code": "DLPL/E/01",
            "name": "Asha Rao",
            "role": "Electrician",
            "split_count": 0.5,
        }])

    def test_assign_unknown_employee(self):
        record = self.create_via_api("C1").json()
        response = self.send("put", f"/api/records/{record['id']}/employees", {"employee_ids": [999999]})
        self.assertEqual(response.status_code, 404)
        self.assertIn("999999", response.json()["error"])

    def test_assign_lock_timeout_returns_conflict(self):
        record = self.create_via_api("C1").json()

        with mock.patch("production.reconciliation.lock_scopes",
                        side_effect=OperationalError("database is locked")):
            response = self.send("put", f"/api/records/{record['id']}/employees",
                                 {"employee_ids": [self.fitter.pk]})

        self.assertEqual(response.status_code, 409)
        self.assertIn("database is locked", response.json()["error"])
        self.assertFalse(EmployeeAssignment.objects.filter(record_id=record["id"]).exists())

    def test_submit_and_invalid_transition(self):
        record = self.create_via_api("C1").json()

        response = self.send("patch", f"/api/records/{record['id']}", {"action": "submit"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "COMPLETED")
        self.assertEqual(response.json()["sr_no_vehicle_count"], 1)

        response = self.send("patch", f"/api/records/{record['id']}", {"action": "submit"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Invalid action or status transition"})

    def test_soft_delete_hides_record(self):
        record = self.create_via_api("C1").json()

        response = self.client.delete(f"/api/records/{record['id']}")
        self.assertEqual(response.status_code, 200)

        response = self.client.get(f"/api/records/{record['id']}")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"error": "Record not found"})
        self.assertEqual(self.client.get("/api/records").json(), [])

    def test_recycle_bin_is_admin_only(self):
        record = self.create_via_api("C1").json()
        self.client.delete(f"/api/records/{record['id']}")

        self.assertEqual(self.client.get("/api/recycle-bin").status_code, 403)

        admin = User.objects.create_user(username="admin", password="pass", is_staff=True)
        self.client.force_login(admin)
        deleted = self.client.get("/api/recycle-bin").json()
        self.assertEqual([r["id"] for r in deleted], [record["id"]])

        response = self.client.post(f"/api/recycle-bin/{record['id']}/restore")
        self.assertEqual(response.status_code, 200)
        self.assertIsNone(response.json()["deleted_at"])

        self.client.delete(f"/api/records/{record['id']}")
        response = self.client.delete(f"/api/recycle-bin/{record['id']}")
        self.assertEqual(response.status_code, 200)
        self.assertFalse(ProductionRecord.all_objects.exists())

        self.assertEqual(self.client.delete("/api/recycle-bin").json(), {"deleted_count": 0})

    def test_employee_endpoints(self):
        response = self.send("post", "/api/employees", {"name": "Farah Ali", "role": "Painter"})
        self.assertEqual(response.status_code, 201)
        employee = response.json()
        self.assertEqual(employee["employee_code"], "DLPL/P/05")

        response = self.send("post", "/api/employees", {"name": "Farah Ali", "role": "Painter"})
        self.assertEqual(response.status_code, 400)

        response = self.send("post", "/api/employees", {"name": "Gita", "role": "Pilot"})
        self.assertEqual(response.status_code, 422)

        response = self.send("patch", f"/api/employees/{employee['id']}", {"is_active": False})
        self.assertFalse(response.json()["is_active"])

        detail = self.client.get(f"/api/employees/{employee['id']}", {"month": "2024-01"}).json()
        self.assertEqual(detail["attendance_stats"], {"present": 0, "working_days": 27})

        self.assertEqual(self.client.get("/api/employees/999999").status_code, 404)

    def test_attendance_endpoints(self):
        today = timezone.localdate().isoformat()
        url = f"/api/employees/{self.fitter.pk}/attendance"

        response = self.send("patch", url, {"date": today, "shift": "Night", "action": "add"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["shift"], "Night")

        roster = self.client.get("/api/attendance", {"date": today, "shift": "Night"}).json()
        self.assertEqual([entry["employee"]["id"] for entry in roster], [self.fitter.pk])

        month = self.client.get(url, {"month": today[:7]}).json()
        self.assertTrue(month["attendance"][today]["night"])

        response = self.send("patch", url, {"date": today, "shift": "Night", "action": "remove"})
        self.assertEqual(response.json(), {"message": "Attendance removed"})

        old = (timezone.localdate() - timedelta(days=5)).isoformat()
        response = self.send("patch", url, {"date": old, "shift": "Day", "action": "add"})
        self.assertEqual(response.status_code, 403)

    def test_manpower_endpoint(self):
        self.create_via_api("C1", employee_ids=[self.electrician.pk, self.helper.pk])

        data = self.client.get("/api/manpower", {"filter": "range", "from_date": "2024-01-05"}).json()

        self.assertEqual(data["total"], 2)
        self.assertEqual(data["electrician"], 1)
        self.assertEqual(data["helper"], 1)
        self.assertEqual(data["gini_coefficient"], 0.0)
