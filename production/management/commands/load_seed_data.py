import json
from collections import defaultdict
from pathlib import Path

from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from production.models import Employee, EmployeeAssignment, EmployeeAttendance, ProductionRecord
from production.reconciliation import AssignmentOrchestrator, AssignmentStore, Scope
from production.services import EmployeeService, generate_serial_number


class Command(BaseCommand):
    help = "Load demo seed data from JSON files in seed_data/."

    def add_arguments(self, parser):
        parser.add_argument(
            "--truncate",
            action="store_true",
            help="Delete existing data before loading.",
        )
        parser.add_argument(
            "--dir",
            default="seed_data",
            help="Directory containing JSON files (default: seed_data).",
        )

    @transaction.atomic
    def handle(self, *args, **options):
        base_dir = Path(options["dir"]).resolve()

        # 1. optional clean
        if options["truncate"]:
            self.stdout.write("Deleting existing records…")
            EmployeeAssignment.objects.all().delete()
            EmployeeAttendance.objects.all().delete()
            ProductionRecord.all_objects.all().delete()
            Employee.objects.all().delete()

        # 2. load json helpers
        def load_json(name):
            path = base_dir / f"{name}.json"
            if not path.exists():
                raise CommandError(f"{path} not found")
            with open(path) as f:
                return json.load(f)

        employees = load_json("employees")
        records   = load_json("records")
        assigns   = load_json("assignments")

        # 3. employees get codes in file order, records get serials per day
        employee_ids = {}
        for e in employees:
            employee = Employee.objects.filter(name=e["name"], role=e["role"]).first()
            if employee is None:
                employee = EmployeeService.create_employee(e["name"], e["role"], e.get("is_active", True))
            employee_ids[e["id"]] = employee.pk

        record_ids = {}
        for r in records:
            record = ProductionRecord(**{k: v for k, v in r.items() if k != "id"})
            if record.date:
                record.date = Scope.parse(record.date, record.shift).date
                record.serial_no = generate_serial_number(record.date)
            record.save()
            record_ids[r["id"]] = record.pk

        # 4. edges per record, then one reconciliation per scope
        employees_by_record = defaultdict(list)
        for a in assigns:
            employees_by_record[record_ids[a["record_id"]]].append(employee_ids[a["employee_id"]])
        for record_id, members in employees_by_record.items():
            AssignmentStore.replace_assignments(record_id, members)

        scopes = {
            Scope.of(record)
            for record in ProductionRecord.all_objects.filter(pk__in=employees_by_record.keys())
        }
        AssignmentOrchestrator.refresh(*scopes)

        self.stdout.write(self.style.SUCCESS(
            f"✅  Seed data loaded: {len(employee_ids)} employees, {len(record_ids)} records, "
            f"{len(scopes - {None})} shifts reconciled"
        ))
