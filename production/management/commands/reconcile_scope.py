from django.core.management.base import BaseCommand, CommandError

from production.exceptions import TrackingError
from production.models import Shift
from production.reconciliation import AssignmentOrchestrator, Scope, SplitCountReconciler


class Command(BaseCommand):
    help = "Recompute split counts and role counts for one date and shift."

    def add_arguments(self, parser):
        parser.add_argument("--date", required=True, help="Date in YYYY-MM-DD format.")
        parser.add_argument(
            "--shift",
            required=True,
            choices=Shift.values,
            help="Shift label.",
        )

    def handle(self, *args, **options):
        try:
            scope = Scope.parse(options["date"], options["shift"])
            records = AssignmentOrchestrator.refresh(scope)
        except TrackingError as e:
            raise CommandError(e.message) from e

        summary = SplitCountReconciler.summarize(scope, records)
        self.stdout.write(self.style.SUCCESS(
            f"Reconciled {scope}: {len(summary.record_ids)} records, {summary.employee_count} employees"
        ))
