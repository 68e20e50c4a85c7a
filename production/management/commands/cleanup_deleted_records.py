from django.core.management.base import BaseCommand

from production.services import RecordService


class Command(BaseCommand):
    help = "Permanently delete records that have been in the recycle bin past the retention window."

    def handle(self, *args, **options):
        deleted = RecordService.purge_expired()
        self.stdout.write(self.style.SUCCESS(f"Successfully deleted {deleted} old records"))
