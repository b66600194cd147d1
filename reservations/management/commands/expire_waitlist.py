from django.core.management.base import BaseCommand

from reservations.services.waitlist import WaitlistCoordinator


class Command(BaseCommand):
    help = "Mark active waitlist entries past their expiry as Expired."

    def handle(self, *args, **options):
        count = WaitlistCoordinator().expire_entries()
        self.stdout.write(self.style.SUCCESS(f"Expired {count} waitlist entries"))
