from django.core.management.base import BaseCommand

from reservations.services.sweeper import ExpirySweeper


class Command(BaseCommand):
    help = "Release all lapsed slot holds once and offer the slots to the waitlist."

    def add_arguments(self, parser):
        parser.add_argument('--batch-size', type=int, default=500)

    def handle(self, *args, **options):
        result = ExpirySweeper(batch_size=options['batch_size']).sweep()
        style = self.style.SUCCESS if not result.failed else self.style.WARNING
        self.stdout.write(style(
            f"scanned={result.scanned} released={result.released} skipped={result.skipped} failed={result.failed}"
        ))
