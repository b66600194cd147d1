import datetime

from django.core.management.base import BaseCommand, CommandError

from reservations.exceptions import DuplicateScheduleError, InvalidSlotSetError
from reservations.models import User
from reservations.services import slot_table


def _times(start: str, end: str, step: int) -> list[str]:
    day = datetime.date.today()
    t = datetime.datetime.combine(day, datetime.time.fromisoformat(start))
    stop = datetime.datetime.combine(day, datetime.time.fromisoformat(end))
    out = []
    while t < stop:
        out.append(t.strftime('%H:%M'))
        t += datetime.timedelta(minutes=step)
    return out


class Command(BaseCommand):
    help = "Publish day schedules for a doctor over a date range (existing days are skipped)."

    def add_arguments(self, parser):
        parser.add_argument('doctor', help='doctor username or id')
        parser.add_argument('--start', required=True, help='first date, YYYY-MM-DD')
        parser.add_argument('--days', type=int, default=1)
        parser.add_argument('--from-time', default='09:00')
        parser.add_argument('--to-time', default='17:00')
        parser.add_argument('--step', type=int, default=30, help='slot length in minutes')
        parser.add_argument('--location', default='')
        parser.add_argument('--skip-weekends', action='store_true')

    def handle(self, *args, **opts):
        ref = opts['doctor']
        doctor = User.objects.filter(role='doctor').filter(
            **({'pk': int(ref)} if ref.isdigit() else {'username': ref})
        ).first()
        if doctor is None:
            raise CommandError(f"doctor {ref!r} not found")
        if opts['step'] <= 0:
            raise CommandError("--step must be positive")
        try:
            start = datetime.date.fromisoformat(opts['start'])
            times = _times(opts['from_time'], opts['to_time'], opts['step'])
        except ValueError as e:
            raise CommandError(str(e))
        created = 0
        for i in range(opts['days']):
            day = start + datetime.timedelta(days=i)
            if opts['skip_weekends'] and day.weekday() >= 5:
                continue
            try:
                slot_table.create(doctor, day, times, location=opts['location'])
            except DuplicateScheduleError:
                self.stdout.write(f"skip {day}: already published")
                continue
            except InvalidSlotSetError as e:
                raise CommandError(e.message)
            created += 1
            self.stdout.write(self.style.SUCCESS(f"ok: {day} ({len(times)} slots)"))
        self.stdout.write(self.style.SUCCESS(f"Published {created} schedules for {doctor.username}."))
