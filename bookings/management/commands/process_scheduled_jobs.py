import time

from django.core.management.base import BaseCommand

from bookings.jobs import run_due_jobs
from bookings.services import get_lifecycle_service


class Command(BaseCommand):
    help = 'Run due scheduled booking jobs (security deposit releases)'

    def add_arguments(self, parser):
        parser.add_argument('--loop', action='store_true', help='Keep polling instead of running once')
        parser.add_argument('--interval', type=int, default=60, help='Seconds between polls with --loop')

    def handle(self, *args, **options):
        service = get_lifecycle_service()

        while True:
            jobs = run_due_jobs(service)
            failed = [job for job in jobs if job.status == 'failed']
            if jobs:
                self.stdout.write(f'Processed {len(jobs)} job(s), {len(failed)} failed.')
            else:
                self.stdout.write('No due jobs.')

            if not options['loop']:
                return
            time.sleep(options['interval'])
