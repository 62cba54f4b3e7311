"""Persisted delayed actions.

Jobs live in the database so a restart never loses them. A recurring worker
(``manage.py process_scheduled_jobs``) runs every due job once; a failed job
keeps its error and is not retried.
"""
import logging

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from .models import ScheduledJob

logger = logging.getLogger(__name__)


def schedule_deposit_release(booking, delay):
    job, created = ScheduledJob.objects.get_or_create(
        job_type=ScheduledJob.RELEASE_SECURITY_DEPOSIT,
        booking=booking,
        defaults={'due_at': timezone.now() + delay},
    )
    if created:
        logger.info('Security deposit release for booking %s scheduled at %s', booking.id, job.due_at)
    return job


def _handlers(service):
    return {
        ScheduledJob.RELEASE_SECURITY_DEPOSIT: service.release_security_deposit,
    }


def run_due_jobs(service, now=None, limit=None):
    """Run every pending job whose due time has passed; returns the jobs touched."""
    now = now or timezone.now()
    limit = limit or settings.SCHEDULED_JOBS_BATCH_SIZE
    handlers = _handlers(service)

    job_ids = list(
        ScheduledJob.objects.filter(status='pending', due_at__lte=now)
        .order_by('due_at')
        .values_list('id', flat=True)[:limit]
    )

    processed = []
    for job_id in job_ids:
        job = _run_job(job_id, handlers)
        if job is not None:
            processed.append(job)
    return processed


def _run_job(job_id, handlers):
    with transaction.atomic():
        job = (
            ScheduledJob.objects.select_for_update(skip_locked=True)
            .filter(id=job_id, status='pending')
            .first()
        )
        if job is None:
            return None

        job.attempts += 1
        handler = handlers.get(job.job_type)
        try:
            if handler is None:
                raise LookupError(f'No handler for job type {job.job_type}')
            with transaction.atomic():
                handler(job.booking_id)
        except Exception as e:
            logger.exception('Scheduled job %s (%s) for booking %s failed', job.id, job.job_type, job.booking_id)
            job.status = 'failed'
            job.last_error = str(e)
        else:
            job.status = 'done'
            job.last_error = ''
        job.completed_at = timezone.now()
        job.save(update_fields=['status', 'attempts', 'last_error', 'completed_at'])
    return job
