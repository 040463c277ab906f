"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # Trim finished plan-sync job records down to the configured retention
    # (most recent completed / failed jobs are kept for the monitor).
    'prune-plan-sync-jobs': {
        'task': 'plan_sync.prune_job_records',
        'schedule': crontab(minute=0),  # Hourly
    },
}
