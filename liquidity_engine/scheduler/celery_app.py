"""
Celery application configuration.
"""
from celery import Celery
from celery.schedules import crontab
from config.settings import get_settings

settings = get_settings()

# Create Celery app
app = Celery(
    'liquidity_engine',
    broker=f'redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/0',
    backend=f'redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/0',
    include=['liquidity_engine.scheduler.tasks']
)

# Celery configuration (tasks run under a pool lock)
app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    result_expires=24 * 60 * 60,
    timezone='UTC',
    enable_utc=True,
    task_soft_time_limit=4 * 60,
    task_time_limit=5 * 60,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)

# Schedule configuration
app.conf.beat_schedule = {
    'reprice-pools-5min': {
        'task': 'liquidity_engine.scheduler.tasks.reprice_pools',
        'schedule': crontab(minute='*/5'),
    },
    'reconcile-pools-dry-run-hourly': {
        'task': 'liquidity_engine.scheduler.tasks.reconcile_pools',
        'schedule': crontab(minute=15),
        'kwargs': {'dry_run': True},
    },
    'save-pool-snapshots-daily': {
        'task': 'liquidity_engine.scheduler.tasks.save_pool_snapshots',
        'schedule': crontab(hour=21, minute=30),  # after US market close
    },
}

if __name__ == '__main__':
    app.start()
