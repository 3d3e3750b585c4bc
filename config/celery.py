from celery.schedules import crontab
import os
from celery import Celery

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# Load configuration from Django settings, using a CELERY_ namespace.
app.config_from_object("django.conf:settings", namespace="CELERY")

# Autodiscover tasks from all installed apps.
app.autodiscover_tasks()


app.conf.beat_schedule = {
    "cleanup-old-chat-data-daily": {
        "task": "chat.tasks.daily_cleanup",
        "schedule": crontab(hour=3, minute=0),
    },
    "purge-expired-records-weekly": {
        "task": "chat.tasks.weekly_cleanup",
        "schedule": crontab(hour=2, minute=0, day_of_week=0),  # Sunday
    },
    "sync-due-knowledge-bases": {
        "task": "knowledge.tasks.sync_due_knowledge_bases",
        "schedule": crontab(minute="*/15"),
    },
}
