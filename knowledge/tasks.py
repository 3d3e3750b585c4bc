from celery import shared_task

from knowledge.services import sync
from knowledge.services.scraping import run_scrape_job  # noqa: F401


@shared_task()
def sync_due_knowledge_bases():
    return sync.sync_due_knowledge_bases()
