from datetime import timedelta

from django.conf import settings
from django.db import models
from django.forms import ValidationError
from django.utils import timezone

from chat.models import ConfigModelBase, ModelBase


class KnowledgeBase(ConfigModelBase):
    class SourceType(models.TextChoices):
        API = "api", "API"
        DATABASE = "database", "Database"
        CMS = "cms", "CMS"
        VECTOR = "vector", "Vector"
        FILE = "file", "File"

    # these source types are queried over HTTP, the rest search stored documents
    REMOTE_SOURCE_TYPES = (SourceType.API, SourceType.CMS, SourceType.VECTOR)

    source_type = models.CharField(max_length=20, choices=SourceType.choices, default=SourceType.DATABASE)
    endpoint = models.URLField(max_length=500, blank=True, default="")
    api_key = models.CharField(max_length=255, blank=True, default="")
    parameters = models.JSONField(default=dict, blank=True)
    refresh_interval = models.IntegerField(default=0, help_text="Minutes between syncs, 0 disables syncing")
    is_public = models.BooleanField(default=False)
    last_synced_at = models.DateTimeField(null=True, blank=True)

    def clean(self):
        super().clean()
        if self.source_type in self.REMOTE_SOURCE_TYPES and not self.endpoint:
            raise ValidationError({"endpoint": f"an endpoint is required for {self.source_type} knowledge bases"})
        if not isinstance(self.parameters, dict):
            raise ValidationError({"parameters": "must be a JSON object"})
        if self.refresh_interval < 0:
            raise ValidationError({"refresh_interval": "must be greater than or equal to 0"})

    @property
    def sync_due(self) -> bool:
        if self.refresh_interval <= 0:
            return False
        if self.last_synced_at is None:
            return True
        return self.last_synced_at + timedelta(minutes=self.refresh_interval) <= timezone.now()


class KnowledgeBaseDocument(ModelBase):
    knowledge_base = models.ForeignKey(KnowledgeBase, on_delete=models.CASCADE, related_name="documents")
    title = models.CharField(max_length=255, blank=True, default="")
    content = models.TextField()
    source_url = models.URLField(max_length=500, blank=True, default="")
    metadata = models.JSONField(default=dict, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.title or f"Document({self.id})"


class KnowledgeBaseQueryLog(ModelBase):
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, related_name="+", null=True, blank=True
    )
    query = models.TextField()
    context_rule = models.ForeignKey(
        "chat.ContextRule", on_delete=models.SET_NULL, related_name="+", null=True, blank=True
    )
    knowledge_base_ids = models.JSONField(default=list, blank=True)
    results_count = models.IntegerField(default=0)


def empty_scrape_data():
    return {"text": [], "images": [], "videos": [], "tables": [], "lists": [], "links": [], "structured_data": {}}


def empty_scrape_metadata():
    return {"page_title": "", "page_description": "", "page_keywords": [], "total_elements": 0, "scraped_pages": 0}


class ScrapeJob(ModelBase):
    class Status(models.TextChoices):
        IN_PROGRESS = "in-progress", "In Progress"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"

    owner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="scrape_jobs")
    url = models.URLField(max_length=500)
    options = models.JSONField(default=dict, blank=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.IN_PROGRESS)
    progress = models.IntegerField(default=0)
    error = models.TextField(blank=True, default="")
    data = models.JSONField(default=empty_scrape_data)
    metadata = models.JSONField(default=empty_scrape_metadata)
    ai_analysis = models.JSONField(default=dict, blank=True)
    knowledge_base = models.ForeignKey(
        KnowledgeBase, on_delete=models.SET_NULL, related_name="scrape_jobs", null=True, blank=True
    )
    updated_at = models.DateTimeField(auto_now=True)

    def add_error(self, message: str):
        self.error = f"{self.error}\n{message}" if self.error else message

    def __str__(self):
        return f"ScrapeJob({self.url}, {self.status})"
