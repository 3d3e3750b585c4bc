import logging

import httpx
from django.contrib import admin, messages

from chat.admin import BaseAdmin, EditableAdmin, ReadonlyAdmin, ReadonlyTabularInline
from .models import KnowledgeBase, KnowledgeBaseDocument, KnowledgeBaseQueryLog, ScrapeJob
from .services.sync import SYNCABLE_SOURCE_TYPES, sync_knowledge_base

log = logging.getLogger(__name__)


class KnowledgeBaseDocumentInline(ReadonlyTabularInline):
    model = KnowledgeBaseDocument
    fields = ("title", "source_url", "updated_at")
    readonly_fields = fields


@admin.register(KnowledgeBase)
class KnowledgeBaseAdmin(EditableAdmin):
    list_display = ("name", "owner", "source_type", "endpoint", "is_active", "refresh_interval", "last_synced_at")
    search_fields = ("name", "description", "endpoint")
    list_filter = ("source_type", "is_active", "is_public")
    readonly_fields = ("last_synced_at",)

    inlines = [KnowledgeBaseDocumentInline]

    @admin.action(description="Sync selected knowledge bases now")
    def sync_now(self, request, queryset):
        for kb in queryset.filter(source_type__in=SYNCABLE_SOURCE_TYPES):
            try:
                count = sync_knowledge_base(kb)
            except (ValueError, httpx.HTTPError) as e:
                log.error(f"Admin Site: sync of knowledge base {kb.id} failed: {e}")
                self.message_user(request, f"{kb.name}: {e}", messages.ERROR)
            else:
                self.message_user(request, f"{kb.name}: synced {count} document(s)", messages.SUCCESS)

    actions = ["sync_now"]


@admin.register(KnowledgeBaseDocument)
class KnowledgeBaseDocumentAdmin(EditableAdmin):
    list_display = ("title", "knowledge_base", "source_url", "updated_at")
    search_fields = ("title", "content")
    list_filter = ("knowledge_base",)


@admin.register(KnowledgeBaseQueryLog)
class KnowledgeBaseQueryLogAdmin(ReadonlyAdmin):
    list_display = ("query", "user", "context_rule", "results_count", "created_at")
    search_fields = ("query",)


@admin.register(ScrapeJob)
class ScrapeJobAdmin(BaseAdmin):
    list_display = ("url", "owner", "status", "progress", "knowledge_base", "created_at", "updated_at")
    search_fields = ("url",)
    list_filter = ("status",)
    readonly_fields = ("status", "progress", "error", "data", "metadata", "ai_analysis")
