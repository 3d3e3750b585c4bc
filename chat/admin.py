import logging
from django.contrib import admin, messages
from django.db.models.query import QuerySet
from django.urls import reverse
from django.utils.html import format_html

from .models import (
    AIInteractionLog,
    ApiKey,
    ChatMessage,
    ChatSession,
    ContextRule,
    ControlConfig,
    FlaggedContent,
    ModerationRule,
    PromptTemplate,
    ResponseFormat,
    UserBan,
    WidgetConfig,
)
from .services.moderation import review_content
from admin.models import AuthGroupName
from simple_history.admin import SimpleHistoryAdmin
from import_export.admin import ImportExportModelAdmin

log = logging.getLogger(__name__)


class BaseAdmin(SimpleHistoryAdmin):
    # base admin class that logs all actions
    def render_change_form(self, request, context, add=False, change=False, form_url="", obj=None):
        if obj:
            log.info(f"Admin Site: User {request.user} viewed {self.model.__name__} {obj.id}")
        return super().render_change_form(request, context, add, change, form_url, obj)

    def changelist_view(self, request, extra_context=None):
        log.info(f"Admin Site: User {request.user} viewed {self.model.__name__} list")
        return super().changelist_view(request, extra_context)


def in_group(request, group: AuthGroupName) -> bool:
    return request.user.is_superuser or group.value in request.user.groups.values_list("name", flat=True)


class ReadonlyAdmin(BaseAdmin):
    # base admin class that is read-only by default
    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        if request.user.is_staff and in_group(request, AuthGroupName.UnlockRestrictedContent):
            return super().has_change_permission(request, obj)
        else:
            return False


class EditableAdmin(BaseAdmin, ImportExportModelAdmin):
    pass


class ReadonlyTabularInline(admin.TabularInline):
    fields: tuple = ()
    extra = 0
    ordering = ("created_at",)
    can_delete = False
    has_add_permission = lambda self, request, obj: False
    classes = ["collapse", "collapsed"]

    def has_change_permission(self, request, obj=None):
        return False


# =============================================================================
# Configuration
# =============================================================================


class WidgetInline(ReadonlyTabularInline):
    model = WidgetConfig
    fields = ("name", "is_active", "position", "theme")
    readonly_fields = fields


@admin.register(WidgetConfig)
class WidgetConfigAdmin(EditableAdmin):
    list_display = ("name", "owner", "is_active", "context_rule", "position", "theme", "updated_at")
    search_fields = ("name", "description")
    list_filter = ("is_active", "position", "theme")

    def has_module_permission(self, request):
        return request.user.is_staff and (
            in_group(request, AuthGroupName.WidgetManager) or super().has_module_permission(request)
        )

    @admin.display(description="Sessions")
    def session_count(self, obj):
        return obj.sessions.count()

    readonly_fields = ("session_count",)


@admin.register(ContextRule)
class ContextRuleAdmin(EditableAdmin):
    list_display = ("name", "owner", "context_type", "is_active", "use_knowledge_bases", "preferred_model", "version")
    search_fields = ("name", "description")
    list_filter = ("context_type", "is_active", "preferred_model")
    filter_horizontal = ("knowledge_bases",)

    inlines = [WidgetInline]


@admin.register(PromptTemplate)
class PromptTemplateAdmin(EditableAdmin):
    list_display = ("name", "owner", "category", "is_active", "updated_at")
    search_fields = ("name", "template")
    list_filter = ("category", "is_active")

    @admin.display(description="Times Used")
    def usage_count(self, obj):
        return obj.usages.count()

    readonly_fields = ("usage_count",)


@admin.register(ResponseFormat)
class ResponseFormatAdmin(EditableAdmin):
    list_display = ("name", "owner", "format_type", "branding_enabled", "is_active", "updated_at")
    search_fields = ("name", "template")
    list_filter = ("format_type", "is_active")


@admin.register(ControlConfig)
class ControlConfigAdmin(EditableAdmin):
    list_display = ("key", "value", "created_at")


@admin.register(ApiKey)
class ApiKeyAdmin(BaseAdmin):
    list_display = ("name", "owner", "is_active", "last_used_at", "expires_at")
    list_filter = ("is_active",)
    readonly_fields = ("key", "last_used_at")


# =============================================================================
# Moderation
# =============================================================================


class ModeratorAdmin(BaseAdmin):
    def has_module_permission(self, request):
        return request.user.is_staff and (
            in_group(request, AuthGroupName.Moderator) or super().has_module_permission(request)
        )


@admin.register(ModerationRule)
class ModerationRuleAdmin(ModeratorAdmin, ImportExportModelAdmin):
    list_display = ("name", "pattern", "action", "replacement", "is_active")
    search_fields = ("name", "pattern")
    list_filter = ("action", "is_active")


@admin.register(FlaggedContent)
class FlaggedContentAdmin(ModeratorAdmin):
    list_display = ("content_type", "content_link", "reason", "status", "reported_by", "reviewed_by", "created_at")
    search_fields = ("content_id", "reason")
    list_filter = ("status", "content_type")
    readonly_fields = ("content_id", "content_type", "reason", "reported_by", "reviewed_by")

    @admin.display(description="Content")
    def content_link(self, obj):
        if obj.content_type != FlaggedContent.ContentType.MESSAGE:
            return obj.content_id
        url = reverse("admin:chat_chatmessage_change", args=[obj.content_id])
        return format_html('<a href="{}">{}</a>', url, obj.content_id)

    def _review(self, request, queryset: QuerySet[FlaggedContent], status):
        for flagged in queryset:
            review_content(flagged.id, status, request.user)
        self.message_user(request, f"Marked {queryset.count()} item(s) as {status}", messages.SUCCESS)

    @admin.action(description="Approve selected content")
    def approve(self, request, queryset):
        self._review(request, queryset, FlaggedContent.Status.APPROVED)

    @admin.action(description="Reject selected content")
    def reject(self, request, queryset):
        self._review(request, queryset, FlaggedContent.Status.REJECTED)

    actions = ["approve", "reject"]


@admin.register(UserBan)
class UserBanAdmin(ModeratorAdmin):
    list_display = ("subject", "reason", "banned_by", "expires_at", "is_active", "created_at")
    search_fields = ("subject", "reason")

    @admin.display(boolean=True, description="Active")
    def is_active(self, obj):
        return obj.is_active


# =============================================================================
# Conversations
# =============================================================================


class ChatMessageInline(ReadonlyTabularInline):
    model = ChatMessage
    fields = ("role", "content", "moderation_status", "created_at")
    readonly_fields = fields


class AIInteractionLogInline(ReadonlyTabularInline):
    model = AIInteractionLog
    fields = ("model_used", "latency", "cached", "error_log", "created_at")
    readonly_fields = fields
    ordering = ("-created_at",)


@admin.register(ChatSession)
class ChatSessionAdmin(ReadonlyAdmin):
    list_display = ("id", "widget", "user", "visitor_id", "last_activity", "created_at")
    search_fields = ("id", "visitor_id")
    list_filter = ("widget",)

    inlines = [ChatMessageInline, AIInteractionLogInline]


@admin.register(ChatMessage)
class ChatMessageAdmin(ReadonlyAdmin):
    list_display = ("session", "role", "content", "moderation_status", "created_at")
    search_fields = ("content",)
    list_filter = ("role", "moderation_status")


@admin.register(AIInteractionLog)
class AIInteractionLogAdmin(ReadonlyAdmin):
    list_display = (
        "session",
        "model_used",
        "context_rule",
        "query",
        "response",
        "knowledge_base_results",
        "latency",
        "cached",
        "error_log",
        "created_at",
    )
    search_fields = ("query", "response", "error_log")
    list_filter = ("model_used", "cached")
