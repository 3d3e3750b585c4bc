import logging
import re
import secrets
import uuid
from datetime import timedelta

from django.conf import settings
from django.db import models
from django.forms import ValidationError
from django.utils import timezone
from simple_history.models import HistoricalRecords


logger = logging.getLogger(__name__)


class AIProvider(models.TextChoices):
    OPENAI = "openai", "OpenAI"
    GEMINI = "gemini", "Gemini"
    HUGGINGFACE = "huggingface", "HuggingFace"


class ModelBase(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    created_at = models.DateTimeField(default=timezone.now, editable=False)

    class Meta:
        abstract = True
        ordering = ["-created_at"]


class ConfigModelBase(ModelBase):
    """Base class for records edited from the dashboard. These keep an audit log."""

    history = HistoricalRecords(inherit=True, excluded_fields=["created_at"])

    owner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="+")
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    is_active = models.BooleanField(default=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True
        ordering = ["-created_at"]

    def __str__(self):
        return self.name


class ContextRule(ConfigModelBase):
    class ContextType(models.TextChoices):
        BUSINESS = "business", "Business"
        GENERAL = "general", "General"

    class FilterType(models.TextChoices):
        REPLACE = "replace"
        APPEND = "append"
        PREPEND = "prepend"

    context_type = models.CharField(max_length=50, choices=ContextType.choices, default=ContextType.GENERAL)
    keywords = models.JSONField(default=list, blank=True)
    excluded_topics = models.JSONField(default=list, blank=True)
    prompt_template = models.TextField(blank=True, default="")
    response_filters = models.JSONField(default=list, blank=True)
    use_knowledge_bases = models.BooleanField(default=False)
    knowledge_bases = models.ManyToManyField("knowledge.KnowledgeBase", related_name="context_rules", blank=True)
    preferred_model = models.CharField(max_length=50, choices=AIProvider.choices, blank=True, default="")
    version = models.IntegerField(default=1)

    def clean(self):
        super().clean()
        for field in ("keywords", "excluded_topics"):
            value = getattr(self, field)
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise ValidationError({field: "must be a list of strings"})
        validate_response_filters(self.response_filters)


def validate_response_filters(filters):
    if not isinstance(filters, list):
        raise ValidationError({"response_filters": "must be a list"})
    for response_filter in filters:
        if not isinstance(response_filter, dict):
            raise ValidationError({"response_filters": "each filter must be an object"})
        filter_type = response_filter.get("type")
        if filter_type == ContextRule.FilterType.REPLACE:
            if not response_filter.get("pattern") or "replacement" not in response_filter:
                raise ValidationError({"response_filters": "replace filters need a pattern and a replacement"})
            try:
                re.compile(response_filter["pattern"])
            except re.error as err:
                raise ValidationError({"response_filters": f"invalid pattern '{response_filter['pattern']}': {err}"})
        elif filter_type in (ContextRule.FilterType.APPEND, ContextRule.FilterType.PREPEND):
            if not response_filter.get("text"):
                raise ValidationError({"response_filters": f"{filter_type} filters need a text"})
        else:
            raise ValidationError({"response_filters": f"unknown filter type '{filter_type}'"})


class WidgetConfig(ConfigModelBase):
    class Position(models.TextChoices):
        BOTTOM_RIGHT = "bottom-right"
        BOTTOM_LEFT = "bottom-left"
        TOP_RIGHT = "top-right"
        TOP_LEFT = "top-left"

    class InitialState(models.TextChoices):
        MINIMIZED = "minimized"
        EXPANDED = "expanded"

    class Theme(models.TextChoices):
        LIGHT = "light"
        DARK = "dark"
        SYSTEM = "system"

    primary_color = models.CharField(max_length=20, default="#0066CC")
    position = models.CharField(max_length=20, choices=Position.choices, default=Position.BOTTOM_RIGHT)
    initial_state = models.CharField(max_length=20, choices=InitialState.choices, default=InitialState.MINIMIZED)
    allow_attachments = models.BooleanField(default=True)
    allow_voice = models.BooleanField(default=True)
    allow_emoji = models.BooleanField(default=True)
    context_mode = models.CharField(max_length=50, default="default")
    context_rule = models.ForeignKey(
        ContextRule, on_delete=models.SET_NULL, related_name="widgets", null=True, blank=True
    )
    welcome_message = models.TextField(blank=True, default="")
    placeholder_text = models.CharField(max_length=255, default="Type your message here...")
    theme = models.CharField(max_length=20, choices=Theme.choices, default=Theme.LIGHT)
    settings = models.JSONField(default=dict, blank=True)

    def clean(self):
        super().clean()
        if not re.fullmatch(r"#[0-9A-Fa-f]{3}([0-9A-Fa-f]{3})?", self.primary_color or ""):
            raise ValidationError({"primary_color": "must be a hex color such as #0066CC"})


class PromptTemplate(ConfigModelBase):
    template = models.TextField()
    variables = models.JSONField(default=list, blank=True)
    category = models.CharField(max_length=50, blank=True, default="")


class PromptTemplateUsage(ModelBase):
    template = models.ForeignKey(PromptTemplate, on_delete=models.CASCADE, related_name="usages")


class ResponseFormat(ConfigModelBase):
    class FormatType(models.TextChoices):
        MARKDOWN = "markdown"
        HTML = "html"
        JSON = "json"
        TEXT = "text"

    format_type = models.CharField(max_length=20, choices=FormatType.choices, default=FormatType.MARKDOWN)
    template = models.TextField()
    variables = models.JSONField(default=list, blank=True)
    branding_enabled = models.BooleanField(default=False)
    brand_name = models.CharField(max_length=255, blank=True, default="")
    brand_color = models.CharField(max_length=20, blank=True, default="")
    brand_logo = models.CharField(max_length=255, blank=True, default="")
    structured_data = models.BooleanField(default=False)
    data_schema = models.JSONField(null=True, blank=True)
    context_rule = models.ForeignKey(
        ContextRule, on_delete=models.SET_NULL, related_name="response_formats", null=True, blank=True
    )


class ModerationRule(ModelBase):
    class Action(models.TextChoices):
        FLAG = "flag", "Flag"
        BLOCK = "block", "Block"
        REPLACE = "replace", "Replace"

    history = HistoricalRecords(excluded_fields=["created_at"])

    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    pattern = models.TextField()
    action = models.CharField(max_length=20, choices=Action.choices, default=Action.FLAG)
    replacement = models.TextField(blank=True, default="")
    is_active = models.BooleanField(default=True)
    updated_at = models.DateTimeField(auto_now=True)

    def clean(self):
        super().clean()
        try:
            re.compile(self.pattern)
        except re.error as err:
            raise ValidationError({"pattern": f"invalid regular expression: {err}"})
        if self.action == self.Action.REPLACE and not self.replacement:
            raise ValidationError({"replacement": "replace rules need a replacement"})

    def __str__(self):
        return self.name


class ChatSession(ModelBase):
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, related_name="chat_sessions", null=True, blank=True
    )
    widget = models.ForeignKey(
        WidgetConfig, on_delete=models.SET_NULL, related_name="sessions", null=True, blank=True
    )
    visitor_id = models.CharField(max_length=255, blank=True, default="")
    last_activity = models.DateTimeField(default=timezone.now)
    metadata = models.JSONField(default=dict, blank=True)

    class Meta(ModelBase.Meta):
        ordering = ["-last_activity"]

    @property
    def ban_subjects(self) -> list[str]:
        """Identifiers a ban can target: the visitor and the authenticated user, when set."""
        return [subject for subject in (self.visitor_id, str(self.user_id) if self.user_id else "") if subject]

    def touch(self):
        self.last_activity = timezone.now()
        self.save(update_fields=["last_activity"])

    def __str__(self):
        return f"ChatSession({self.id})"


class ChatMessage(ModelBase):
    class Role(models.TextChoices):
        USER = "user", "User"
        ASSISTANT = "assistant", "Assistant"
        SYSTEM = "system", "System"

    class ModerationStatus(models.TextChoices):
        NOT_EVALUATED = "not_evaluated"
        FLAGGED = "flagged"
        NOT_FLAGGED = "not_flagged"
        BLOCKED = "blocked"

    session = models.ForeignKey(ChatSession, on_delete=models.CASCADE, related_name="messages")
    role = models.CharField(max_length=20, choices=Role.choices)
    content = models.TextField()
    attachments = models.JSONField(default=list, blank=True)
    moderation_status = models.CharField(
        max_length=15, choices=ModerationStatus.choices, default=ModerationStatus.NOT_EVALUATED
    )

    class Meta(ModelBase.Meta):
        ordering = ["created_at"]

    def __str__(self):
        return f"{self.role}: {self.content[:50]}"


class ControlConfig(ModelBase):
    class ControlConfigKey(models.TextChoices):
        SYSTEM_PROMPT = "system_prompt"
        DEFAULT_MODEL = "default_model"
        MODERATION_MESSAGE = "moderation_message"
        HISTORY_LENGTH = "history_length"
        CACHE_TTL_SECONDS = "cache_ttl_seconds"

    history = HistoricalRecords(excluded_fields=["created_at"])

    key = models.TextField(unique=True, choices=ControlConfigKey.choices)
    value = models.TextField(blank=True, null=True)

    @classmethod
    def retrieve(cls, key: ControlConfigKey | str):
        try:
            return cls.objects.get(key=str(key)).value
        except cls.DoesNotExist:
            logger.warning(f"ControlConfigKey key '{key}' requested but not found.")
            return None

    class Meta:
        ordering = ["key"]

    def __str__(self) -> str:
        return self.key


class AIInteractionLog(ModelBase):
    session = models.ForeignKey(
        ChatSession, on_delete=models.SET_NULL, related_name="interaction_logs", null=True, blank=True
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, related_name="+", null=True, blank=True
    )
    query = models.TextField()
    response = models.TextField(blank=True, default="")
    model_used = models.CharField(max_length=50)
    context_rule = models.ForeignKey(
        ContextRule, on_delete=models.SET_NULL, related_name="interaction_logs", null=True, blank=True
    )
    knowledge_base_ids = models.JSONField(default=list, blank=True)
    knowledge_base_results = models.IntegerField(default=0)
    prompt_tokens = models.IntegerField(null=True, blank=True)
    completion_tokens = models.IntegerField(null=True, blank=True)
    latency = models.DurationField(default=timedelta(0))
    cached = models.BooleanField(default=False)
    error_log = models.TextField(blank=True, null=True)
    metadata = models.JSONField(default=dict, blank=True)

    def __str__(self):
        return f"AIInteractionLog({self.model_used}, {self.id})"


class FlaggedContent(ModelBase):
    class ContentType(models.TextChoices):
        MESSAGE = "message"
        USER = "user"
        ATTACHMENT = "attachment"

    class Status(models.TextChoices):
        PENDING = "pending"
        APPROVED = "approved"
        REJECTED = "rejected"

    content_id = models.CharField(max_length=255)
    content_type = models.CharField(max_length=20, choices=ContentType.choices)
    reason = models.TextField()
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    reported_by = models.CharField(max_length=255, blank=True, default="")
    reviewed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, related_name="+", null=True, blank=True
    )
    updated_at = models.DateTimeField(auto_now=True)

    class Meta(ModelBase.Meta):
        verbose_name_plural = "Flagged content"


class UserBan(ModelBase):
    subject = models.CharField(max_length=255, db_index=True)
    reason = models.TextField()
    banned_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, related_name="+", null=True, blank=True
    )
    expires_at = models.DateTimeField(null=True, blank=True)

    @property
    def is_active(self) -> bool:
        return self.expires_at is None or self.expires_at > timezone.now()

    def __str__(self):
        return f"UserBan({self.subject})"


def generate_api_key() -> str:
    return secrets.token_hex(32)


class ApiKey(ModelBase):
    owner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="api_keys")
    name = models.CharField(max_length=255)
    key = models.CharField(max_length=64, unique=True, default=generate_api_key, editable=False)
    is_active = models.BooleanField(default=True)
    permissions = models.JSONField(default=list, blank=True)
    last_used_at = models.DateTimeField(null=True, blank=True)
    expires_at = models.DateTimeField(null=True, blank=True)

    @property
    def is_usable(self) -> bool:
        return self.is_active and (self.expires_at is None or self.expires_at > timezone.now())

    def __str__(self):
        return self.name
