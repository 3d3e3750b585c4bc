import copy
import uuid
from dataclasses import dataclass, field
from typing import Optional

from django.core.exceptions import ValidationError as DjangoValidationError
from rest_framework import serializers
from rest_framework_dataclasses.serializers import DataclassSerializer

from .models import (
    AIInteractionLog,
    ApiKey,
    ChatMessage,
    ChatSession,
    ContextRule,
    FlaggedContent,
    ModerationRule,
    PromptTemplate,
    ResponseFormat,
    UserBan,
    WidgetConfig,
)


# =============================================================================
# Record serializers
# =============================================================================


class ModelCleanSerializer(serializers.ModelSerializer):
    """Runs the model's clean() so API writes get the same checks as the admin."""

    def validate(self, attrs):
        attrs = super().validate(attrs)
        instance = copy.copy(self.instance) if self.instance is not None else self.Meta.model()
        many_to_many = {f.name for f in self.Meta.model._meta.many_to_many}
        for name, value in attrs.items():
            if name not in many_to_many:
                setattr(instance, name, value)
        try:
            instance.clean()
        except DjangoValidationError as exc:
            raise serializers.ValidationError(exc.message_dict if hasattr(exc, "error_dict") else exc.messages)
        return attrs


class OwnedModelSerializer(ModelCleanSerializer):
    owner = serializers.PrimaryKeyRelatedField(read_only=True)


class WidgetConfigSerializer(OwnedModelSerializer):
    class Meta:
        model = WidgetConfig
        fields = [
            "id",
            "owner",
            "name",
            "description",
            "is_active",
            "primary_color",
            "position",
            "initial_state",
            "allow_attachments",
            "allow_voice",
            "allow_emoji",
            "context_mode",
            "context_rule",
            "welcome_message",
            "placeholder_text",
            "theme",
            "settings",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]

    def get_fields(self):
        fields = super().get_fields()
        request = self.context.get("request")
        if request is not None and request.user.is_authenticated:
            fields["context_rule"].queryset = ContextRule.objects.filter(owner=request.user)
        return fields


class PublicWidgetConfigSerializer(serializers.ModelSerializer):
    class Meta:
        model = WidgetConfig
        fields = [
            "id",
            "name",
            "primary_color",
            "position",
            "initial_state",
            "allow_attachments",
            "allow_voice",
            "allow_emoji",
            "welcome_message",
            "placeholder_text",
            "theme",
            "settings",
        ]
        read_only_fields = fields


class ContextRuleSerializer(OwnedModelSerializer):
    class Meta:
        model = ContextRule
        fields = [
            "id",
            "owner",
            "name",
            "description",
            "is_active",
            "context_type",
            "keywords",
            "excluded_topics",
            "prompt_template",
            "response_filters",
            "use_knowledge_bases",
            "knowledge_bases",
            "preferred_model",
            "version",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "version", "created_at", "updated_at"]

    def get_fields(self):
        from knowledge.models import KnowledgeBase

        fields = super().get_fields()
        request = self.context.get("request")
        if request is not None and request.user.is_authenticated:
            fields["knowledge_bases"].child_relation.queryset = KnowledgeBase.objects.filter(owner=request.user)
        return fields

    def update(self, instance, validated_data):
        validated_data["version"] = instance.version + 1
        return super().update(instance, validated_data)


class PromptTemplateSerializer(OwnedModelSerializer):
    class Meta:
        model = PromptTemplate
        fields = [
            "id",
            "owner",
            "name",
            "description",
            "template",
            "variables",
            "category",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]


class ResponseFormatSerializer(OwnedModelSerializer):
    class Meta:
        model = ResponseFormat
        fields = [
            "id",
            "owner",
            "name",
            "description",
            "format_type",
            "template",
            "variables",
            "is_active",
            "branding_enabled",
            "brand_name",
            "brand_color",
            "brand_logo",
            "structured_data",
            "data_schema",
            "context_rule",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]

    def get_fields(self):
        fields = super().get_fields()
        request = self.context.get("request")
        if request is not None and request.user.is_authenticated:
            fields["context_rule"].queryset = ContextRule.objects.filter(owner=request.user)
        return fields


class ModerationRuleSerializer(ModelCleanSerializer):
    class Meta:
        model = ModerationRule
        fields = ["id", "name", "description", "pattern", "action", "replacement", "is_active", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]


class ApiKeySerializer(serializers.ModelSerializer):
    class Meta:
        model = ApiKey
        fields = ["id", "name", "key", "is_active", "permissions", "last_used_at", "expires_at", "created_at"]
        read_only_fields = ["id", "key", "last_used_at", "created_at"]


class ChatMessageSerializer(serializers.ModelSerializer):
    class Meta:
        model = ChatMessage
        fields = ["id", "session", "role", "content", "attachments", "moderation_status", "created_at"]
        read_only_fields = fields


class ChatSessionSerializer(serializers.ModelSerializer):
    class Meta:
        model = ChatSession
        fields = ["id", "widget", "visitor_id", "last_activity", "metadata", "created_at"]
        read_only_fields = fields


class ChatSessionSummarySerializer(ChatSessionSerializer):
    message_count = serializers.IntegerField(read_only=True)

    class Meta(ChatSessionSerializer.Meta):
        fields = ChatSessionSerializer.Meta.fields + ["message_count"]
        read_only_fields = fields


class AIInteractionLogSerializer(serializers.ModelSerializer):
    class Meta:
        model = AIInteractionLog
        fields = [
            "id",
            "session",
            "query",
            "response",
            "model_used",
            "context_rule",
            "knowledge_base_ids",
            "knowledge_base_results",
            "prompt_tokens",
            "completion_tokens",
            "latency",
            "cached",
            "error_log",
            "metadata",
            "created_at",
        ]
        read_only_fields = fields


class FlaggedContentSerializer(serializers.ModelSerializer):
    class Meta:
        model = FlaggedContent
        fields = ["id", "content_id", "content_type", "reason", "status", "reported_by", "reviewed_by", "created_at", "updated_at"]
        read_only_fields = fields


class UserBanSerializer(serializers.ModelSerializer):
    class Meta:
        model = UserBan
        fields = ["id", "subject", "reason", "banned_by", "expires_at", "created_at"]
        read_only_fields = fields


# =============================================================================
# Request payloads
# =============================================================================


@dataclass
class Attachment:
    name: str
    url: str
    type: str = ""


@dataclass
class IncomingChatMessage:
    content: str
    attachments: list[Attachment] = field(default_factory=list)


class IncomingChatMessageSerializer(DataclassSerializer):
    class Meta:
        dataclass = IncomingChatMessage
        extra_kwargs = {
            "content": {"trim_whitespace": True},
            "attachments": {"required": False},
        }


@dataclass
class StartChatSession:
    widget_id: Optional[uuid.UUID] = None
    visitor_id: Optional[str] = None


class StartChatSessionSerializer(DataclassSerializer):
    class Meta:
        dataclass = StartChatSession
        extra_kwargs = {
            "widget_id": {"required": False},
            "visitor_id": {"required": False, "allow_blank": True},
        }


@dataclass
class ContextRuleTest:
    rule_id: uuid.UUID
    query: str


class ContextRuleTestSerializer(DataclassSerializer):
    class Meta:
        dataclass = ContextRuleTest


@dataclass
class ApplyVariables:
    variables: dict[str, str]


class ApplyVariablesSerializer(DataclassSerializer):
    class Meta:
        dataclass = ApplyVariables


@dataclass
class ModerationCheck:
    content: str


class ModerationCheckSerializer(DataclassSerializer):
    class Meta:
        dataclass = ModerationCheck


@dataclass
class ContentReport:
    content_id: str
    content_type: str
    reason: str


class ContentReportSerializer(DataclassSerializer):
    content_type = serializers.ChoiceField(choices=FlaggedContent.ContentType.choices)

    class Meta:
        dataclass = ContentReport


@dataclass
class ContentReview:
    status: str


class ContentReviewSerializer(DataclassSerializer):
    status = serializers.ChoiceField(choices=[FlaggedContent.Status.APPROVED, FlaggedContent.Status.REJECTED])

    class Meta:
        dataclass = ContentReview


@dataclass
class BanRequest:
    subject: str
    reason: str
    duration_seconds: Optional[int] = None


class BanRequestSerializer(DataclassSerializer):
    class Meta:
        dataclass = BanRequest
        extra_kwargs = {
            "duration_seconds": {"required": False, "min_value": 1},
        }
