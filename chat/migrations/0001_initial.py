import datetime
import uuid

import django.db.models.deletion
import django.utils.timezone
import simple_history.models
from django.conf import settings
from django.db import migrations, models

import chat.models

HISTORY_TYPES = [("+", "Created"), ("~", "Changed"), ("-", "Deleted")]


def history_fields():
    return [
        ("history_id", models.AutoField(primary_key=True, serialize=False)),
        ("history_date", models.DateTimeField(db_index=True)),
        ("history_change_reason", models.CharField(max_length=100, null=True)),
        ("history_type", models.CharField(choices=HISTORY_TYPES, max_length=1)),
        (
            "history_user",
            models.ForeignKey(
                null=True,
                on_delete=django.db.models.deletion.SET_NULL,
                related_name="+",
                to=settings.AUTH_USER_MODEL,
            ),
        ),
    ]


def historical_fk(to):
    return models.ForeignKey(
        blank=True,
        db_constraint=False,
        null=True,
        on_delete=django.db.models.deletion.DO_NOTHING,
        related_name="+",
        to=to,
    )


def config_fields():
    return [
        ("name", models.CharField(max_length=255)),
        ("description", models.TextField(blank=True, default="")),
        ("is_active", models.BooleanField(default=True)),
    ]


def historical_options(verbose_name):
    return {
        "verbose_name": f"historical {verbose_name}",
        "verbose_name_plural": f"historical {verbose_name}s",
        "ordering": ("-history_date", "-history_id"),
        "get_latest_by": ("history_date", "history_id"),
    }


HISTORICAL_BASES = (simple_history.models.HistoricalChanges, models.Model)

CONTEXT_RULE_FIELDS = [
    (
        "context_type",
        models.CharField(
            choices=[("business", "Business"), ("general", "General")], default="general", max_length=50
        ),
    ),
    ("keywords", models.JSONField(blank=True, default=list)),
    ("excluded_topics", models.JSONField(blank=True, default=list)),
    ("prompt_template", models.TextField(blank=True, default="")),
    ("response_filters", models.JSONField(blank=True, default=list)),
    ("use_knowledge_bases", models.BooleanField(default=False)),
    (
        "preferred_model",
        models.CharField(
            blank=True,
            choices=[("openai", "OpenAI"), ("gemini", "Gemini"), ("huggingface", "HuggingFace")],
            default="",
            max_length=50,
        ),
    ),
    ("version", models.IntegerField(default=1)),
]

WIDGET_CONFIG_FIELDS = [
    ("primary_color", models.CharField(default="#0066CC", max_length=20)),
    (
        "position",
        models.CharField(
            choices=[
                ("bottom-right", "Bottom Right"),
                ("bottom-left", "Bottom Left"),
                ("top-right", "Top Right"),
                ("top-left", "Top Left"),
            ],
            default="bottom-right",
            max_length=20,
        ),
    ),
    (
        "initial_state",
        models.CharField(
            choices=[("minimized", "Minimized"), ("expanded", "Expanded")], default="minimized", max_length=20
        ),
    ),
    ("allow_attachments", models.BooleanField(default=True)),
    ("allow_voice", models.BooleanField(default=True)),
    ("allow_emoji", models.BooleanField(default=True)),
    ("context_mode", models.CharField(default="default", max_length=50)),
    ("welcome_message", models.TextField(blank=True, default="")),
    ("placeholder_text", models.CharField(default="Type your message here...", max_length=255)),
    (
        "theme",
        models.CharField(
            choices=[("light", "Light"), ("dark", "Dark"), ("system", "System")], default="light", max_length=20
        ),
    ),
    ("settings", models.JSONField(blank=True, default=dict)),
]

PROMPT_TEMPLATE_FIELDS = [
    ("template", models.TextField()),
    ("variables", models.JSONField(blank=True, default=list)),
    ("category", models.CharField(blank=True, default="", max_length=50)),
]

RESPONSE_FORMAT_FIELDS = [
    (
        "format_type",
        models.CharField(
            choices=[("markdown", "Markdown"), ("html", "Html"), ("json", "Json"), ("text", "Text")],
            default="markdown",
            max_length=20,
        ),
    ),
    ("template", models.TextField()),
    ("variables", models.JSONField(blank=True, default=list)),
    ("branding_enabled", models.BooleanField(default=False)),
    ("brand_name", models.CharField(blank=True, default="", max_length=255)),
    ("brand_color", models.CharField(blank=True, default="", max_length=20)),
    ("brand_logo", models.CharField(blank=True, default="", max_length=255)),
    ("structured_data", models.BooleanField(default=False)),
    ("data_schema", models.JSONField(blank=True, null=True)),
]

MODERATION_RULE_FIELDS = [
    ("name", models.CharField(max_length=255)),
    ("description", models.TextField(blank=True, default="")),
    ("pattern", models.TextField()),
    (
        "action",
        models.CharField(
            choices=[("flag", "Flag"), ("block", "Block"), ("replace", "Replace")], default="flag", max_length=20
        ),
    ),
    ("replacement", models.TextField(blank=True, default="")),
    ("is_active", models.BooleanField(default=True)),
]

CONTROL_CONFIG_KEYS = [
    ("system_prompt", "System Prompt"),
    ("default_model", "Default Model"),
    ("moderation_message", "Moderation Message"),
    ("history_length", "History Length"),
    ("cache_ttl_seconds", "Cache Ttl Seconds"),
]


def config_model(name, fields, extra_fks=()):
    fields = [(field_name, field.clone()) for field_name, field in fields]
    return migrations.CreateModel(
        name=name,
        fields=[
            ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
            ("created_at", models.DateTimeField(default=django.utils.timezone.now, editable=False)),
            *config_fields(),
            ("updated_at", models.DateTimeField(auto_now=True)),
            *fields,
            (
                "owner",
                models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name="+", to=settings.AUTH_USER_MODEL
                ),
            ),
            *extra_fks,
        ],
        options={"ordering": ["-created_at"], "abstract": False},
    )


def historical_config_model(name, verbose_name, fields, extra_fks=()):
    fields = [(field_name, field.clone()) for field_name, field in fields]
    return migrations.CreateModel(
        name=name,
        fields=[
            ("id", models.UUIDField(db_index=True, default=uuid.uuid4, editable=False)),
            *config_fields(),
            ("updated_at", models.DateTimeField(blank=True, editable=False)),
            *fields,
            *history_fields(),
            ("owner", historical_fk(settings.AUTH_USER_MODEL)),
            *[(fk_name, historical_fk(to)) for fk_name, to in extra_fks],
        ],
        options=historical_options(verbose_name),
        bases=HISTORICAL_BASES,
    )


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        config_model("ContextRule", CONTEXT_RULE_FIELDS),
        historical_config_model("HistoricalContextRule", "context rule", CONTEXT_RULE_FIELDS),
        config_model(
            "WidgetConfig",
            WIDGET_CONFIG_FIELDS,
            extra_fks=[
                (
                    "context_rule",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="widgets",
                        to="chat.contextrule",
                    ),
                ),
            ],
        ),
        historical_config_model(
            "HistoricalWidgetConfig",
            "widget config",
            WIDGET_CONFIG_FIELDS,
            extra_fks=[("context_rule", "chat.contextrule")],
        ),
        config_model("PromptTemplate", PROMPT_TEMPLATE_FIELDS),
        historical_config_model("HistoricalPromptTemplate", "prompt template", PROMPT_TEMPLATE_FIELDS),
        migrations.CreateModel(
            name="PromptTemplateUsage",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now, editable=False)),
                (
                    "template",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE, related_name="usages", to="chat.prompttemplate"
                    ),
                ),
            ],
            options={"ordering": ["-created_at"], "abstract": False},
        ),
        config_model(
            "ResponseFormat",
            RESPONSE_FORMAT_FIELDS,
            extra_fks=[
                (
                    "context_rule",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="response_formats",
                        to="chat.contextrule",
                    ),
                ),
            ],
        ),
        historical_config_model(
            "HistoricalResponseFormat",
            "response format",
            RESPONSE_FORMAT_FIELDS,
            extra_fks=[("context_rule", "chat.contextrule")],
        ),
        migrations.CreateModel(
            name="ModerationRule",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now, editable=False)),
                *MODERATION_RULE_FIELDS,
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={"ordering": ["-created_at"], "abstract": False},
        ),
        migrations.CreateModel(
            name="HistoricalModerationRule",
            fields=[
                ("id", models.UUIDField(db_index=True, default=uuid.uuid4, editable=False)),
                *[(field_name, field.clone()) for field_name, field in MODERATION_RULE_FIELDS],
                ("updated_at", models.DateTimeField(blank=True, editable=False)),
                *history_fields(),
            ],
            options=historical_options("moderation rule"),
            bases=HISTORICAL_BASES,
        ),
        migrations.CreateModel(
            name="ChatSession",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now, editable=False)),
                ("visitor_id", models.CharField(blank=True, default="", max_length=255)),
                ("last_activity", models.DateTimeField(default=django.utils.timezone.now)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="chat_sessions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "widget",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="sessions",
                        to="chat.widgetconfig",
                    ),
                ),
            ],
            options={"ordering": ["-last_activity"], "abstract": False},
        ),
        migrations.CreateModel(
            name="ChatMessage",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now, editable=False)),
                (
                    "role",
                    models.CharField(
                        choices=[("user", "User"), ("assistant", "Assistant"), ("system", "System")], max_length=20
                    ),
                ),
                ("content", models.TextField()),
                ("attachments", models.JSONField(blank=True, default=list)),
                (
                    "moderation_status",
                    models.CharField(
                        choices=[
                            ("not_evaluated", "Not Evaluated"),
                            ("flagged", "Flagged"),
                            ("not_flagged", "Not Flagged"),
                            ("blocked", "Blocked"),
                        ],
                        default="not_evaluated",
                        max_length=15,
                    ),
                ),
                (
                    "session",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE, related_name="messages", to="chat.chatsession"
                    ),
                ),
            ],
            options={"ordering": ["created_at"], "abstract": False},
        ),
        migrations.CreateModel(
            name="ControlConfig",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now, editable=False)),
                ("key", models.TextField(choices=CONTROL_CONFIG_KEYS, unique=True)),
                ("value", models.TextField(blank=True, null=True)),
            ],
            options={"ordering": ["key"]},
        ),
        migrations.CreateModel(
            name="HistoricalControlConfig",
            fields=[
                ("id", models.UUIDField(db_index=True, default=uuid.uuid4, editable=False)),
                ("key", models.TextField(choices=CONTROL_CONFIG_KEYS, db_index=True)),
                ("value", models.TextField(blank=True, null=True)),
                *history_fields(),
            ],
            options=historical_options("control config"),
            bases=HISTORICAL_BASES,
        ),
        migrations.CreateModel(
            name="AIInteractionLog",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now, editable=False)),
                ("query", models.TextField()),
                ("response", models.TextField(blank=True, default="")),
                ("model_used", models.CharField(max_length=50)),
                ("knowledge_base_ids", models.JSONField(blank=True, default=list)),
                ("knowledge_base_results", models.IntegerField(default=0)),
                ("prompt_tokens", models.IntegerField(blank=True, null=True)),
                ("completion_tokens", models.IntegerField(blank=True, null=True)),
                ("latency", models.DurationField(default=datetime.timedelta(0))),
                ("cached", models.BooleanField(default=False)),
                ("error_log", models.TextField(blank=True, null=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "context_rule",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="interaction_logs",
                        to="chat.contextrule",
                    ),
                ),
                (
                    "session",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="interaction_logs",
                        to="chat.chatsession",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={"ordering": ["-created_at"], "abstract": False},
        ),
        migrations.CreateModel(
            name="FlaggedContent",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now, editable=False)),
                ("content_id", models.CharField(max_length=255)),
                (
                    "content_type",
                    models.CharField(
                        choices=[("message", "Message"), ("user", "User"), ("attachment", "Attachment")],
                        max_length=20,
                    ),
                ),
                ("reason", models.TextField()),
                (
                    "status",
                    models.CharField(
                        choices=[("pending", "Pending"), ("approved", "Approved"), ("rejected", "Rejected")],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("reported_by", models.CharField(blank=True, default="", max_length=255)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "reviewed_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={"verbose_name_plural": "Flagged content", "ordering": ["-created_at"], "abstract": False},
        ),
        migrations.CreateModel(
            name="UserBan",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now, editable=False)),
                ("subject", models.CharField(db_index=True, max_length=255)),
                ("reason", models.TextField()),
                ("expires_at", models.DateTimeField(blank=True, null=True)),
                (
                    "banned_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={"ordering": ["-created_at"], "abstract": False},
        ),
        migrations.CreateModel(
            name="ApiKey",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now, editable=False)),
                ("name", models.CharField(max_length=255)),
                (
                    "key",
                    models.CharField(default=chat.models.generate_api_key, editable=False, max_length=64, unique=True),
                ),
                ("is_active", models.BooleanField(default=True)),
                ("permissions", models.JSONField(blank=True, default=list)),
                ("last_used_at", models.DateTimeField(blank=True, null=True)),
                ("expires_at", models.DateTimeField(blank=True, null=True)),
                (
                    "owner",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="api_keys",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={"ordering": ["-created_at"], "abstract": False},
        ),
    ]
