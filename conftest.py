import sys
from unittest.mock import MagicMock, patch

import factory
import pytest
from django.contrib.auth import get_user_model
from django.test import override_settings
from pytest_factoryboy import register
from rest_framework.test import APIClient

from chat.models import (
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
from knowledge.models import KnowledgeBase, KnowledgeBaseDocument, ScrapeJob


@pytest.hookimpl(tryfirst=True)
def pytest_configure(config: pytest.Config):
    if "xdist" not in sys.modules:
        return
    if config.option.file_or_dir and len(config.option.file_or_dir) == 1 and "::" in config.option.file_or_dir[0]:
        # if just running one test then disable xdist as generally this will be faster
        config.option.dist = "no"
        config.option.numprocesses = 0


@pytest.fixture(autouse=True)
def enable_db_access(db):
    pass


@pytest.fixture(autouse=True)
def overwrite_secrets():
    # overwrite secrets to prevent hitting real services while unit testing, just in case
    with override_settings(
        OPENAI_API_KEY="fake-openai-api-key",
        GEMINI_API_KEY="fake-gemini-api-key",
        HUGGINGFACE_API_KEY="fake-huggingface-api-key",
        MODERATION_USE_OPENAI=False,
        PUBLIC_URL="https://widgets.example.com",
    ):
        yield


@pytest.fixture(autouse=True)
def mock_redis():
    # response cache always misses unless a test configures the mock
    redis_client = MagicMock()
    redis_client.get.return_value = None
    redis_client.scan_iter.return_value = []
    with patch("chat.services.cache.response_cache.redis_client", redis_client):
        yield redis_client


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def owner(user_factory):
    return user_factory()


@pytest.fixture
def owner_client(owner):
    client = APIClient()
    client.force_authenticate(user=owner)
    return client


class UserFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = get_user_model()

    username = factory.Sequence(lambda n: f"user{n}")
    email = factory.Faker("email")


class ContextRuleFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = ContextRule

    owner = factory.SubFactory(UserFactory)
    name = factory.Faker("catch_phrase")
    keywords = factory.LazyFunction(lambda: ["pricing", "billing"])
    excluded_topics = factory.LazyFunction(list)
    response_filters = factory.LazyFunction(list)


class WidgetConfigFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = WidgetConfig

    owner = factory.SubFactory(UserFactory)
    name = factory.Faker("company")
    welcome_message = "Hi! How can I help?"
    context_rule = None


class PromptTemplateFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = PromptTemplate

    owner = factory.SubFactory(UserFactory)
    name = factory.Faker("word")
    template = "Hello {{name}}, welcome to {{company}}."
    variables = factory.LazyFunction(lambda: ["name", "company"])
    category = "greeting"


class ResponseFormatFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = ResponseFormat

    owner = factory.SubFactory(UserFactory)
    name = factory.Faker("word")
    format_type = ResponseFormat.FormatType.MARKDOWN
    template = "**{{title}}**"


class ModerationRuleFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = ModerationRule

    name = factory.Faker("word")
    pattern = "badword"
    action = ModerationRule.Action.FLAG


class ChatSessionFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = ChatSession

    widget = factory.SubFactory(WidgetConfigFactory)
    user = None
    visitor_id = factory.Faker("uuid4")


class ChatMessageFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = ChatMessage

    session = factory.SubFactory(ChatSessionFactory)
    role = ChatMessage.Role.USER
    content = factory.Faker("sentence")


class ControlConfigFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = ControlConfig

    key = ControlConfig.ControlConfigKey.SYSTEM_PROMPT
    value = factory.Faker("sentence")


class AIInteractionLogFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = AIInteractionLog

    session = factory.SubFactory(ChatSessionFactory)
    query = factory.Faker("sentence")
    response = factory.Faker("sentence")
    model_used = "openai"


class FlaggedContentFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = FlaggedContent

    content_id = factory.Faker("uuid4")
    content_type = FlaggedContent.ContentType.MESSAGE
    reason = factory.Faker("sentence")


class UserBanFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = UserBan

    subject = factory.Faker("uuid4")
    reason = factory.Faker("sentence")


class ApiKeyFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = ApiKey

    owner = factory.SubFactory(UserFactory)
    name = factory.Faker("word")


class KnowledgeBaseFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = KnowledgeBase

    owner = factory.SubFactory(UserFactory)
    name = factory.Faker("word")
    source_type = KnowledgeBase.SourceType.DATABASE


class KnowledgeBaseDocumentFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = KnowledgeBaseDocument

    knowledge_base = factory.SubFactory(KnowledgeBaseFactory)
    title = factory.Faker("sentence", nb_words=3)
    content = factory.Faker("paragraph")


class ScrapeJobFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = ScrapeJob

    owner = factory.SubFactory(UserFactory)
    url = "https://example.com/"


# register factories as fixtures
register(UserFactory)
register(ContextRuleFactory)
register(WidgetConfigFactory)
register(PromptTemplateFactory)
register(ResponseFormatFactory)
register(ModerationRuleFactory)
register(ChatSessionFactory)
register(ChatMessageFactory)
register(ControlConfigFactory)
register(AIInteractionLogFactory)
register(FlaggedContentFactory)
register(UserBanFactory)
register(ApiKeyFactory)
register(KnowledgeBaseFactory)
register(KnowledgeBaseDocumentFactory)
register(ScrapeJobFactory)
