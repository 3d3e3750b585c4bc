import uuid
from dataclasses import dataclass, field
from typing import Optional

from rest_framework import serializers
from rest_framework_dataclasses.serializers import DataclassSerializer

from chat.serializers import OwnedModelSerializer
from knowledge.models import KnowledgeBase, KnowledgeBaseDocument, ScrapeJob


@dataclass
class AdvancedScrapeOptions:
    follow_links: bool = False
    max_depth: int = 1
    allowed_domains: list[str] = field(default_factory=list)
    exclude_urls: list[str] = field(default_factory=list)
    request_delay: int = 0  # milliseconds
    user_agent: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    timeout: Optional[int] = None  # seconds
    retries: Optional[int] = None


@dataclass
class AIScrapeOptions:
    generate_summary: bool = False
    extract_keywords: bool = False


@dataclass
class ScrapeOptions:
    include_header: bool = False
    include_footer: bool = False
    scrape_text: bool = True
    scrape_images: bool = False
    scrape_videos: bool = False
    selector: str = ""
    max_pages: int = 10
    ai_options: AIScrapeOptions = field(default_factory=AIScrapeOptions)
    advanced_options: AdvancedScrapeOptions = field(default_factory=AdvancedScrapeOptions)


class ScrapeOptionsSerializer(DataclassSerializer):
    class Meta:
        dataclass = ScrapeOptions
        extra_kwargs = {
            "selector": {"allow_blank": True},
            "max_pages": {"min_value": 1},
            "advanced_options": {"required": False},
            "ai_options": {"required": False},
        }


@dataclass
class StartScrape:
    url: str
    options: ScrapeOptions = field(default_factory=ScrapeOptions)
    knowledge_base_id: Optional[uuid.UUID] = None


class StartScrapeSerializer(DataclassSerializer):
    url = serializers.URLField()

    class Meta:
        dataclass = StartScrape
        extra_kwargs = {
            "options": {"required": False},
            "knowledge_base_id": {"required": False},
        }


class ScrapeJobSerializer(serializers.ModelSerializer):
    class Meta:
        model = ScrapeJob
        fields = [
            "id",
            "url",
            "options",
            "status",
            "progress",
            "error",
            "data",
            "metadata",
            "ai_analysis",
            "knowledge_base",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class ScrapeJobSummarySerializer(serializers.ModelSerializer):
    class Meta:
        model = ScrapeJob
        fields = ["id", "url", "status", "progress", "error", "created_at", "updated_at"]
        read_only_fields = fields


class KnowledgeBaseSerializer(OwnedModelSerializer):
    class Meta:
        model = KnowledgeBase
        fields = [
            "id",
            "owner",
            "name",
            "description",
            "source_type",
            "endpoint",
            "api_key",
            "parameters",
            "refresh_interval",
            "is_active",
            "is_public",
            "last_synced_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "last_synced_at", "created_at", "updated_at"]
        extra_kwargs = {"api_key": {"write_only": True}}


class KnowledgeBaseDocumentSerializer(serializers.ModelSerializer):
    class Meta:
        model = KnowledgeBaseDocument
        fields = ["id", "knowledge_base", "title", "content", "source_url", "metadata", "created_at", "updated_at"]
        read_only_fields = ["id", "knowledge_base", "created_at", "updated_at"]


@dataclass
class KnowledgeQuery:
    query: str
    limit: int = 5
    context_rule_id: Optional[uuid.UUID] = None


class KnowledgeQuerySerializer(DataclassSerializer):
    class Meta:
        dataclass = KnowledgeQuery
        extra_kwargs = {
            "limit": {"min_value": 1, "max_value": 50},
            "context_rule_id": {"required": False},
        }

