import logging
from dataclasses import asdict

import httpx
from django.http import HttpResponse
from django.shortcuts import get_object_or_404
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response
from rest_framework.views import APIView

from chat.models import ContextRule
from chat.views import OwnedModelViewSet, UUID_PATTERN
from .models import KnowledgeBase, ScrapeJob
from .serializers import (
    KnowledgeBaseDocumentSerializer,
    KnowledgeBaseSerializer,
    KnowledgeQuerySerializer,
    ScrapeJobSerializer,
    ScrapeJobSummarySerializer,
    StartScrapeSerializer,
)
from .services.query import query_knowledge_bases
from .services.scraping import EXPORT_CONTENT_TYPES, export_job, run_scrape_job, search_scraped_documents
from .services.sync import sync_knowledge_base

logger = logging.getLogger(__name__)


class KnowledgeBaseViewSet(OwnedModelViewSet):
    serializer_class = KnowledgeBaseSerializer

    @action(detail=True, methods=["get", "post"])
    def documents(self, request, pk=None):
        kb = self.get_object()
        if request.method == "GET":
            return Response(KnowledgeBaseDocumentSerializer(kb.documents.all(), many=True).data)
        serializer = KnowledgeBaseDocumentSerializer(data=request.data)
        if serializer.is_valid():
            serializer.save(knowledge_base=kb)
            return Response(serializer.data, status=status.HTTP_201_CREATED)
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    @action(
        detail=True,
        methods=["delete"],
        url_path=f"documents/(?P<document_id>{UUID_PATTERN})",
    )
    def delete_document(self, request, pk=None, document_id=None):
        kb = self.get_object()
        document = get_object_or_404(kb.documents, id=document_id)
        document.delete()
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=False, methods=["post"])
    def query(self, request):
        serializer = KnowledgeQuerySerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        payload = serializer.validated_data
        context_rule = None
        if payload.context_rule_id:
            context_rule = get_object_or_404(ContextRule, id=payload.context_rule_id, owner=request.user)
        results = query_knowledge_bases(payload.query, payload.limit, context_rule=context_rule, user=request.user)
        return Response({"results": [asdict(result) for result in results]})

    @action(detail=True, methods=["post"])
    def sync(self, request, pk=None):
        kb = self.get_object()
        try:
            count = sync_knowledge_base(kb)
        except ValueError as exc:
            return Response({"message": str(exc)}, status=status.HTTP_400_BAD_REQUEST)
        except httpx.HTTPError as exc:
            logger.error(f"Manual sync of knowledge base {kb.id} failed: {exc}")
            return Response({"message": "Failed to sync knowledge base"}, status=status.HTTP_502_BAD_GATEWAY)
        kb.refresh_from_db()
        return Response({"documents": count, "last_synced_at": kb.last_synced_at})


class StartScrapeView(APIView):
    def post(self, request):
        serializer = StartScrapeSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        payload = serializer.validated_data
        knowledge_base = None
        if payload.knowledge_base_id:
            knowledge_base = get_object_or_404(KnowledgeBase, id=payload.knowledge_base_id, owner=request.user)
        job = ScrapeJob.objects.create(
            owner=request.user,
            url=payload.url,
            options=asdict(payload.options),
            knowledge_base=knowledge_base,
        )
        run_scrape_job.delay(str(job.id))
        return Response({"job_id": str(job.id)}, status=status.HTTP_202_ACCEPTED)


class ScrapeJobViewSet(
    mixins.ListModelMixin, mixins.RetrieveModelMixin, mixins.DestroyModelMixin, viewsets.GenericViewSet
):
    lookup_value_regex = UUID_PATTERN

    def get_queryset(self):
        return ScrapeJob.objects.filter(owner=self.request.user)

    def get_serializer_class(self):
        if self.action == "list":
            return ScrapeJobSummarySerializer
        return ScrapeJobSerializer

    @action(detail=True, methods=["get"])
    def export(self, request, pk=None):
        job = self.get_object()
        export_format = request.query_params.get("format", "json")
        if export_format not in EXPORT_CONTENT_TYPES:
            return Response(
                {"format": [f"Unsupported export format '{export_format}'"]}, status=status.HTTP_400_BAD_REQUEST
            )
        body, content_type = export_job(job, export_format)
        response = HttpResponse(body, content_type=content_type)
        response["Content-Disposition"] = f'attachment; filename="scrape-{str(job.id)[:8]}.{export_format}"'
        return response


class ScrapeSearchView(APIView):
    def get(self, request):
        query = request.query_params.get("query", "").strip()
        if not query:
            return Response({"query": ["This field is required."]}, status=status.HTTP_400_BAD_REQUEST)
        try:
            limit = int(request.query_params.get("limit", 5))
        except ValueError:
            return Response({"limit": ["A valid integer is required."]}, status=status.HTTP_400_BAD_REQUEST)
        results = search_scraped_documents(query, limit, owner=request.user)
        return Response({"results": [asdict(result) for result in results]})
