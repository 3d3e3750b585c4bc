import logging
from dataclasses import asdict

from django.conf import settings
from django.db.models import Avg, Count, Q
from django.shortcuts import get_object_or_404
from django.utils.dateparse import parse_datetime
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.generics import ListAPIView
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from .models import (
    AIInteractionLog,
    ChatSession,
    FlaggedContent,
    ModerationRule,
    WidgetConfig,
)
from .serializers import (
    AIInteractionLogSerializer,
    ApiKeySerializer,
    ApplyVariablesSerializer,
    BanRequestSerializer,
    ChatMessageSerializer,
    ChatSessionSerializer,
    ChatSessionSummarySerializer,
    ContentReportSerializer,
    ContentReviewSerializer,
    ContextRuleSerializer,
    ContextRuleTestSerializer,
    FlaggedContentSerializer,
    IncomingChatMessageSerializer,
    ModerationCheckSerializer,
    ModerationRuleSerializer,
    PromptTemplateSerializer,
    PublicWidgetConfigSerializer,
    ResponseFormatSerializer,
    StartChatSessionSerializer,
    UserBanSerializer,
    WidgetConfigSerializer,
)
from .services.context import test_context_rule
from .services.moderation import ban_user, check_content, get_moderation_queue, report_content, review_content
from .services.pipeline import AIResponseError, UserBannedError, process_message, start_session
from .services.templating import apply_prompt_template, apply_response_format

logger = logging.getLogger(__name__)

UUID_PATTERN = "[0-9a-fA-F-]{36}"


class HealthCheckView(APIView):
    authentication_classes = []
    permission_classes = [AllowAny]

    def get(self, request):
        return Response({"message": "Service is healthy", "status": "ok", "code": 200}, status=status.HTTP_200_OK)


# =============================================================================
# Configuration records
# =============================================================================


class OwnedModelViewSet(viewsets.ModelViewSet):
    """CRUD over the records owned by the requesting user."""

    lookup_value_regex = UUID_PATTERN

    def get_queryset(self):
        return self.serializer_class.Meta.model.objects.filter(owner=self.request.user)

    def perform_create(self, serializer):
        instance = serializer.save(owner=self.request.user)
        logger.info(f"User {self.request.user} created {instance.__class__.__name__} {instance.id}")

    def perform_destroy(self, instance):
        logger.info(f"User {self.request.user} deleted {instance.__class__.__name__} {instance.id}")
        instance.delete()


class WidgetConfigViewSet(OwnedModelViewSet):
    serializer_class = WidgetConfigSerializer

    @action(detail=True, methods=["get"], url_path="embed-code")
    def embed_code(self, request, pk=None):
        widget = self.get_object()
        public_url = settings.PUBLIC_URL.rstrip("/")
        iframe = (
            f'<iframe src="{public_url}/chat-embed?widget={widget.id}" '
            'width="100%" height="600px" frameborder="0"></iframe>'
        )
        script = f'<script src="{public_url}/chat-widget.js" data-widget-id="{widget.id}" async></script>'
        return Response({"iframe": iframe, "script": script})


class PublicWidgetConfigView(APIView):
    authentication_classes = []
    permission_classes = [AllowAny]

    def get(self, request, id):
        widget = get_object_or_404(WidgetConfig, id=id, is_active=True)
        return Response(PublicWidgetConfigSerializer(widget).data)


class ContextRuleViewSet(OwnedModelViewSet):
    serializer_class = ContextRuleSerializer

    @action(detail=False, methods=["post"])
    def test(self, request):
        serializer = ContextRuleTestSerializer(data=request.data)
        if serializer.is_valid():
            payload = serializer.validated_data
            rule = get_object_or_404(self.get_queryset(), id=payload.rule_id)
            return Response(test_context_rule(rule, payload.query))
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)


class PromptTemplateViewSet(OwnedModelViewSet):
    serializer_class = PromptTemplateSerializer

    @action(detail=True, methods=["post"])
    def apply(self, request, pk=None):
        template = self.get_object()
        serializer = ApplyVariablesSerializer(data=request.data)
        if serializer.is_valid():
            return Response({"result": apply_prompt_template(template, serializer.validated_data.variables)})
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    @action(detail=False, methods=["get"])
    def categories(self, request):
        categories = (
            self.get_queryset().exclude(category="").order_by("category").values_list("category", flat=True).distinct()
        )
        return Response(list(categories))


class ResponseFormatViewSet(OwnedModelViewSet):
    serializer_class = ResponseFormatSerializer

    @action(detail=True, methods=["post"])
    def apply(self, request, pk=None):
        response_format = self.get_object()
        serializer = ApplyVariablesSerializer(data=request.data)
        if serializer.is_valid():
            return Response(apply_response_format(response_format, serializer.validated_data.variables))
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)


class ModerationRuleViewSet(viewsets.ModelViewSet):
    serializer_class = ModerationRuleSerializer
    queryset = ModerationRule.objects.all()
    lookup_value_regex = UUID_PATTERN


class ApiKeyViewSet(OwnedModelViewSet):
    serializer_class = ApiKeySerializer


# =============================================================================
# Chat sessions
# =============================================================================


class ChatSessionListCreateView(APIView):
    def get_permissions(self):
        if self.request.method == "POST":
            return [AllowAny()]
        return [IsAuthenticated()]

    def get(self, request):
        sessions = (
            ChatSession.objects.filter(Q(user=request.user) | Q(widget__owner=request.user))
            .annotate(message_count=Count("messages"))
            .order_by("-last_activity")
        )
        return Response(ChatSessionSummarySerializer(sessions, many=True).data)

    def post(self, request):
        serializer = StartChatSessionSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        payload = serializer.validated_data
        widget = None
        if payload.widget_id:
            widget = get_object_or_404(WidgetConfig, id=payload.widget_id, is_active=True)
        user = request.user if request.user.is_authenticated else None
        session, welcome = start_session(widget, user=user, visitor_id=payload.visitor_id)
        return Response(
            {
                "session": ChatSessionSerializer(session).data,
                "welcome_message": ChatMessageSerializer(welcome).data if welcome else None,
            },
            status=status.HTTP_201_CREATED,
        )


class ChatSessionDetailView(APIView):
    permission_classes = [AllowAny]

    def get(self, request, id):
        session = get_object_or_404(ChatSession.objects.select_related("widget"), id=id)
        return Response(
            {
                "session": ChatSessionSerializer(session).data,
                "messages": ChatMessageSerializer(session.messages.all(), many=True).data,
                "widget": PublicWidgetConfigSerializer(session.widget).data if session.widget else None,
            }
        )


class ChatSessionMessagesView(APIView):
    permission_classes = [AllowAny]

    def post(self, request, id):
        session = get_object_or_404(ChatSession.objects.select_related("widget__context_rule", "user"), id=id)
        serializer = IncomingChatMessageSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        payload = serializer.validated_data
        attachments = [asdict(attachment) for attachment in payload.attachments]
        try:
            result = process_message(session, payload.content, attachments)
        except UserBannedError:
            return Response({"message": "You have been banned from this chat"}, status=status.HTTP_403_FORBIDDEN)
        except AIResponseError:
            return Response({"message": "Failed to generate AI response"}, status=status.HTTP_502_BAD_GATEWAY)
        return Response(
            {
                "user_message": ChatMessageSerializer(result.user_message).data,
                "assistant_message": ChatMessageSerializer(result.assistant_message).data,
                "model": result.model,
                "cached": result.cached,
                "status": result.status,
            },
            status=status.HTTP_201_CREATED,
        )


# =============================================================================
# AI interaction analytics
# =============================================================================


def interaction_logs_for(user):
    return AIInteractionLog.objects.filter(
        Q(context_rule__owner=user) | Q(session__widget__owner=user) | Q(user=user)
    ).distinct()


class AIInteractionLogListView(ListAPIView):
    serializer_class = AIInteractionLogSerializer

    def get_queryset(self):
        logs = interaction_logs_for(self.request.user).order_by("-created_at")
        params = self.request.query_params
        if params.get("model"):
            logs = logs.filter(model_used=params["model"])
        if params.get("context_rule"):
            logs = logs.filter(context_rule_id=params["context_rule"])
        if params.get("start_date") and parse_datetime(params["start_date"]):
            logs = logs.filter(created_at__gte=parse_datetime(params["start_date"]))
        if params.get("end_date") and parse_datetime(params["end_date"]):
            logs = logs.filter(created_at__lte=parse_datetime(params["end_date"]))
        return logs


class AIPerformanceView(APIView):
    def get(self, request):
        stats = (
            AIInteractionLog.objects.filter(id__in=interaction_logs_for(request.user).values("id"))
            .values("model_used")
            .annotate(
                count=Count("id"),
                average_latency=Avg("latency"),
                cached=Count("id", filter=Q(cached=True)),
                errors=Count("id", filter=Q(error_log__isnull=False)),
            )
            .order_by("model_used")
        )
        return Response(
            [
                {
                    "model": row["model_used"],
                    "count": row["count"],
                    "average_latency_ms": (
                        round(row["average_latency"].total_seconds() * 1000) if row["average_latency"] else 0
                    ),
                    "cached": row["cached"],
                    "errors": row["errors"],
                }
                for row in stats
            ]
        )


# =============================================================================
# Moderation
# =============================================================================


class ModerationCheckView(APIView):
    def post(self, request):
        serializer = ModerationCheckSerializer(data=request.data)
        if serializer.is_valid():
            return Response(asdict(check_content(serializer.validated_data.content)))
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)


class ContentReportView(APIView):
    def post(self, request):
        serializer = ContentReportSerializer(data=request.data)
        if serializer.is_valid():
            payload = serializer.validated_data
            flagged = report_content(payload.content_id, payload.content_type, payload.reason, str(request.user.pk))
            return Response(FlaggedContentSerializer(flagged).data, status=status.HTTP_201_CREATED)
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)


class ModerationQueueView(APIView):
    def get(self, request):
        queue_status = request.query_params.get("status")
        if queue_status and queue_status not in FlaggedContent.Status.values:
            return Response({"status": [f"Invalid status '{queue_status}'"]}, status=status.HTTP_400_BAD_REQUEST)
        return Response(FlaggedContentSerializer(get_moderation_queue(queue_status), many=True).data)


class ContentReviewView(APIView):
    def post(self, request, id):
        serializer = ContentReviewSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        get_object_or_404(FlaggedContent, id=id)
        flagged = review_content(id, serializer.validated_data.status, request.user)
        return Response(FlaggedContentSerializer(flagged).data)


class UserBanView(APIView):
    def post(self, request):
        serializer = BanRequestSerializer(data=request.data)
        if serializer.is_valid():
            payload = serializer.validated_data
            ban = ban_user(payload.subject, payload.reason, request.user, payload.duration_seconds)
            return Response(UserBanSerializer(ban).data, status=status.HTTP_201_CREATED)
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
