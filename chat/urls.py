from django.urls import include, path
from rest_framework.routers import SimpleRouter

from .views import (
    AIInteractionLogListView,
    AIPerformanceView,
    ApiKeyViewSet,
    ChatSessionDetailView,
    ChatSessionListCreateView,
    ChatSessionMessagesView,
    ContentReportView,
    ContentReviewView,
    ContextRuleViewSet,
    HealthCheckView,
    ModerationCheckView,
    ModerationQueueView,
    ModerationRuleViewSet,
    PromptTemplateViewSet,
    PublicWidgetConfigView,
    ResponseFormatViewSet,
    UserBanView,
    WidgetConfigViewSet,
)

app_name = "chat"

router = SimpleRouter()
router.register("widget-configs", WidgetConfigViewSet, basename="widget-config")
router.register("context-rules", ContextRuleViewSet, basename="context-rule")
router.register("prompt-templates", PromptTemplateViewSet, basename="prompt-template")
router.register("response-formats", ResponseFormatViewSet, basename="response-format")
router.register("moderation/rules", ModerationRuleViewSet, basename="moderation-rule")
router.register("api-keys", ApiKeyViewSet, basename="api-key")

urlpatterns = [
    path("health/", HealthCheckView.as_view(), name="health-check"),
    path("widget-configs/public/<uuid:id>/", PublicWidgetConfigView.as_view(), name="widget-config-public"),
    path("chat/sessions/", ChatSessionListCreateView.as_view(), name="chat-sessions"),
    path("chat/sessions/<uuid:id>/", ChatSessionDetailView.as_view(), name="chat-session-detail"),
    path("chat/sessions/<uuid:id>/messages/", ChatSessionMessagesView.as_view(), name="chat-session-messages"),
    path("ai/logs/", AIInteractionLogListView.as_view(), name="ai-logs"),
    path("ai/performance/", AIPerformanceView.as_view(), name="ai-performance"),
    path("moderation/check/", ModerationCheckView.as_view(), name="moderation-check"),
    path("moderation/report/", ContentReportView.as_view(), name="moderation-report"),
    path("moderation/queue/", ModerationQueueView.as_view(), name="moderation-queue"),
    path("moderation/queue/<uuid:id>/review/", ContentReviewView.as_view(), name="moderation-review"),
    path("moderation/bans/", UserBanView.as_view(), name="moderation-bans"),
    path("", include(router.urls)),
]
