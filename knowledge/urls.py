from django.urls import include, path
from rest_framework.routers import SimpleRouter

from .views import KnowledgeBaseViewSet, ScrapeJobViewSet, ScrapeSearchView, StartScrapeView

app_name = "knowledge"

router = SimpleRouter()
router.register("knowledge-bases", KnowledgeBaseViewSet, basename="knowledge-base")
router.register("scrape/jobs", ScrapeJobViewSet, basename="scrape-job")

urlpatterns = [
    path("scrape/start/", StartScrapeView.as_view(), name="scrape-start"),
    path("scrape/search/", ScrapeSearchView.as_view(), name="scrape-search"),
    path("", include(router.urls)),
]
