from django.http import HttpResponse
from django.urls import include, path

from admin.admin import MyAdminSite

admin_site = MyAdminSite()


def robots_txt(request):
    return HttpResponse("User-agent: *\nDisallow: /", content_type="text/plain")


urlpatterns = [
    path("robots.txt", robots_txt),
    path("admin/", admin_site.urls),
    path("api/", include("chat.urls")),
    path("api/", include("knowledge.urls")),
]
