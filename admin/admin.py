from django.contrib import admin


class MyAdminSite(admin.AdminSite):
    site_header = "Chat Widget Admin Site"
    site_title = "Chat Widget Admin"
    index_title = "Widgets, context rules and conversations"

    def get_urls(self):
        # models register on the default site, share its registry
        self._registry = admin.site._registry
        return super().get_urls()
