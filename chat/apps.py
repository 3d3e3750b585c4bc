from django.apps import AppConfig


class ChatConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "chat"
    verbose_name = "Chat widget"

    def ready(self):
        # Connect cache invalidation signal handlers.
        from . import signals  # noqa: F401
