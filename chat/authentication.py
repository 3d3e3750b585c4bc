import logging

from django.utils import timezone
from rest_framework import authentication, exceptions

from .models import ApiKey

logger = logging.getLogger(__name__)


class ApiKeyAuthentication(authentication.BaseAuthentication):
    """Authenticates `Authorization: Bearer <key>` against active ApiKey rows."""

    keyword = "Bearer"

    def authenticate(self, request):
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith(f"{self.keyword} "):
            return None
        key = auth_header[len(self.keyword) + 1 :].strip()
        try:
            api_key = ApiKey.objects.select_related("owner").get(key=key)
        except ApiKey.DoesNotExist:
            raise exceptions.AuthenticationFailed("Invalid API key")
        if not api_key.is_usable:
            logger.warning(f"Rejected inactive or expired API key {api_key.id}")
            raise exceptions.AuthenticationFailed("Invalid API key")

        api_key.last_used_at = timezone.now()
        api_key.save(update_fields=["last_used_at"])
        return api_key.owner, api_key

    def authenticate_header(self, request):
        return self.keyword
