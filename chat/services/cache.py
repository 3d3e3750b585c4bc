import hashlib
import json
import logging

import redis
from django.conf import settings

logger = logging.getLogger(__name__)


class ResponseCache:
    """Redis cache for AI responses, namespaced by context rule."""

    prefix = "ai_cache"

    def __init__(self):
        # Use existing Redis connection from Celery
        self.redis_client = redis.Redis.from_url(settings.CELERY_BROKER_URL)
        self.default_ttl = settings.AI_CACHE_TTL_SECONDS

    def _namespace(self, context_rule_id) -> str:
        return f"{self.prefix}:{context_rule_id or 'none'}"

    def make_key(self, prompt: str, model: str, context_rule_id=None) -> str:
        digest = hashlib.sha256(f"{model}:{prompt}".encode("utf-8")).hexdigest()
        return f"{self._namespace(context_rule_id)}:{digest}"

    def get(self, prompt: str, model: str, context_rule_id=None) -> dict | None:
        key = self.make_key(prompt, model, context_rule_id)
        try:
            value = self.redis_client.get(key)
            if value:
                logger.debug(f"Cache HIT for {key}")
                return json.loads(value.decode("utf-8"))
            logger.debug(f"Cache MISS for {key}")
            return None
        except (redis.RedisError, ValueError) as e:
            logger.warning(f"Cache get failed for {key}: {e}")
            return None

    def set(self, prompt: str, model: str, value: dict, context_rule_id=None, ttl: int | None = None):
        key = self.make_key(prompt, model, context_rule_id)
        try:
            self.redis_client.setex(key, ttl or self.default_ttl, json.dumps(value))
            logger.debug(f"Cache SET for {key}")
        except (redis.RedisError, ValueError) as e:
            logger.warning(f"Cache set failed for {key}: {e}")

    def invalidate_context_rule(self, context_rule_id):
        """Drop every cached response produced under a context rule."""
        self._delete_pattern(f"{self._namespace(context_rule_id)}:*")

    def clear_all(self):
        self._delete_pattern(f"{self.prefix}:*")

    def _delete_pattern(self, pattern: str):
        try:
            keys = list(self.redis_client.scan_iter(match=pattern))
            if keys:
                deleted = self.redis_client.delete(*keys)
                logger.info(f"Cleared {deleted} cache keys matching {pattern}")
            else:
                logger.info(f"No cache keys matching {pattern}")
        except (redis.RedisError, ValueError) as e:
            logger.warning(f"Cache delete failed for {pattern}: {e}")


# Global cache instance
response_cache = ResponseCache()
