import logging
from datetime import timedelta

from celery import shared_task
from django.utils import timezone

from chat.models import AIInteractionLog, ApiKey, ChatMessage, ChatSession, UserBan
from knowledge.models import KnowledgeBaseQueryLog

logger = logging.getLogger(__name__)

CHAT_DATA_RETENTION_DAYS = 30
LOG_RETENTION_DAYS = 90


def cleanup_old_chat_data(days: int = CHAT_DATA_RETENTION_DAYS) -> dict:
    cutoff = timezone.now() - timedelta(days=days)
    messages_deleted, _ = ChatMessage.objects.filter(created_at__lt=cutoff).delete()
    sessions_deleted, _ = ChatSession.objects.filter(created_at__lt=cutoff, messages__isnull=True).delete()
    logger.info(f"Deleted {messages_deleted} chat messages and {sessions_deleted} empty sessions older than {days} days")
    return {"messages": messages_deleted, "sessions": sessions_deleted}


def cleanup_old_logs(days: int = LOG_RETENTION_DAYS) -> dict:
    cutoff = timezone.now() - timedelta(days=days)
    interactions_deleted, _ = AIInteractionLog.objects.filter(created_at__lt=cutoff).delete()
    queries_deleted, _ = KnowledgeBaseQueryLog.objects.filter(created_at__lt=cutoff).delete()
    logger.info(f"Deleted {interactions_deleted} AI interaction logs and {queries_deleted} query logs older than {days} days")
    return {"interactions": interactions_deleted, "queries": queries_deleted}


def purge_expired_bans() -> int:
    deleted, _ = UserBan.objects.filter(expires_at__lt=timezone.now()).delete()
    logger.info(f"Purged {deleted} expired bans")
    return deleted


def purge_expired_api_keys() -> int:
    deleted, _ = ApiKey.objects.filter(expires_at__lt=timezone.now()).delete()
    logger.info(f"Purged {deleted} expired API keys")
    return deleted


@shared_task()
def daily_cleanup():
    try:
        return {"chat": cleanup_old_chat_data(), "logs": cleanup_old_logs()}
    except Exception:
        logger.exception("Daily cleanup failed")
        raise


@shared_task()
def weekly_cleanup():
    try:
        return {"bans": purge_expired_bans(), "api_keys": purge_expired_api_keys()}
    except Exception:
        logger.exception("Weekly cleanup failed")
        raise
