import logging
import re
from dataclasses import dataclass
from datetime import timedelta

from django.conf import settings
from django.db.models import Q
from django.utils import timezone
from openai import OpenAI
from openai._compat import model_dump

from chat.models import ControlConfig, FlaggedContent, ModerationRule, UserBan
from .constant import MODERATION_MESSAGE_DEFAULT

logger = logging.getLogger(__name__)


@dataclass
class ContentCheck:
    is_allowed: bool
    flagged: bool
    modified_content: str | None = None


def check_content(content: str) -> ContentCheck:
    """Run the active moderation rules against a message."""
    is_allowed = True
    flagged = False
    modified_content = content

    for rule in ModerationRule.objects.filter(is_active=True).order_by("created_at"):
        try:
            pattern = re.compile(rule.pattern, re.IGNORECASE)
        except re.error:
            logger.exception(f"Invalid regex pattern in moderation rule {rule.id}")
            continue
        if not pattern.search(content):
            continue

        flagged = True
        if rule.action == ModerationRule.Action.BLOCK:
            is_allowed = False
            break
        if rule.action == ModerationRule.Action.REPLACE and rule.replacement:
            modified_content = pattern.sub(rule.replacement, modified_content)

    return ContentCheck(
        is_allowed=is_allowed,
        flagged=flagged,
        modified_content=modified_content if modified_content != content else None,
    )


def moderate_message(message: str) -> str:
    if not settings.MODERATION_USE_OPENAI:
        return ""
    moderation_response = OpenAI(api_key=settings.OPENAI_API_KEY).moderations.create(
        input=message, model="omni-moderation-latest"
    )
    category_scores = moderation_response.results[0].category_scores or {}
    category_score_items = model_dump(category_scores)

    blocked_str = ""
    for category, score in category_score_items.items():
        if score is None:
            continue
        if score > settings.MODERATION_VALUES_FOR_BLOCKED.get(category, 1.0):
            blocked_str += f"({category}: {score})"
            break
    return blocked_str


def get_moderation_message() -> str:
    return ControlConfig.retrieve(ControlConfig.ControlConfigKey.MODERATION_MESSAGE) or MODERATION_MESSAGE_DEFAULT


def report_content(content_id: str, content_type: str, reason: str, reported_by: str = "") -> FlaggedContent:
    flagged = FlaggedContent.objects.create(
        content_id=content_id,
        content_type=content_type,
        reason=reason,
        reported_by=reported_by,
    )
    logger.info(f"Content {content_type} {content_id} reported for moderation: {reason}")
    return flagged


def get_moderation_queue(status: str | None = None, limit: int = 50):
    queue = FlaggedContent.objects.order_by("-created_at")
    if status:
        queue = queue.filter(status=status)
    return queue[:limit]


def review_content(flagged_content_id, status: str, reviewer) -> FlaggedContent:
    if status not in (FlaggedContent.Status.APPROVED, FlaggedContent.Status.REJECTED):
        raise ValueError(f"Invalid review status '{status}'")
    flagged = FlaggedContent.objects.get(id=flagged_content_id)
    flagged.status = status
    flagged.reviewed_by = reviewer
    flagged.save()
    logger.info(f"Flagged content {flagged.id} reviewed by {reviewer}: {status}")
    return flagged


def ban_user(subject: str, reason: str, banned_by=None, duration_seconds: int | None = None) -> UserBan:
    expires_at = None
    if duration_seconds:
        expires_at = timezone.now() + timedelta(seconds=duration_seconds)
    ban = UserBan.objects.create(subject=subject, reason=reason, banned_by=banned_by, expires_at=expires_at)
    logger.info(f"Subject {subject} banned until {expires_at or 'forever'}: {reason}")
    return ban


def is_user_banned(subject: str) -> bool:
    if not subject:
        return False
    return (
        UserBan.objects.filter(subject=subject)
        .filter(Q(expires_at__isnull=True) | Q(expires_at__gt=timezone.now()))
        .exists()
    )
