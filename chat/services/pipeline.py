import logging
from dataclasses import dataclass, field

from django.utils import timezone

from chat.models import (
    AIInteractionLog,
    ChatMessage,
    ChatSession,
    ContextRule,
    ControlConfig,
    FlaggedContent,
    WidgetConfig,
)
from knowledge.services.query import KnowledgeResult, query_knowledge_bases
from .cache import response_cache
from .completion import generate_response, resolve_provider
from .context import apply_response_filters, build_instruction_prompt, load_system_prompt
from .moderation import check_content, get_moderation_message, is_user_banned, moderate_message, report_content

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LENGTH = 10


class UserBannedError(Exception):
    pass


class AIResponseError(Exception):
    pass


@dataclass
class ChatResult:
    class Status:
        OK = "ok"
        BLOCKED = "blocked"

    user_message: ChatMessage
    assistant_message: ChatMessage
    model: str | None = None
    cached: bool = False
    status: str = Status.OK


@dataclass
class _Completion:
    rule: ContextRule | None
    prompt: str
    provider: str
    response: str = ""
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    cached: bool = False
    knowledge_results: list[KnowledgeResult] = field(default_factory=list)


# =============================================================================
# Helpers
# =============================================================================


def _control_config_int(key: ControlConfig.ControlConfigKey, default: int | None) -> int | None:
    value = ControlConfig.retrieve(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"ControlConfig '{key}' is not an integer: {value!r}")
        return default


def load_chat_history(session: ChatSession, exclude: ChatMessage | None = None) -> list[dict]:
    """Most recent turns of the session in chronological order, as role/content dicts."""
    history_length = _control_config_int(ControlConfig.ControlConfigKey.HISTORY_LENGTH, DEFAULT_HISTORY_LENGTH)
    messages = (
        session.messages.filter(role__in=[ChatMessage.Role.USER, ChatMessage.Role.ASSISTANT])
        .exclude(moderation_status=ChatMessage.ModerationStatus.BLOCKED)
        .order_by("-created_at")
    )
    if exclude is not None:
        messages = messages.exclude(id=exclude.id)
    recent = list(messages[:history_length])
    return [{"role": message.role, "content": message.content} for message in reversed(recent)]


def resolve_context_rule(session: ChatSession) -> ContextRule | None:
    widget = session.widget
    if widget is None or widget.context_rule is None or not widget.context_rule.is_active:
        return None
    return widget.context_rule


def _knowledge_base_ids(results: list[KnowledgeResult]) -> list[str]:
    ids = {result.metadata.get("knowledge_base_id") for result in results}
    return sorted(str(kb_id) for kb_id in ids if kb_id)


def _save_assistant_message(session: ChatSession, content: str) -> ChatMessage:
    message = ChatMessage.objects.create(
        session=session,
        role=ChatMessage.Role.ASSISTANT,
        content=content,
        moderation_status=ChatMessage.ModerationStatus.NOT_EVALUATED,
    )
    session.touch()
    return message


# =============================================================================
# Pipeline Functions
# =============================================================================


def ingest(session: ChatSession, content: str, attachments: list | None = None) -> ChatMessage:
    """
    Stage 1: Refuse banned senders, then store the user's message.
    """
    if any(is_user_banned(subject) for subject in session.ban_subjects):
        raise UserBannedError(f"Session {session.id} belongs to a banned user")
    message = ChatMessage.objects.create(
        session=session,
        role=ChatMessage.Role.USER,
        content=content,
        attachments=attachments or [],
    )
    session.touch()
    logger.info(f"Ingest complete for session {session.id}, message {message.id}")
    return message


def moderation(message: ChatMessage) -> bool:
    """
    Stage 2: Apply the moderation rules and the model check. Returns False when the message is blocked.
    """
    check = check_content(message.content)
    if not check.is_allowed:
        message.moderation_status = ChatMessage.ModerationStatus.BLOCKED
        message.save()
        report_content(str(message.id), FlaggedContent.ContentType.MESSAGE, "Blocked by moderation rule", "system")
        logger.info(f"Message {message.id} blocked by moderation rules")
        return False

    if check.modified_content is not None:
        message.content = check.modified_content

    blocked_str = moderate_message(message.content)
    if blocked_str:
        message.moderation_status = ChatMessage.ModerationStatus.BLOCKED
        message.save()
        report_content(str(message.id), FlaggedContent.ContentType.MESSAGE, f"Model flagged {blocked_str}", "system")
        logger.info(f"Message {message.id} blocked by moderation model {blocked_str}")
        return False

    if check.flagged:
        message.moderation_status = ChatMessage.ModerationStatus.FLAGGED
        report_content(str(message.id), FlaggedContent.ContentType.MESSAGE, "Matched moderation rule", "system")
    else:
        message.moderation_status = ChatMessage.ModerationStatus.NOT_FLAGGED
    message.save()
    logger.info(f"Moderation complete for message {message.id}: {message.moderation_status}")
    return True


def process(session: ChatSession, message: ChatMessage) -> _Completion:
    """
    Stage 3: Build the prompt and get a reply, from the cache when possible.
    """
    rule = resolve_context_rule(session)
    knowledge_results = []
    if rule is not None and rule.use_knowledge_bases:
        knowledge_results = query_knowledge_bases(message.content, context_rule=rule, user=session.user)

    completion = _Completion(
        rule=rule,
        prompt=build_instruction_prompt(rule, message.content, [result.content for result in knowledge_results]),
        provider=resolve_provider(rule),
        knowledge_results=knowledge_results,
    )
    rule_id = rule.id if rule else None

    cached = response_cache.get(completion.prompt, completion.provider, rule_id)
    if cached:
        completion.response = cached["response"]
        completion.cached = True
        return completion

    history = load_chat_history(session, exclude=message)
    completion.response, completion.prompt_tokens, completion.completion_tokens = generate_response(
        history, load_system_prompt(), completion.prompt, completion.provider
    )
    ttl = _control_config_int(ControlConfig.ControlConfigKey.CACHE_TTL_SECONDS, None)
    response_cache.set(completion.prompt, completion.provider, {"response": completion.response}, rule_id, ttl)
    return completion


def filter_response(completion: _Completion) -> str:
    """
    Stage 4: Apply the context rule's response filters.
    """
    if completion.rule is None:
        return completion.response
    return apply_response_filters(completion.response, completion.rule.response_filters)


def save_and_log(
    session: ChatSession, message: ChatMessage, completion: _Completion, response: str, started_at
) -> ChatMessage:
    """
    Stage 5: Store the assistant reply and record the interaction.
    """
    assistant_message = _save_assistant_message(session, response)
    AIInteractionLog.objects.create(
        session=session,
        user=session.user,
        query=message.content,
        response=response,
        model_used=completion.provider,
        context_rule=completion.rule,
        knowledge_base_ids=_knowledge_base_ids(completion.knowledge_results),
        knowledge_base_results=len(completion.knowledge_results),
        prompt_tokens=completion.prompt_tokens,
        completion_tokens=completion.completion_tokens,
        latency=timezone.now() - started_at,
        cached=completion.cached,
    )
    logger.info(f"Reply saved for session {session.id}, message {assistant_message.id}")
    return assistant_message


def _log_failure(session: ChatSession, message: ChatMessage, exc: Exception, started_at):
    rule = resolve_context_rule(session)
    AIInteractionLog.objects.create(
        session=session,
        user=session.user,
        query=message.content,
        model_used=resolve_provider(rule),
        context_rule=rule,
        latency=timezone.now() - started_at,
        error_log=str(exc),
    )


# =============================================================================
# Entry points
# =============================================================================


def respond(session: ChatSession, message: ChatMessage, started_at=None) -> ChatResult:
    """Runs stages 2 to 5 for a message that has already been ingested."""
    started_at = started_at or timezone.now()
    try:
        # Stage 2: Moderate the incoming message.
        if not moderation(message):
            assistant_message = _save_assistant_message(session, get_moderation_message())
            return ChatResult(message, assistant_message, status=ChatResult.Status.BLOCKED)

        # Stage 3: Process via the model provider.
        try:
            completion = process(session, message)
        except Exception as exc:
            _log_failure(session, message, exc, started_at)
            raise AIResponseError(f"Failed to generate AI response: {exc}") from exc

        # Stage 4 and 5: Filter, save and log.
        response = filter_response(completion)
        assistant_message = save_and_log(session, message, completion, response, started_at)
        return ChatResult(message, assistant_message, model=completion.provider, cached=completion.cached)
    except Exception:
        logger.exception(f"Chat pipeline failed for session {session.id}, message {message.id}")
        raise


def process_message(session: ChatSession, content: str, attachments: list | None = None) -> ChatResult:
    started_at = timezone.now()
    # Stage 1: Ingest. Banned senders stop here and nothing is stored.
    message = ingest(session, content, attachments)
    return respond(session, message, started_at)


def start_session(
    widget: WidgetConfig | None, user=None, visitor_id: str | None = None, metadata: dict | None = None
) -> tuple[ChatSession, ChatMessage | None]:
    session = ChatSession.objects.create(
        widget=widget,
        user=user,
        visitor_id=visitor_id or "",
        metadata=metadata or {},
    )
    welcome = None
    if widget is not None and widget.welcome_message:
        welcome = _save_assistant_message(session, widget.welcome_message)
    logger.info(f"Chat session {session.id} started for widget {widget.id if widget else None}")
    return session, welcome
