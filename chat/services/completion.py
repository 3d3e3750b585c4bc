import asyncio
import logging

import httpx
from django.conf import settings
from openai import OpenAI

from kani import Kani, ChatMessage
from kani.engines.openai import OpenAIEngine

from chat.models import AIProvider, ContextRule, ControlConfig

logger = logging.getLogger(__name__)

GEMINI_MAX_CONTEXT_SIZE = 128000


def resolve_provider(context_rule: ContextRule | None = None) -> str:
    """Pick the provider for a reply: the rule's preference, then ControlConfig, then settings."""
    if context_rule is not None and context_rule.preferred_model:
        return context_rule.preferred_model
    default_model = ControlConfig.retrieve(ControlConfig.ControlConfigKey.DEFAULT_MODEL)
    if default_model in AIProvider.values:
        return default_model
    if default_model:
        logger.warning(f"Ignoring unknown default_model '{default_model}' in ControlConfig")
    return settings.DEFAULT_AI_PROVIDER


def model_name_for(provider: str) -> str:
    match provider:
        case AIProvider.OPENAI:
            return settings.OPENAI_MODEL
        case AIProvider.GEMINI:
            return settings.GEMINI_MODEL
        case AIProvider.HUGGINGFACE:
            return settings.HUGGINGFACE_MODEL
    raise ValueError(f"Unknown AI provider '{provider}'")


def _build_engine(provider: str) -> OpenAIEngine:
    if provider == AIProvider.GEMINI:
        return OpenAIEngine(
            settings.GEMINI_API_KEY,
            model=model_name_for(provider),
            api_base=settings.GEMINI_API_BASE,
            max_context_size=GEMINI_MAX_CONTEXT_SIZE,
        )
    return OpenAIEngine(settings.OPENAI_API_KEY, model=model_name_for(provider))


async def _generate_response_async(
    chat_history: list[ChatMessage], instructions: str, message: str, provider: str
) -> tuple[str, int, int]:
    engine = _build_engine(provider)
    try:
        assistant = Kani(engine, system_prompt=instructions, chat_history=chat_history)
        response = await assistant.chat_round_str(message)
        completion = await assistant.get_model_completion()
        return (
            response,
            completion.prompt_tokens or 0,
            completion.completion_tokens or 0,
        )
    finally:
        await engine.close()


def _generate_response(chat_history, instructions, message, provider):
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(_generate_response_async(chat_history, instructions, message, provider))
    finally:
        loop.close()
        asyncio.set_event_loop(None)


def _huggingface_prompt(history_json: list[dict], instructions: str, message: str) -> str:
    lines = [instructions] if instructions else []
    for chat in history_json:
        lines.append(f"{chat['role']}: {chat['content']}")
    lines.append(f"user: {message}")
    lines.append("assistant:")
    return "\n".join(lines)


def _generate_huggingface_response(history_json: list[dict], instructions: str, message: str) -> tuple[str, None, None]:
    url = f"{settings.HUGGINGFACE_API_BASE}/{model_name_for(AIProvider.HUGGINGFACE)}"
    payload = {
        "inputs": _huggingface_prompt(history_json, instructions, message),
        "parameters": {"return_full_text": False},
    }
    headers = {"Authorization": f"Bearer {settings.HUGGINGFACE_API_KEY}"}
    with httpx.Client(timeout=60) as client:
        try:
            response = client.post(url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(f"HuggingFace request failed: {exc.response.status_code} {exc.response.text}")
            raise
    data = response.json()
    if isinstance(data, list) and data:
        data = data[0]
    if not isinstance(data, dict) or "generated_text" not in data:
        raise ValueError(f"Unexpected HuggingFace response: {data!r}")
    return data["generated_text"].strip(), None, None


def generate_response(
    history_json: list[dict], instructions: str, message: str, provider: str
) -> tuple[str, int | None, int | None]:
    if provider == AIProvider.HUGGINGFACE:
        return _generate_huggingface_response(history_json, instructions, message)
    if provider not in (AIProvider.OPENAI, AIProvider.GEMINI):
        raise ValueError(f"Unknown AI provider '{provider}'")
    chat_history = [ChatMessage.model_validate(chat) for chat in history_json]
    return _generate_response(chat_history, instructions, message, provider)


def chat_completion(instructions: str) -> tuple[str, int, int]:
    client = OpenAI(api_key=settings.OPENAI_API_KEY)
    completion = client.chat.completions.create(
        model=model_name_for(AIProvider.OPENAI),
        messages=[
            {"role": "user", "content": instructions},
        ],
    )
    response = completion.choices[0].message.content
    prompt_tokens = 0
    completion_tokens = 0
    if completion.usage is not None:
        prompt_tokens = completion.usage.prompt_tokens
        completion_tokens = completion.usage.completion_tokens
    return (response or "", prompt_tokens, completion_tokens)
