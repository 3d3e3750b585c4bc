import logging
import re
from typing import Iterable

from chat.models import ContextRule, ControlConfig

logger = logging.getLogger(__name__)


def test_context_rule(rule: ContextRule, query: str) -> dict:
    lowered = query.lower()
    matches = [keyword for keyword in rule.keywords if keyword.lower() in lowered]
    excluded = [topic for topic in rule.excluded_topics if topic.lower() in lowered]

    if matches:
        result = (
            f"This query matches the context rule with {len(matches)} keyword(s): {', '.join(matches)}. "
            f"The AI will respond using the '{rule.name}' context."
        )
    else:
        result = "This query does not match the context rule."
    if excluded:
        result += f" The query mentions excluded topics: {', '.join(excluded)}."
    return {"matches": matches, "excluded": excluded, "result": result}


# keep pytest from collecting the function above as a test
test_context_rule.__test__ = False


def build_instruction_prompt(rule: ContextRule | None, message: str, knowledge_results: Iterable[str] = ()) -> str:
    prompt = message
    if rule is None:
        return prompt

    if rule.prompt_template:
        prompt = rule.prompt_template.replace("{{message}}", message)

    knowledge_results = [result for result in knowledge_results if result]
    if rule.use_knowledge_bases and knowledge_results:
        relevant_info = "\n\n".join(knowledge_results)
        prompt = f"Context information:\n{relevant_info}\n\nUser question: {message}"

    if rule.excluded_topics:
        prompt = f"Please do not discuss these topics: {', '.join(rule.excluded_topics)}.\n\n{prompt}"
    return prompt


def load_system_prompt() -> str:
    return ControlConfig.retrieve(ControlConfig.ControlConfigKey.SYSTEM_PROMPT) or ""


def apply_response_filters(response: str, filters: list[dict]) -> str:
    filtered = response
    for response_filter in filters or []:
        filter_type = response_filter.get("type")
        if filter_type == ContextRule.FilterType.REPLACE and response_filter.get("pattern"):
            if "replacement" not in response_filter:
                continue
            filtered = re.sub(
                response_filter["pattern"], str(response_filter["replacement"]), filtered, flags=re.IGNORECASE
            )
        elif filter_type == ContextRule.FilterType.APPEND and response_filter.get("text"):
            filtered = f"{filtered}\n\n{response_filter['text']}"
        elif filter_type == ContextRule.FilterType.PREPEND and response_filter.get("text"):
            filtered = f"{response_filter['text']}\n\n{filtered}"
    return filtered
