import logging
import re

from chat.models import PromptTemplate, PromptTemplateUsage, ResponseFormat

logger = logging.getLogger(__name__)

VARIABLE_PATTERN = re.compile(r"\{\{\s*([\w.-]+)\s*\}\}")


def render_variables(template: str, variables: dict) -> str:
    """Substitute ``{{ key }}`` placeholders. Unknown placeholders are left in place."""

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key in variables:
            return str(variables[key])
        return match.group(0)

    return VARIABLE_PATTERN.sub(_replace, template)


def unreplaced_variables(text: str) -> list[str]:
    return VARIABLE_PATTERN.findall(text)


def apply_prompt_template(template: PromptTemplate, variables: dict) -> str:
    rendered = render_variables(template.template, variables)
    PromptTemplateUsage.objects.create(template=template)
    missing = unreplaced_variables(rendered)
    if missing:
        logger.warning(f"Prompt template {template.id} applied with unreplaced variables: {', '.join(missing)}")
    return rendered


def _brand_header(response_format: ResponseFormat) -> str:
    name = response_format.brand_name
    match response_format.format_type:
        case ResponseFormat.FormatType.MARKDOWN:
            return f"# {name}\n\n"
        case ResponseFormat.FormatType.HTML:
            color = response_format.brand_color or "inherit"
            return f'<h1 style="color: {color}">{name}</h1>\n'
        case ResponseFormat.FormatType.TEXT:
            return f"{name}\n\n"
    return ""


def apply_response_format(response_format: ResponseFormat, variables: dict) -> dict:
    applied = render_variables(response_format.template, variables)
    if response_format.branding_enabled and response_format.brand_name:
        applied = _brand_header(response_format) + applied
    return {
        "original": response_format.template,
        "applied": applied,
        "format_type": response_format.format_type,
    }
