import logging

from django.db.models.signals import post_delete, post_save

from chat.models import ContextRule, ControlConfig

logger = logging.getLogger(__name__)


def clear_context_rule_cache(sender, instance: ContextRule, **kwargs):
    """Drop cached AI responses when a context rule is updated or deleted"""
    from chat.services.cache import response_cache

    response_cache.invalidate_context_rule(instance.id)
    logger.info(f"Response cache cleared for context rule {instance.id}")


def clear_control_config_cache(sender, instance: ControlConfig, **kwargs):
    """Cached responses depend on the system prompt and default model"""
    if instance.key not in (ControlConfig.ControlConfigKey.SYSTEM_PROMPT, ControlConfig.ControlConfigKey.DEFAULT_MODEL):
        return
    from chat.services.cache import response_cache

    response_cache.clear_all()
    logger.info(f"Response cache cleared after ControlConfig '{instance.key}' changed")


post_save.connect(clear_context_rule_cache, sender=ContextRule)
post_delete.connect(clear_context_rule_cache, sender=ContextRule)
post_save.connect(clear_control_config_cache, sender=ControlConfig)
post_delete.connect(clear_control_config_cache, sender=ControlConfig)
