from datetime import timedelta

from django.urls import reverse
from rest_framework import status


def test_interaction_logs_are_scoped_to_owner(
    owner, owner_client, widget_config_factory, chat_session_factory, ai_interaction_log_factory
):
    session = chat_session_factory(widget=widget_config_factory(owner=owner))
    mine = ai_interaction_log_factory(session=session)
    ai_interaction_log_factory()

    response = owner_client.get(reverse("chat:ai-logs"))
    assert response.status_code == status.HTTP_200_OK
    assert [log["id"] for log in response.json()["results"]] == [str(mine.id)]


def test_interaction_logs_filters(
    owner, owner_client, context_rule_factory, chat_session_factory, ai_interaction_log_factory
):
    rule = context_rule_factory(owner=owner)
    session = chat_session_factory(user=owner)
    openai_log = ai_interaction_log_factory(session=session, model_used="openai", context_rule=rule)
    gemini_log = ai_interaction_log_factory(session=session, model_used="gemini")

    response = owner_client.get(reverse("chat:ai-logs"), {"model": "gemini"})
    assert [log["id"] for log in response.json()["results"]] == [str(gemini_log.id)]

    response = owner_client.get(reverse("chat:ai-logs"), {"context_rule": str(rule.id)})
    assert [log["id"] for log in response.json()["results"]] == [str(openai_log.id)]

    response = owner_client.get(reverse("chat:ai-logs"), {"end_date": "2000-01-01T00:00:00Z"})
    assert response.json()["results"] == []


def test_performance(owner, owner_client, chat_session_factory, ai_interaction_log_factory):
    session = chat_session_factory(user=owner)
    ai_interaction_log_factory(session=session, model_used="openai", latency=timedelta(milliseconds=100))
    ai_interaction_log_factory(session=session, model_used="openai", latency=timedelta(milliseconds=300), cached=True)
    ai_interaction_log_factory(session=session, model_used="gemini", error_log="timeout")
    ai_interaction_log_factory(model_used="huggingface")

    response = owner_client.get(reverse("chat:ai-performance"))
    assert response.status_code == status.HTTP_200_OK
    assert response.json() == [
        {"model": "gemini", "count": 1, "average_latency_ms": 0, "cached": 0, "errors": 1},
        {"model": "openai", "count": 2, "average_latency_ms": 200, "cached": 1, "errors": 0},
    ]
