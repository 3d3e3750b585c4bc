from unittest.mock import MagicMock, patch

import pytest
from django.urls import reverse

from knowledge.models import KnowledgeBase


@pytest.mark.parametrize("model_name", ["knowledgebase", "knowledgebasedocument", "knowledgebasequerylog", "scrapejob"])
def test_changelists_render(admin_client, model_name):
    response = admin_client.get(reverse(f"admin:knowledge_{model_name}_changelist"))
    assert response.status_code == 200


def test_sync_now_action(admin_client, knowledge_base_factory):
    kb = knowledge_base_factory(source_type=KnowledgeBase.SourceType.API, endpoint="https://kb.example.com/docs")
    knowledge_base_factory()
    response = MagicMock()
    response.json.return_value = [{"content": "Synced article"}]
    with patch("knowledge.services.sync.httpx.Client") as mock_client:
        mock_client.return_value.__enter__.return_value.get.return_value = response
        admin_client.post(
            reverse("admin:knowledge_knowledgebase_changelist"),
            {"action": "sync_now", "_selected_action": [str(pk) for pk in KnowledgeBase.objects.values_list("id", flat=True)]},
        )

    kb.refresh_from_db()
    assert kb.last_synced_at is not None
    assert kb.documents.get().content == "Synced article"
