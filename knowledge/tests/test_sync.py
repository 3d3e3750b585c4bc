from datetime import timedelta
from unittest.mock import MagicMock, patch

import httpx
import pytest
from django.utils import timezone

from knowledge.models import KnowledgeBase
from knowledge.services.sync import sync_due_knowledge_bases, sync_knowledge_base
from knowledge.tasks import sync_due_knowledge_bases as sync_due_knowledge_bases_task


@pytest.fixture
def remote_kb(knowledge_base_factory):
    return knowledge_base_factory(
        source_type=KnowledgeBase.SourceType.CMS, endpoint="https://cms.example.com/articles", refresh_interval=60
    )


def remote_documents(payload):
    response = MagicMock()
    response.json.return_value = payload
    return response


def test_sync_replaces_synced_documents(remote_kb, knowledge_base_document_factory):
    manual = knowledge_base_document_factory(knowledge_base=remote_kb, metadata={})
    knowledge_base_document_factory(knowledge_base=remote_kb, metadata={"synced": True})
    payload = {
        "documents": [
            {"id": 7, "title": "Returns", "content": "Return within 30 days.", "url": "https://cms.example.com/7"},
            {"id": 8, "title": "Empty"},
        ]
    }
    with patch("knowledge.services.sync.httpx.Client") as mock_client:
        mock_client.return_value.__enter__.return_value.get.return_value = remote_documents(payload)
        assert sync_knowledge_base(remote_kb) == 1

    documents = list(remote_kb.documents.order_by("created_at"))
    assert documents[0] == manual
    assert len(documents) == 2
    synced = documents[1]
    assert synced.title == "Returns"
    assert synced.source_url == "https://cms.example.com/7"
    assert synced.metadata == {"external_id": 7, "synced": True}
    remote_kb.refresh_from_db()
    assert remote_kb.last_synced_at is not None


def test_sync_rejects_local_knowledge_bases(knowledge_base_factory):
    with pytest.raises(ValueError):
        sync_knowledge_base(knowledge_base_factory(source_type=KnowledgeBase.SourceType.DATABASE))


def test_sync_rejects_unexpected_payload(remote_kb):
    with patch("knowledge.services.sync.httpx.Client") as mock_client:
        mock_client.return_value.__enter__.return_value.get.return_value = remote_documents("nope")
        with pytest.raises(ValueError):
            sync_knowledge_base(remote_kb)


def test_sync_due_knowledge_bases(remote_kb, knowledge_base_factory):
    knowledge_base_factory(
        source_type=KnowledgeBase.SourceType.API,
        endpoint="https://api.example.com/docs",
        refresh_interval=60,
        last_synced_at=timezone.now() - timedelta(minutes=5),
    )
    failing = knowledge_base_factory(
        source_type=KnowledgeBase.SourceType.API, endpoint="https://down.example.com/docs", refresh_interval=5
    )

    def get(url, **kwargs):
        if "down" in url:
            raise httpx.ConnectError("unreachable")
        return remote_documents([{"content": "Fresh article"}])

    with patch("knowledge.services.sync.httpx.Client") as mock_client:
        mock_client.return_value.__enter__.return_value.get.side_effect = get
        assert sync_due_knowledge_bases() == {"synced": [str(remote_kb.id)], "failed": [str(failing.id)]}


def test_sync_task():
    with patch("knowledge.tasks.sync.sync_due_knowledge_bases", return_value={"synced": [], "failed": []}) as mock_sync:
        assert sync_due_knowledge_bases_task.apply().get() == {"synced": [], "failed": []}
    mock_sync.assert_called_once_with()
