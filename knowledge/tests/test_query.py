from unittest.mock import MagicMock, patch

import httpx
import pytest

from knowledge.models import KnowledgeBase, KnowledgeBaseDocument, KnowledgeBaseQueryLog
from knowledge.services.query import (
    query_knowledge_base,
    query_knowledge_bases,
    query_terms,
    search_documents,
)


def remote_response(payload):
    response = MagicMock()
    response.json.return_value = payload
    return response


def test_query_terms():
    assert query_terms("How much is the Pro plan? How much?") == ["how", "much", "is", "the", "pro", "plan"]
    assert query_terms("a ?") == []


def test_search_documents(knowledge_base_factory, knowledge_base_document_factory):
    kb = knowledge_base_factory()
    best = knowledge_base_document_factory(knowledge_base=kb, title="Pricing", content="The pro plan costs $20.")
    partial = knowledge_base_document_factory(knowledge_base=kb, title="Plans", content="Every plan has support.")
    knowledge_base_document_factory(knowledge_base=kb, title="Careers", content="We are hiring.")

    results = search_documents(KnowledgeBaseDocument.objects.all(), "pro plan pricing", limit=5)
    assert [result.id for result in results] == [str(best.id), str(partial.id)]
    assert results[0].relevance_score == 1.0
    assert results[1].relevance_score == pytest.approx(1 / 3)
    assert results[0].metadata["knowledge_base_id"] == str(kb.id)
    assert results[0].source == kb.name

    assert search_documents(KnowledgeBaseDocument.objects.all(), "?", limit=5) == []


@pytest.mark.parametrize(
    "source_type,method,payload,expected_score,expected_source",
    [
        (KnowledgeBase.SourceType.API, "post", [{"id": "1", "content": "Plans", "relevance_score": 0.8}], 0.8, "Docs"),
        (KnowledgeBase.SourceType.VECTOR, "post", [{"id": "1", "text": "Plans", "similarity": 0.9}], 0.9, "Docs"),
        (KnowledgeBase.SourceType.CMS, "get", [{"id": "1", "content": "Plans", "title": "Pricing"}], 0.5, "Docs - Pricing"),
    ],
)
def test_remote_backends(knowledge_base_factory, source_type, method, payload, expected_score, expected_source):
    kb = knowledge_base_factory(
        name="Docs",
        source_type=source_type,
        endpoint="https://kb.example.com/search",
        api_key="secret",
        parameters={"collection": "faq"},
    )
    with patch("knowledge.services.query.httpx.Client") as mock_client:
        client = mock_client.return_value.__enter__.return_value
        getattr(client, method).return_value = remote_response(payload)
        results = query_knowledge_base(kb, "plans", 3)

    _, kwargs = getattr(client, method).call_args
    assert kwargs["headers"] == {"Authorization": "Bearer secret"}
    sent = kwargs["json"] if method == "post" else kwargs["params"]
    assert sent == {"query": "plans", "limit": 3, "collection": "faq"}

    assert len(results) == 1
    assert results[0].content == "Plans"
    assert results[0].relevance_score == expected_score
    assert results[0].source == expected_source
    assert results[0].metadata == {"knowledge_base_id": str(kb.id)}


def test_remote_backend_ignores_non_list_payload(knowledge_base_factory):
    kb = knowledge_base_factory(source_type=KnowledgeBase.SourceType.API, endpoint="https://kb.example.com/search")
    with patch("knowledge.services.query.httpx.Client") as mock_client:
        mock_client.return_value.__enter__.return_value.post.return_value = remote_response({"error": "nope"})
        assert query_knowledge_base(kb, "plans", 3) == []


def test_remote_backend_without_endpoint(knowledge_base_factory):
    kb = knowledge_base_factory(source_type=KnowledgeBase.SourceType.API, endpoint="")
    with patch("knowledge.services.query.httpx.Client") as mock_client:
        assert query_knowledge_base(kb, "plans", 3) == []
    mock_client.assert_not_called()


def test_query_knowledge_bases_merges_and_logs(
    user_factory, context_rule_factory, knowledge_base_factory, knowledge_base_document_factory
):
    user = user_factory()
    rule = context_rule_factory()
    local = knowledge_base_factory(owner=rule.owner)
    knowledge_base_document_factory(knowledge_base=local, title="Refunds", content="Refunds take 5 days.")
    remote = knowledge_base_factory(
        owner=rule.owner, source_type=KnowledgeBase.SourceType.API, endpoint="https://kb.example.com/search"
    )
    failing = knowledge_base_factory(
        owner=rule.owner, source_type=KnowledgeBase.SourceType.VECTOR, endpoint="https://down.example.com"
    )
    knowledge_base_factory(owner=rule.owner, is_active=False)
    rule.knowledge_bases.add(local, remote, failing)

    def post(url, **kwargs):
        if "down" in url:
            raise httpx.ConnectError("unreachable")
        return remote_response([{"id": "r1", "content": "Refund policy", "relevance_score": 0.4}])

    with patch("knowledge.services.query.httpx.Client") as mock_client:
        mock_client.return_value.__enter__.return_value.post.side_effect = post
        results = query_knowledge_bases("refunds", limit=5, context_rule=rule, user=user)

    assert [result.content for result in results] == ["Refunds take 5 days.", "Refund policy"]
    log = KnowledgeBaseQueryLog.objects.get()
    assert log.user == user
    assert log.context_rule == rule
    assert log.results_count == 2
    assert sorted(log.knowledge_base_ids) == sorted(str(kb.id) for kb in (local, remote, failing))


def test_query_knowledge_bases_without_rule_uses_visible_active(
    user_factory, knowledge_base_factory, knowledge_base_document_factory
):
    user = user_factory()
    active = knowledge_base_factory(owner=user)
    inactive = knowledge_base_factory(owner=user, is_active=False)
    public = knowledge_base_factory(is_public=True)
    private = knowledge_base_factory()
    knowledge_base_document_factory(knowledge_base=active, content="Shipping is free.")
    knowledge_base_document_factory(knowledge_base=inactive, content="Shipping costs $5.")
    knowledge_base_document_factory(knowledge_base=public, content="Shipping to Canada takes a week.")
    knowledge_base_document_factory(knowledge_base=private, content="Shipping margins are 40%.")

    results = query_knowledge_bases("shipping", limit=5, user=user)
    assert sorted(result.content for result in results) == ["Shipping is free.", "Shipping to Canada takes a week."]

    results = query_knowledge_bases("shipping", limit=5)
    assert [result.content for result in results] == ["Shipping to Canada takes a week."]
    assert KnowledgeBaseQueryLog.objects.filter(user__isnull=True).count() == 1


def test_rule_only_reads_its_owners_or_public_bases(
    context_rule_factory, knowledge_base_factory, knowledge_base_document_factory
):
    rule = context_rule_factory()
    foreign = knowledge_base_factory()
    public = knowledge_base_factory(is_public=True)
    knowledge_base_document_factory(knowledge_base=foreign, content="Payroll runs on Fridays.")
    knowledge_base_document_factory(knowledge_base=public, content="Payroll questions go to HR.")
    rule.knowledge_bases.add(foreign, public)

    results = query_knowledge_bases("payroll", context_rule=rule)
    assert [result.content for result in results] == ["Payroll questions go to HR."]


@pytest.mark.parametrize(
    "item",
    [
        {"id": "1", "content": "Refund policy", "score": [0.9]},
        {"id": "1", "content": "Refund policy", "score": {"value": 0.9}},
    ],
)
def test_malformed_remote_item_skips_the_base(item, knowledge_base_factory, knowledge_base_document_factory):
    remote = knowledge_base_factory(
        is_public=True, source_type=KnowledgeBase.SourceType.API, endpoint="https://kb.example.com"
    )
    local = knowledge_base_factory(is_public=True)
    knowledge_base_document_factory(knowledge_base=local, content="Refunds take 5 days.")

    with patch("knowledge.services.query.httpx.Client") as mock_client:
        mock_client.return_value.__enter__.return_value.post.return_value = remote_response([item])
        results = query_knowledge_bases("refunds")

    assert [result.content for result in results] == ["Refunds take 5 days."]
    assert str(remote.id) in KnowledgeBaseQueryLog.objects.get().knowledge_base_ids


def test_remote_item_with_odd_metadata(knowledge_base_factory):
    kb = knowledge_base_factory(source_type=KnowledgeBase.SourceType.API, endpoint="https://kb.example.com")
    payload = [{"id": "1", "content": "Refund policy", "score": "0.7", "metadata": 5}]
    with patch("knowledge.services.query.httpx.Client") as mock_client:
        mock_client.return_value.__enter__.return_value.post.return_value = remote_response(payload)
        [result] = query_knowledge_base(kb, "refunds", 5)

    assert result.relevance_score == 0.7
    assert result.metadata == {"knowledge_base_id": str(kb.id)}


def test_non_dict_parameters_skip_the_base(knowledge_base_factory):
    kb = knowledge_base_factory(
        is_public=True, source_type=KnowledgeBase.SourceType.API, endpoint="https://kb.example.com", parameters=["x"]
    )
    with patch("knowledge.services.query.httpx.Client") as mock_client:
        assert query_knowledge_bases("refunds") == []
    mock_client.return_value.__enter__.return_value.post.assert_not_called()
    assert KnowledgeBaseQueryLog.objects.get().knowledge_base_ids == [str(kb.id)]
