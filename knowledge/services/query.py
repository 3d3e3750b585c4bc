import logging
import re
import uuid
from dataclasses import dataclass, field
from functools import reduce
from operator import or_

import httpx
from django.db.models import Q

from knowledge.models import KnowledgeBase, KnowledgeBaseDocument, KnowledgeBaseQueryLog

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 15


@dataclass
class KnowledgeResult:
    id: str
    content: str
    source: str
    relevance_score: float
    metadata: dict = field(default_factory=dict)


def _auth_headers(kb: KnowledgeBase) -> dict:
    if kb.api_key:
        return {"Authorization": f"Bearer {kb.api_key}"}
    return {}


def _relevance(value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"Invalid relevance score {value!r}")
    return float(value)


def _from_remote_item(kb: KnowledgeBase, item: dict, score, source: str) -> KnowledgeResult:
    metadata = item.get("metadata")
    metadata = dict(metadata) if isinstance(metadata, dict) else {}
    metadata["knowledge_base_id"] = str(kb.id)
    return KnowledgeResult(
        id=str(item.get("id") or uuid.uuid4()),
        content=str(item.get("content") or item.get("text") or ""),
        source=str(item.get("source") or source),
        relevance_score=_relevance(score),
        metadata=metadata,
    )


def _remote_items(response: httpx.Response) -> list[dict]:
    data = response.json()
    if not isinstance(data, list):
        logger.warning(f"Knowledge base endpoint {response.request.url} returned a non-list payload")
        return []
    return [item for item in data if isinstance(item, dict)]


def query_api(kb: KnowledgeBase, query: str, limit: int) -> list[KnowledgeResult]:
    payload = {"query": query, "limit": limit, **kb.parameters}
    with httpx.Client(timeout=REQUEST_TIMEOUT_SECONDS) as client:
        response = client.post(kb.endpoint, json=payload, headers=_auth_headers(kb))
        response.raise_for_status()
    return [
        _from_remote_item(kb, item, item.get("relevance_score") or item.get("score") or 0, kb.name)
        for item in _remote_items(response)
    ]


def query_vector(kb: KnowledgeBase, query: str, limit: int) -> list[KnowledgeResult]:
    payload = {"query": query, "limit": limit, **kb.parameters}
    with httpx.Client(timeout=REQUEST_TIMEOUT_SECONDS) as client:
        response = client.post(kb.endpoint, json=payload, headers=_auth_headers(kb))
        response.raise_for_status()
    return [
        _from_remote_item(kb, item, item.get("similarity") or item.get("score") or 0, kb.name)
        for item in _remote_items(response)
    ]


def query_cms(kb: KnowledgeBase, query: str, limit: int) -> list[KnowledgeResult]:
    params = {"query": query, "limit": limit, **kb.parameters}
    with httpx.Client(timeout=REQUEST_TIMEOUT_SECONDS) as client:
        response = client.get(kb.endpoint, params=params, headers=_auth_headers(kb))
        response.raise_for_status()
    return [
        _from_remote_item(kb, item, item.get("relevance") or 0.5, f"{kb.name} - {item.get('title') or 'unknown'}")
        for item in _remote_items(response)
    ]


def query_terms(query: str) -> list[str]:
    return list(dict.fromkeys(term for term in re.findall(r"\w+", query.lower()) if len(term) > 1))


def search_documents(documents, query: str, limit: int, source: str | None = None) -> list[KnowledgeResult]:
    """Term search over stored documents, scored by the fraction of query terms found."""
    terms = query_terms(query)
    if not terms:
        return []
    matching = documents.filter(
        reduce(or_, (Q(content__icontains=term) | Q(title__icontains=term) for term in terms))
    ).select_related("knowledge_base")

    results = []
    for document in matching:
        haystack = f"{document.title} {document.content}".lower()
        found = sum(1 for term in terms if term in haystack)
        results.append(
            KnowledgeResult(
                id=str(document.id),
                content=document.content,
                source=source or document.source_url or document.knowledge_base.name,
                relevance_score=found / len(terms),
                metadata={**document.metadata, "knowledge_base_id": str(document.knowledge_base_id)},
            )
        )
    results.sort(key=lambda result: result.relevance_score, reverse=True)
    return results[:limit]


def query_documents(kb: KnowledgeBase, query: str, limit: int) -> list[KnowledgeResult]:
    return search_documents(KnowledgeBaseDocument.objects.filter(knowledge_base=kb), query, limit)


BACKENDS = {
    KnowledgeBase.SourceType.API: query_api,
    KnowledgeBase.SourceType.VECTOR: query_vector,
    KnowledgeBase.SourceType.CMS: query_cms,
    KnowledgeBase.SourceType.DATABASE: query_documents,
    KnowledgeBase.SourceType.FILE: query_documents,
}


def query_knowledge_base(kb: KnowledgeBase, query: str, limit: int) -> list[KnowledgeResult]:
    backend = BACKENDS.get(kb.source_type)
    if backend is None:
        logger.error(f"Unsupported knowledge base type '{kb.source_type}' for {kb.id}")
        return []
    if kb.source_type in KnowledgeBase.REMOTE_SOURCE_TYPES and not kb.endpoint:
        logger.error(f"Knowledge base {kb.id} of type {kb.source_type} has no endpoint")
        return []
    return backend(kb, query, limit)


def knowledge_bases_for(context_rule=None, user=None):
    """Active bases a query may read: the rule's or the user's own, plus public ones."""
    if context_rule is not None:
        return context_rule.knowledge_bases.filter(
            Q(owner_id=context_rule.owner_id) | Q(is_public=True), is_active=True
        )
    visible = Q(is_public=True)
    if user is not None and user.is_authenticated:
        visible |= Q(owner=user)
    return KnowledgeBase.objects.filter(visible, is_active=True)


def query_knowledge_bases(query: str, limit: int = 5, context_rule=None, user=None) -> list[KnowledgeResult]:
    knowledge_bases = list(knowledge_bases_for(context_rule, user))
    results: list[KnowledgeResult] = []
    for kb in knowledge_bases:
        try:
            results.extend(query_knowledge_base(kb, query, limit))
        except (httpx.HTTPError, ValueError, TypeError) as e:
            logger.error(f"Error querying knowledge base {kb.id} ({kb.source_type}): {e}")

    results.sort(key=lambda result: result.relevance_score or 0, reverse=True)
    results = results[:limit]

    KnowledgeBaseQueryLog.objects.create(
        user=user if user is not None and user.is_authenticated else None,
        query=query,
        context_rule=context_rule,
        knowledge_base_ids=[str(kb.id) for kb in knowledge_bases],
        results_count=len(results),
    )
    return results
