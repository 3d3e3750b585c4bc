import logging

import httpx
from django.db import transaction
from django.utils import timezone

from knowledge.models import KnowledgeBase, KnowledgeBaseDocument

logger = logging.getLogger(__name__)

SYNCABLE_SOURCE_TYPES = (KnowledgeBase.SourceType.API, KnowledgeBase.SourceType.CMS)
SYNC_TIMEOUT_SECONDS = 30


def fetch_remote_documents(kb: KnowledgeBase) -> list[dict]:
    headers = {"Authorization": f"Bearer {kb.api_key}"} if kb.api_key else {}
    with httpx.Client(timeout=SYNC_TIMEOUT_SECONDS) as client:
        try:
            response = client.get(kb.endpoint, params=kb.parameters, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(f"Sync of knowledge base {kb.id} failed: {exc.response.status_code} {exc.response.text}")
            raise
    data = response.json()
    if isinstance(data, dict):
        data = data.get("documents") or data.get("results") or []
    if not isinstance(data, list):
        raise ValueError(f"Knowledge base {kb.id} endpoint returned an unexpected payload")
    return [item for item in data if isinstance(item, dict)]


def sync_knowledge_base(kb: KnowledgeBase) -> int:
    """Replace the synced documents of a remote knowledge base. Returns the number stored."""
    if kb.source_type not in SYNCABLE_SOURCE_TYPES:
        raise ValueError(f"Knowledge bases of type '{kb.source_type}' cannot be synced")
    if not kb.endpoint:
        raise ValueError(f"Knowledge base {kb.id} has no endpoint")

    items = fetch_remote_documents(kb)
    documents = [
        KnowledgeBaseDocument(
            knowledge_base=kb,
            title=(item.get("title") or "")[:255],
            content=item.get("content") or item.get("text") or "",
            source_url=item.get("url") or item.get("source_url") or "",
            metadata={**(item.get("metadata") or {}), "external_id": item.get("id"), "synced": True},
        )
        for item in items
        if item.get("content") or item.get("text")
    ]
    with transaction.atomic():
        kb.documents.filter(metadata__synced=True).delete()
        KnowledgeBaseDocument.objects.bulk_create(documents)
        kb.last_synced_at = timezone.now()
        kb.save(update_fields=["last_synced_at"])
    logger.info(f"Synced {len(documents)} documents into knowledge base {kb.id}")
    return len(documents)


def sync_due_knowledge_bases() -> dict:
    synced, failed = [], []
    for kb in KnowledgeBase.objects.filter(is_active=True, source_type__in=SYNCABLE_SOURCE_TYPES):
        if not kb.sync_due:
            continue
        try:
            sync_knowledge_base(kb)
            synced.append(str(kb.id))
        except (httpx.HTTPError, ValueError):
            logger.exception(f"Scheduled sync failed for knowledge base {kb.id}")
            failed.append(str(kb.id))
    return {"synced": synced, "failed": failed}
