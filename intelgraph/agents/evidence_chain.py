"""
MODULE: Evidence Chain
DESCRIPTION: Links a new Evidence record to correlated records in other source collections.

A chain always starts with the record itself (primary_source). Every other
evidence collection contributes at most its single most recent record that
shares a linked entity and was published within the time window. The chain is
capped at evidence_chain_max entries.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from intelgraph.schemas.records import EVIDENCE_COLLECTIONS, EvidenceLink, EvidenceRelation
from intelgraph.util.config import PipelineConfig
from intelgraph.util.document_store import DocumentStore, Filter, Op, OrderBy

logger = logging.getLogger(__name__)


class EvidenceChainBuilder:
    def __init__(self, store: DocumentStore, config: Optional[PipelineConfig] = None):
        self.store = store
        self.config = config or PipelineConfig()

    def build(
        self,
        evidence_id: str,
        collection: str,
        linked_entity_ids: Sequence[str],
        publication_timestamp: Optional[datetime] = None,
    ) -> List[EvidenceLink]:
        chain = [EvidenceLink(
            evidence_id=evidence_id,
            collection_key=collection,
            relation_type=EvidenceRelation.PRIMARY_SOURCE,
        )]
        entity_ids = list(linked_entity_ids)[:self.config.evidence_entity_query_limit]
        if not entity_ids:
            return chain

        anchor = publication_timestamp or datetime.now(timezone.utc)
        window = timedelta(days=self.config.evidence_window_days)
        filters = [
            Filter("publication_timestamp", Op.GTE, anchor - window),
            Filter("publication_timestamp", Op.LTE, anchor + window),
            Filter("linked_entity_ids", Op.ARRAY_CONTAINS_ANY, entity_ids),
        ]
        seen = {evidence_id}

        for other in EVIDENCE_COLLECTIONS:
            if len(chain) >= self.config.evidence_chain_max:
                break
            if other == collection:
                continue
            try:
                rows = self.store.query(
                    other,
                    filters=filters,
                    order_by=OrderBy("publication_timestamp", descending=True),
                    limit=1,
                )
            except Exception as e:
                logger.warning(f"Evidence chain lookup in {other} failed for {evidence_id}: {e}")
                continue
            for row in rows:
                related_id = row.get("id")
                if related_id and related_id not in seen:
                    seen.add(related_id)
                    chain.append(EvidenceLink(
                        evidence_id=related_id,
                        collection_key=other,
                        relation_type=EvidenceRelation.RELATED_EVIDENCE,
                    ))
        return chain
