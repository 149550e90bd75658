"""
MODULE: Task Queue
DESCRIPTION: FIFO reader over QUEUE_TASKS plus the end-of-run cleanup.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Sequence

from pydantic import ValidationError

from intelgraph.schemas.records import QUEUE_TASKS
from intelgraph.schemas.tasks import Task
from intelgraph.util.document_store import DocumentStore, OrderBy

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    tasks: List[Task] = field(default_factory=list)
    # IDs of rows that failed validation; they can never succeed
    unparseable_ids: List[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.tasks and not self.unparseable_ids


class TaskQueue:
    def __init__(self, store: DocumentStore):
        self.store = store

    def fetch(self, batch_size: int = 20) -> FetchResult:
        """Oldest tasks first, at most batch_size. Read-only."""
        rows = self.store.query(
            QUEUE_TASKS,
            order_by=OrderBy("created_timestamp"),
            limit=batch_size,
        )
        result = FetchResult()
        for row in rows:
            try:
                result.tasks.append(Task.model_validate(row))
            except ValidationError as e:
                row_id = row.get("id")
                logger.warning(f"Unparseable task {row_id}: {e.error_count()} validation errors")
                if row_id:
                    result.unparseable_ids.append(row_id)
        logger.info(f"Fetched {len(result.tasks)} tasks ({len(result.unparseable_ids)} unparseable)")
        return result

    def delete(self, task_ids: Sequence[str]) -> int:
        if not task_ids:
            return 0
        return self.store.delete(QUEUE_TASKS, list(task_ids))

    def requeue(self, tasks: Sequence[Task], errors: Dict[str, str]) -> int:
        """Keep failed tasks for another attempt, recording why they failed."""
        if not tasks:
            return 0
        now = datetime.now(timezone.utc)
        docs = [
            {
                "id": task.id,
                "retry_count": task.retry_count + 1,
                "last_error": errors.get(task.id, "analysis failed"),
                "updated_timestamp": now,
            }
            for task in tasks
        ]
        return self.store.upsert(QUEUE_TASKS, docs)

    def enqueue(self, tasks: Sequence[Task]) -> int:
        """Write tasks to the queue (harvesters and tooling)."""
        docs = []
        for task in tasks:
            doc = task.model_dump(mode="python")
            doc["task_type"] = task.task_type.value
            doc["created_timestamp"] = task.created_timestamp or datetime.now(timezone.utc)
            docs.append(doc)
        return self.store.upsert(QUEUE_TASKS, docs)
