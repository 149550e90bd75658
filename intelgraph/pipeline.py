"""
MODULE: Ingestion Pipeline
DESCRIPTION: Task-queue consumer and command-line entry point.

One ingestion run is a LangGraph workflow:

    fetch -> load_dictionary -> analyze -> filter -> dedupe -> resolve -> embed -> write -> cleanup

An empty queue ends the run at fetch. Failures of single LLM groups degrade
the affected tasks; datastore failures before the write step abort the run with
the queue untouched. Consumed tasks are deleted only after their records are
written, so a killed run re-processes them and the deterministic IDs absorb
the repeat.
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, TypedDict

from langgraph.graph import END, StateGraph

from intelgraph.agents.batch_analyzer import AnalysisOutcome, BatchAnalyzer
from intelgraph.agents.embedder import Embedder
from intelgraph.agents.entity_dictionary import EntityDictionary
from intelgraph.agents.entity_resolver import EntityResolver, ResolutionResult
from intelgraph.agents.evidence_chain import EvidenceChainBuilder
from intelgraph.agents.record_writer import RecordWriter, build_evidence, build_finding
from intelgraph.agents.task_queue import TaskQueue
from intelgraph.agents.value_filter import apply_value_filter
from intelgraph.schemas.records import EVIDENCE_ID_PREFIX, evidence_collection_for
from intelgraph.schemas.summaries import IngestionSummary
from intelgraph.schemas.tasks import Task
from intelgraph.util.config import PipelineConfig
from intelgraph.util.document_store import DocumentStore
from intelgraph.util.errors import DatastoreUnavailableError, IntelGraphError
from intelgraph.util.ids import content_hash, make_evidence_id

logger = logging.getLogger(__name__)


# =============================================================================
# State
# =============================================================================

@dataclass
class PlannedRecord:
    task: Task
    collection: str
    evidence_id: str
    duplicate_check_hash: str


class IngestionState(TypedDict, total=False):
    summary: IngestionSummary
    tasks: List[Task]
    unparseable_ids: List[str]
    dictionary: EntityDictionary
    outcomes: Dict[str, AnalysisOutcome]
    accepted: List[Task]
    rejected: List[Task]
    failed: List[Task]
    planned: List[PlannedRecord]
    duplicate_ids: List[str]
    resolution: ResolutionResult
    vectors: List[Optional[List[float]]]
    written_ids: List[str]


# =============================================================================
# Workflow
# =============================================================================

class IngestionPipeline:
    def __init__(self, store: DocumentStore, llm=None, embeddings=None, config: Optional[PipelineConfig] = None):
        self.store = store
        self.llm = llm
        self.config = config or PipelineConfig.from_env()
        self.semaphore = asyncio.Semaphore(self.config.llm_concurrency)
        self.queue = TaskQueue(store)
        self.analyzer = BatchAnalyzer(llm, self.config, self.semaphore)
        self.embedder = Embedder(embeddings, self.config.llm_timeout_seconds)
        self.chains = EvidenceChainBuilder(store, self.config)
        self.writer = RecordWriter(store)
        self.app = self._build_graph()

    def _build_graph(self):
        workflow = StateGraph(IngestionState)

        workflow.add_node("fetch", self.fetch_node)
        workflow.add_node("load_dictionary", self.load_dictionary_node)
        workflow.add_node("analyze", self.analyze_node)
        workflow.add_node("filter", self.filter_node)
        workflow.add_node("dedupe", self.dedupe_node)
        workflow.add_node("resolve", self.resolve_node)
        workflow.add_node("embed", self.embed_node)
        workflow.add_node("write", self.write_node)
        workflow.add_node("cleanup", self.cleanup_node)

        workflow.set_entry_point("fetch")
        workflow.add_conditional_edges("fetch", self._after_fetch, {
            "continue": "load_dictionary", "cleanup": "cleanup", "end": END,
        })
        workflow.add_edge("load_dictionary", "analyze")
        workflow.add_edge("analyze", "filter")
        workflow.add_edge("filter", "dedupe")
        workflow.add_conditional_edges("dedupe", self._after_dedupe, {
            "continue": "resolve", "cleanup": "cleanup",
        })
        workflow.add_edge("resolve", "embed")
        workflow.add_edge("embed", "write")
        workflow.add_edge("write", "cleanup")
        workflow.add_edge("cleanup", END)

        return workflow.compile()

    async def run(self) -> IngestionSummary:
        logger.info("--- INGESTION RUN ---")
        final = await self.app.ainvoke({"summary": IngestionSummary()})
        summary = final["summary"]
        logger.info(f"Ingestion summary: {summary.model_dump_json()}")
        return summary

    # -- routing ---------------------------------------------------------------

    @staticmethod
    def _after_fetch(state: IngestionState) -> str:
        if state.get("tasks"):
            return "continue"
        return "cleanup" if state.get("unparseable_ids") else "end"

    @staticmethod
    def _after_dedupe(state: IngestionState) -> str:
        return "continue" if state.get("planned") else "cleanup"

    # -- nodes -----------------------------------------------------------------

    async def fetch_node(self, state: IngestionState) -> dict:
        try:
            result = await asyncio.to_thread(self.queue.fetch, self.config.task_batch_size)
        except IntelGraphError:
            raise
        except Exception as e:
            raise DatastoreUnavailableError(f"Could not read task queue: {e}") from e

        summary = state["summary"]
        summary.fetched = len(result.tasks)
        summary.unparseable = len(result.unparseable_ids)
        if result.empty:
            logger.info("Task queue is empty, nothing to do")
        return {"summary": summary, "tasks": result.tasks, "unparseable_ids": result.unparseable_ids}

    async def load_dictionary_node(self, state: IngestionState) -> dict:
        dictionary = await asyncio.to_thread(EntityDictionary.build, self.store)
        return {"dictionary": dictionary}

    async def analyze_node(self, state: IngestionState) -> dict:
        outcomes = await self.analyzer.analyze(state["tasks"])
        return {"outcomes": outcomes}

    async def filter_node(self, state: IngestionState) -> dict:
        result = apply_value_filter(state["tasks"], state["outcomes"], self.config.ingestion_threshold)
        summary = state["summary"]
        summary.accepted = len(result.accepted)
        summary.rejected = len(result.rejected)
        summary.analysis_failed = len(result.failed)
        for task in result.failed:
            summary.errors.append(f"{task.id}: {state['outcomes'][task.id].error}")
        return {"summary": summary, "accepted": result.accepted, "rejected": result.rejected, "failed": result.failed}

    async def dedupe_node(self, state: IngestionState) -> dict:
        planned: List[PlannedRecord] = []
        duplicates: List[str] = []
        seen = set()
        for task in state.get("accepted", []):
            collection = evidence_collection_for(task.task_type)
            digest = content_hash(task.payload.url, task.payload.title)
            evidence_id = make_evidence_id(EVIDENCE_ID_PREFIX[collection], digest)
            if evidence_id in seen or await asyncio.to_thread(self.writer.evidence_exists, collection, evidence_id):
                logger.info(f"Task {task.id} duplicates evidence {evidence_id}, skipping")
                duplicates.append(task.id)
                continue
            seen.add(evidence_id)
            planned.append(PlannedRecord(task, collection, evidence_id, digest))

        summary = state["summary"]
        summary.duplicates = len(duplicates)
        return {"summary": summary, "planned": planned, "duplicate_ids": duplicates}

    async def resolve_node(self, state: IngestionState) -> dict:
        resolver = EntityResolver(state["dictionary"], self.llm, self.config, self.semaphore)
        tasks = [p.task for p in state["planned"]]
        resolution = await resolver.resolve(tasks, state["outcomes"])
        summary = state["summary"]
        summary.entities_created = len(resolution.new_entities)
        return {"summary": summary, "resolution": resolution}

    async def embed_node(self, state: IngestionState) -> dict:
        texts = [p.task.text_for_ai for p in state["planned"]]
        vectors = await self.embedder.embed(texts)
        summary = state["summary"]
        summary.embeddings_missing = sum(1 for v in vectors if v is None)
        return {"summary": summary, "vectors": vectors}

    async def write_node(self, state: IngestionState) -> dict:
        resolution = state["resolution"]
        outcomes = state["outcomes"]

        def build_and_write() -> List[str]:
            self.writer.write_entities(resolution.new_entities)
            records = []
            now = datetime.now(timezone.utc)
            for plan, vector in zip(state["planned"], state["vectors"]):
                linked = resolution.linked_ids.get(plan.task.id, [])
                trigger = plan.task.payload.trigger_entity_id
                chain_ids = ([trigger] if trigger and trigger not in linked else []) + list(linked)
                chain = self.chains.build(
                    plan.evidence_id, plan.collection, chain_ids, plan.task.payload.publication_date,
                )
                evidence = build_evidence(
                    plan.task, outcomes[plan.task.id].analysis, plan.evidence_id,
                    plan.duplicate_check_hash, linked, vector, chain, now,
                )
                records.append((plan.collection, evidence, build_finding(evidence, now)))
            self.writer.write_records(records)
            return [plan.task.id for plan in state["planned"]]

        written = await asyncio.to_thread(build_and_write)
        summary = state["summary"]
        summary.written = len(written)
        return {"summary": summary, "written_ids": written}

    async def cleanup_node(self, state: IngestionState) -> dict:
        summary = state["summary"]
        to_delete = [
            *state.get("unparseable_ids", []),
            *[t.id for t in state.get("rejected", [])],
            *state.get("duplicate_ids", []),
            *state.get("written_ids", []),
        ]

        requeue: List[Task] = []
        for task in state.get("failed", []):
            if task.retry_count + 1 < self.config.max_analysis_attempts:
                requeue.append(task)
            else:
                to_delete.append(task.id)

        if requeue:
            errors = {t.id: state["outcomes"][t.id].error or "analysis failed" for t in requeue}
            summary.requeued = await asyncio.to_thread(self.queue.requeue, requeue, errors)
        summary.deleted_from_queue = await asyncio.to_thread(self.queue.delete, to_delete)
        return {"summary": summary}


async def process_task_queue(store: Optional[DocumentStore] = None, llm=None, embeddings=None,
                             config: Optional[PipelineConfig] = None) -> IngestionSummary:
    """Consume one batch from the task queue."""
    if store is None:
        from intelgraph.util.services import get_services
        store = get_services().store
    pipeline = IngestionPipeline(store, llm=llm, embeddings=embeddings, config=config)
    return await pipeline.run()


# =============================================================================
# CLI
# =============================================================================

def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="intelgraph",
        description="Intelligence processing and knowledge-graph construction pipeline",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable DEBUG logging")
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Consume one batch from the task queue")
    ingest.add_argument("--batch-size", type=int, default=None, help="Override TASK_BATCH_SIZE")

    sub.add_parser("relationships", help="Extract relationships from new findings")
    sub.add_parser("hierarchy", help="Attach orphan technologies to the technology tree")

    snapshot = sub.add_parser("snapshot", help="Write daily per-entity snapshots")
    snapshot.add_argument("--date", type=_parse_date, default=None, help="Day to snapshot (default: today, UTC)")

    sub.add_parser("normalize", help="Run one checkpointed entity normalization batch")
    sub.add_parser("enrich", help="Enrich due entities")

    reset = sub.add_parser("reset-checkpoint", help="Delete a sweep checkpoint")
    reset.add_argument("--key", default=None, help="Checkpoint key (default: normalization cursor)")

    enqueue = sub.add_parser("enqueue", help="Load tasks from a JSON or JSON-lines file into the queue")
    enqueue.add_argument("path", help="File with task objects")

    sub.add_parser("init-db", help="Create uniqueness constraints for every collection")
    return parser


def _load_task_file(path: str) -> List[dict]:
    with open(path) as f:
        text = f.read().strip()
    if not text:
        return []
    if text.startswith("["):
        return json.loads(text)
    return [json.loads(line) for line in text.splitlines() if line.strip()]


async def _dispatch(args, config: PipelineConfig):
    from intelgraph import jobs
    from intelgraph.util.services import get_services

    services = get_services()
    services.neo4j.warmup()
    services.neo4j.verify_connectivity()
    store = services.store

    if args.command == "ingest":
        if args.batch_size:
            config = replace(config, task_batch_size=args.batch_size)
        return await process_task_queue(store, config=config)
    if args.command == "relationships":
        return await jobs.run_relationship_job(store, config=config)
    if args.command == "hierarchy":
        return await jobs.run_hierarchy_job(store, config=config)
    if args.command == "snapshot":
        return await jobs.run_snapshot_job(store, day=args.date)
    if args.command == "normalize":
        return await jobs.run_normalization_job(store, config=config)
    if args.command == "enrich":
        return await jobs.run_enrichment_job(store, config=config)
    if args.command == "reset-checkpoint":
        return jobs.reset_checkpoint(config, args.key)
    if args.command == "enqueue":
        return await jobs.enqueue_tasks(store, _load_task_file(args.path))
    if args.command == "init-db":
        return jobs.init_db(store)
    raise ValueError(f"Unknown command {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = PipelineConfig.from_env()

    verbose = args.verbose or config.verbose
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Third-party clients are noisy at DEBUG
    for name in ("neo4j", "httpx", "httpcore", "openai"):
        logging.getLogger(name).setLevel(logging.WARNING)

    try:
        result = asyncio.run(_dispatch(args, config))
    except DatastoreUnavailableError as e:
        logger.error(f"Aborting: {e}")
        return 1
    except Exception:
        logger.exception(f"'{args.command}' failed")
        return 1
    finally:
        from intelgraph.util.services import get_services
        get_services().close()

    if hasattr(result, "model_dump_json"):
        print(result.model_dump_json(indent=2))
    elif result is not None:
        print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
