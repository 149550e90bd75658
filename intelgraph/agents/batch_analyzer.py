"""
MODULE: Batch Analyzer
DESCRIPTION: Scores queued items and extracts candidate entity names, one LLM call per task type.

Tasks are grouped by task_type and each group is sent as a single request with
the prompt for that kind of source. Groups run concurrently, bounded by the
shared semaphore. Failure modes are contained:

- a group call fails or returns garbage  -> every task in the group gets an error
- the model omits a task id              -> that task gets an error
- the model invents an id                -> ignored
- sloppy arrays                          -> coerced by the schema, then sanitized
"""

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from intelgraph.schemas.llm import BatchAnalysisResponse, TaskAnalysis
from intelgraph.schemas.records import CANDIDATE_FIELD_TO_TYPE
from intelgraph.schemas.tasks import Task, TaskType
from intelgraph.util.config import PipelineConfig
from intelgraph.util.errors import IntelGraphError
from intelgraph.util.llm_client import ainvoke_structured, structured
from intelgraph.util.sanitizer import sanitize_candidates

logger = logging.getLogger(__name__)


# ============================================================================
# PROMPTS
# ============================================================================

_OUTPUT_CONTRACT = """
Input is a JSON object {"tasks": [{"id": ..., "text": ...}]}.
Return one result per task: {"results": [{"id": <same id>, "analysis": {...}}]}.

analysis fields:
- value_score: integer 0-10, how much this item matters for technology and market intelligence
- ai_summary: 2-3 sentence factual summary in English
- ai_keywords: up to 5 keywords
- candidate_companies, candidate_techs, candidate_persons, candidate_products,
  candidate_financial_concepts, candidate_organization_lists, candidate_business_events,
  candidate_research_firms, candidate_publishing_platforms: arrays of proper names
  exactly as written in the text. Use [] when nothing fits. Never use generic words
  ("company", "technology", "platform") as names."""

NEWS_SYSTEM_PROMPT = """You are a technology intelligence analyst reading news and industry updates.
Judge each item for strategic signal: product launches, funding, partnerships, M&A,
regulation, and shifts in competitive position score high; opinion pieces, listicles
and promotional fluff score low.""" + _OUTPUT_CONTRACT

PAPERS_SYSTEM_PROMPT = """You are a research scout reading academic papers and conference publications.
Judge each item for novelty and practical impact: new methods, state-of-the-art results,
and work from influential labs score high; incremental or survey work scores lower.
List the core techniques as candidate_techs and the authors' organizations as candidate_companies.""" + _OUTPUT_CONTRACT

PATENTS_SYSTEM_PROMPT = """You are an IP analyst reading patent filings.
Judge each item for technical breadth and commercial relevance. The assignee goes in
candidate_companies, inventors in candidate_persons, and the protected techniques in
candidate_techs.""" + _OUTPUT_CONTRACT

JOBS_SYSTEM_PROMPT = """You are a talent-market analyst reading job postings.
Judge each posting for what it reveals about the hiring company's strategy: new teams,
new technology stacks and senior research roles score high; routine backfills score low.
The hiring company goes in candidate_companies, required skills and tools in candidate_techs.""" + _OUTPUT_CONTRACT

REPORTS_SYSTEM_PROMPT = """You are a financial and technology analyst reading analyst reports and corporate filings.
Focus on the capital-market view: valuation, market size, competitive analysis and
growth forecasts. Research houses go in candidate_research_firms, metrics and
instruments in candidate_financial_concepts.""" + _OUTPUT_CONTRACT

PROMPTS_BY_TASK_TYPE = {
    TaskType.TECH_NEWS: NEWS_SYSTEM_PROMPT,
    TaskType.INDUSTRY_DYNAMICS: NEWS_SYSTEM_PROMPT,
    TaskType.OPENSOURCE: NEWS_SYSTEM_PROMPT,
    TaskType.ACADEMIC_PAPER: PAPERS_SYSTEM_PROMPT,
    TaskType.ACADEMIC_CONFERENCE: PAPERS_SYSTEM_PROMPT,
    TaskType.PATENT: PATENTS_SYSTEM_PROMPT,
    TaskType.TALENT_FLOW: JOBS_SYSTEM_PROMPT,
    TaskType.ANALYST_REPORT: REPORTS_SYSTEM_PROMPT,
    TaskType.CORPORATE_FILING: REPORTS_SYSTEM_PROMPT,
}


def prompt_for(task_type: TaskType) -> str:
    return PROMPTS_BY_TASK_TYPE.get(task_type, NEWS_SYSTEM_PROMPT)


@dataclass
class AnalysisOutcome:
    task_id: str
    analysis: Optional[TaskAnalysis] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.analysis is not None


class BatchAnalyzer:
    def __init__(self, llm=None, config: Optional[PipelineConfig] = None,
                 semaphore: Optional[asyncio.Semaphore] = None):
        if llm is None:
            from intelgraph.util.services import get_services
            llm = get_services().llm
        self.config = config or PipelineConfig()
        self.runnable = structured(llm, BatchAnalysisResponse)
        self.semaphore = semaphore or asyncio.Semaphore(self.config.llm_concurrency)

    def sanitize(self, analysis: TaskAnalysis) -> TaskAnalysis:
        cfg = self.config
        update = {
            name: sanitize_candidates(
                getattr(analysis, name), cfg.candidate_denylist,
                cfg.candidate_min_length, cfg.candidate_max_length,
            )
            for name in ["ai_keywords", *CANDIDATE_FIELD_TO_TYPE.keys()]
        }
        return analysis.model_copy(update=update)

    async def analyze(self, tasks: Sequence[Task]) -> Dict[str, AnalysisOutcome]:
        """Analyze every task; the result has exactly one outcome per input task."""
        groups: Dict[TaskType, List[Task]] = defaultdict(list)
        for task in tasks:
            groups[task.task_type].append(task)

        logger.info(f"Analyzing {len(tasks)} tasks in {len(groups)} groups")
        group_results = await asyncio.gather(
            *(self._analyze_group(task_type, group) for task_type, group in groups.items())
        )

        outcomes: Dict[str, AnalysisOutcome] = {}
        for result in group_results:
            outcomes.update(result)
        return outcomes

    async def _analyze_group(self, task_type: TaskType, tasks: List[Task]) -> Dict[str, AnalysisOutcome]:
        task_ids = [t.id for t in tasks]
        payload = {"tasks": [{"id": t.id, "text": t.text_for_ai} for t in tasks]}
        messages = [
            ("system", prompt_for(task_type)),
            ("human", json.dumps(payload, ensure_ascii=False)),
        ]

        try:
            async with self.semaphore:
                response = await ainvoke_structured(self.runnable, messages, self.config.llm_timeout_seconds)
        except IntelGraphError as e:
            logger.warning(f"Analysis failed for {task_type.value} group ({len(tasks)} tasks): {e}")
            return {tid: AnalysisOutcome(tid, error=str(e)) for tid in task_ids}

        wanted = set(task_ids)
        outcomes: Dict[str, AnalysisOutcome] = {}
        for result in response.results:
            if result.id not in wanted:
                logger.debug(f"Ignoring analysis for unknown id {result.id}")
                continue
            if result.id in outcomes:
                continue
            if result.analysis is None:
                outcomes[result.id] = AnalysisOutcome(result.id, error="empty analysis")
                continue
            outcomes[result.id] = AnalysisOutcome(result.id, analysis=self.sanitize(result.analysis))

        for tid in task_ids:
            if tid not in outcomes:
                logger.warning(f"Model returned no analysis for task {tid}")
                outcomes[tid] = AnalysisOutcome(tid, error="missing from model response")
        return outcomes
