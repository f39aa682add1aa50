"""Collection job: plan and run a document collection for a query."""

from typing import Any, Dict, Optional

from datacollector.errors import JobCancelled
from datacollector.jobs.base import BaseJobHandler, JobContext, StepTracker
from datacollector.schemas.handlers import CollectionParams
from datacollector.schemas.job import JobType, utcnow

COLLECTION_STEPS = [
    ("initialize", "Initializing collection services", 10),
    ("plan", "Creating collection plan", 15),
    ("collect", "Executing data collection", 60),
    ("summarize", "Generating collection summary", 15),
]


class CollectionJobHandler(BaseJobHandler):
    """Collects documents for a query through the ``collector`` service.

    The collector exposes ``plan(query, options)`` and
    ``collect(plan, on_progress)``; ``on_progress(percent, message)`` is
    called with the collection step's own 0-100 progress.
    """

    job_type = JobType.COLLECTION
    params_model = CollectionParams
    required_services = ("collector",)

    def run(self, params: CollectionParams, context: JobContext) -> Dict[str, Any]:
        steps = StepTracker(context, COLLECTION_STEPS)

        steps.start("initialize")
        collector = context.services.get("collector")
        options = params.collector_options()
        steps.complete("initialize")

        steps.start("plan")
        plan = self._create_plan(collector, params, options, context)
        steps.complete("plan")

        steps.start("collect")

        def on_progress(percent: float, message: Optional[str] = None) -> None:
            context.check_cancelled()
            steps.advance("collect", percent / 100.0, message)

        try:
            result = dict(collector.collect(plan, on_progress))
        except JobCancelled:
            raise
        except Exception as e:
            steps.fail("collect", str(e))
            raise
        steps.complete("collect")

        steps.start("summarize")
        summary = self._summarize(params.query, result)
        steps.complete("summarize")

        context.logger.info(
            f"Collection finished: {result.get('documents_found', 0)} found, "
            f"{result.get('documents_downloaded', 0)} downloaded"
        )
        return {
            "plan": plan,
            "result": result,
            "summary": summary,
            "completed_at": utcnow().isoformat(),
        }

    def _create_plan(self, collector, params: CollectionParams, options: Dict[str, Any], context: JobContext):
        try:
            plan = collector.plan(params.query, options)
        except JobCancelled:
            raise
        except Exception as e:
            context.logger.warning(f"Failed to create collection plan, using direct query plan: {e}")
            return self.fallback_plan(str(context.job.id), params)

        strategies = plan.get("search_strategies", []) if isinstance(plan, dict) else []
        context.logger.info(f"Collection plan created with {len(strategies)} strategies")
        return plan

    @staticmethod
    def fallback_plan(job_id: str, params: CollectionParams) -> Dict[str, Any]:
        """Single-strategy plan searching the query as given."""
        sources = params.sources or ["default"]
        return {
            "id": f"fallback_{job_id}",
            "query": params.query,
            "search_strategies": [
                {
                    "source": source,
                    "query": params.query,
                    "max_results": params.max_results,
                    "rationale": "Direct query search (fallback mode)",
                }
                for source in sources
            ],
            "fallback": True,
        }

    @staticmethod
    def _summarize(query: str, result: Dict[str, Any]) -> str:
        found = result.get("documents_found", 0)
        downloaded = result.get("documents_downloaded", 0)
        summary = f'Collection completed for query: "{query}". Found {found} documents, downloaded {downloaded}.'
        if found:
            summary += f" Success rate: {round(downloaded / found * 100)}%."
        return summary
