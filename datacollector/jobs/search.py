"""Search job: run a query against the search engine."""

from typing import Any, Dict

from datacollector.jobs.base import BaseJobHandler, JobContext
from datacollector.schemas.document import SearchHit
from datacollector.schemas.handlers import SearchParams
from datacollector.schemas.job import JobType


class SearchJobHandler(BaseJobHandler):
    """Runs ``search_engine.search(query, limit, filters)``."""

    job_type = JobType.SEARCH
    params_model = SearchParams
    required_services = ("search_engine",)

    def run(self, params: SearchParams, context: JobContext) -> Dict[str, Any]:
        search_engine = context.services.get("search_engine")

        context.report_progress(10, "Searching", stage="search")
        raw_hits = search_engine.search(params.query, params.limit, params.filters)
        context.check_cancelled()

        hits = [SearchHit.model_validate(hit).model_dump() for hit in list(raw_hits)[: params.limit]]
        context.logger.info(f"Search returned {len(hits)} results")

        return {
            "query": params.query,
            "total": len(hits),
            "hits": hits,
        }
