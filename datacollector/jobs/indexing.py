"""Indexing job: embed documents and upsert them into a search index."""

from typing import Any, Dict

from datacollector.errors import RetryableFailure
from datacollector.jobs.base import BaseJobHandler, JobContext
from datacollector.schemas.document import IndexItem
from datacollector.schemas.handlers import IndexingParams
from datacollector.schemas.job import JobType

MAX_PROGRESS = 95


class IndexingJobHandler(BaseJobHandler):
    """Embeds documents in batches through ``embedder`` and writes them to ``search_index``."""

    job_type = JobType.INDEXING
    params_model = IndexingParams
    required_services = ("embedder", "search_index")

    def run(self, params: IndexingParams, context: JobContext) -> Dict[str, Any]:
        embedder = context.services.get("embedder")
        search_index = context.services.get("search_index")

        documents = params.documents
        total = len(documents)
        batch_count = (total + params.batch_size - 1) // params.batch_size
        indexed = 0

        for batch_number, start in enumerate(range(0, total, params.batch_size), start=1):
            context.check_cancelled()
            batch = documents[start:start + params.batch_size]
            context.report_progress(
                start / total * MAX_PROGRESS,
                f"Indexing batch {batch_number} of {batch_count}",
                stage="indexing",
            )

            embeddings = embedder.embed_texts([document.text for document in batch])
            if len(embeddings) != len(batch):
                raise RetryableFailure(
                    f"Embedding count mismatch: expected {len(batch)}, got {len(embeddings)}"
                )

            items = [
                IndexItem(id=document.id, text=document.text, embedding=embedding, metadata=document.metadata)
                for document, embedding in zip(batch, embeddings)
            ]
            search_index.upsert(params.index_name, items)
            indexed += len(items)
            context.logger.debug(f"Indexed batch {batch_number}/{batch_count} ({len(items)} documents)")

        context.report_progress(MAX_PROGRESS, f"Indexed {indexed} documents", stage="indexing")
        context.logger.info(f"Indexed {indexed} documents into '{params.index_name}'")

        return {
            "index_name": params.index_name,
            "documents_indexed": indexed,
            "batches": batch_count,
        }
