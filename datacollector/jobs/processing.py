"""Processing job: download files and turn them into text chunks."""

from typing import Any, Dict, List, Tuple

from datacollector.errors import JobCancelled, RetryableFailure
from datacollector.jobs.base import BaseJobHandler, JobContext
from datacollector.schemas.handlers import ProcessingParams
from datacollector.schemas.job import JobType

MAX_PROGRESS = 95


class ProcessingJobHandler(BaseJobHandler):
    """Downloads URLs and extracts and chunks text from every file.

    A file that fails is recorded as a warning; the job only fails when
    no file could be processed at all.
    """

    job_type = JobType.PROCESSING
    params_model = ProcessingParams
    required_services = ("downloader", "file_processor")

    def run(self, params: ProcessingParams, context: JobContext) -> Dict[str, Any]:
        downloader = context.services.get("downloader")
        file_processor = context.services.get("file_processor")

        sources: List[Tuple[str, str]] = [("url", url) for url in params.download_urls]
        sources += [("file", path) for path in params.file_paths]
        total = len(sources)

        files = []
        documents = []
        warnings = []

        for index, (kind, source) in enumerate(sources):
            context.check_cancelled()
            context.report_progress(
                index / total * MAX_PROGRESS,
                f"Processing file {index + 1} of {total}",
                stage="processing",
            )

            try:
                if kind == "url":
                    download = downloader.download(source)
                    path, checksum = download.path, download.checksum
                else:
                    path, checksum = source, None

                processed = file_processor.process(
                    path,
                    source=source,
                    chunk_size=params.chunk_size,
                    chunk_overlap=params.chunk_overlap,
                )
            except JobCancelled:
                raise
            except Exception as e:
                context.logger.warning(f"Failed to process {source}: {e}")
                warnings.append(f"{source}: {e}")
                continue

            files.append(
                {
                    "source": source,
                    "path": processed.path,
                    "content_type": processed.content_type,
                    "checksum": checksum,
                    "text_length": processed.text_length,
                    "truncated": processed.truncated,
                    "chunk_count": len(processed.chunks),
                }
            )
            for chunk in processed.chunks:
                documents.append(
                    {
                        "id": f"{source}::{chunk.chunk_index}",
                        "text": chunk.text,
                        "metadata": {
                            "source": source,
                            "chunk_index": chunk.chunk_index,
                            "char_start": chunk.char_start,
                            "char_end": chunk.char_end,
                            "text_hash": chunk.text_hash,
                        },
                    }
                )

        if not files:
            raise RetryableFailure(f"No files could be processed: {'; '.join(warnings)}")

        context.report_progress(MAX_PROGRESS, f"Processed {len(files)} of {total} files", stage="processing")
        context.logger.info(f"Processed {len(files)}/{total} files into {len(documents)} chunks")

        return {
            "files": files,
            "documents": documents,
            "files_processed": len(files),
            "files_failed": total - len(files),
            "total_chunks": len(documents),
            "warnings": warnings,
        }
