import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Iterable, Iterator, List

from tqdm import tqdm

from .. import config
from ..exceptions import ProbeError, ThumbnailError
from ..models import EnrichJob, EnrichedEntry, MetadataField, PROBE_FIELDS
from .probe import MediaProber
from .thumbnail import Thumbnailer


class MetadataEnricher:
    """
    Fills in duration/resolution/frame rate and the thumbnail for candidates.

    Work is dominated by external-process latency, so jobs run on a bounded
    thread pool. One job failing (or one field of a job) never affects the others:
    the failure is recorded on the EnrichedEntry and the field is left empty.
    """
    def __init__(self,
                 prober: MediaProber,
                 thumbnailer: Thumbnailer,
                 max_workers: int = config.ENRICH_WORKERS,
                 show_progress: bool = False):
        self.prober = prober
        self.thumbnailer = thumbnailer
        self.max_workers = max(1, max_workers)
        self.show_progress = show_progress

    def enrich(self, job: EnrichJob) -> EnrichedEntry:
        """Enriches a single candidate. Never raises for per-field failures."""
        path = job.candidate.path
        result = EnrichedEntry(
            candidate=job.candidate,
            canonical_key=job.canonical_key,
            requested=frozenset(job.fields),
        )

        probe_fields = result.requested & PROBE_FIELDS
        if probe_fields:
            try:
                probed = self.prober.probe(path, probe_fields)
                result.duration_seconds = probed.duration_seconds
                result.resolution = probed.resolution
                result.frame_rate = probed.frame_rate
                for f in probed.missing(probe_fields):
                    result.errors[f] = "not reported by probe"
            except ProbeError as e:
                logging.warning(f"Probe failed for {path}: {e}")
                for f in probe_fields:
                    result.errors[f] = str(e)

        if MetadataField.THUMBNAIL in result.requested:
            try:
                result.thumbnail_ref = self.thumbnailer.generate(
                    path, job.canonical_key, force=job.regenerate_thumbnail
                )
            except ThumbnailError as e:
                logging.warning(f"Thumbnail failed for {path}: {e}")
                result.errors[MetadataField.THUMBNAIL] = str(e)

        return result

    def enrich_many(self, jobs: Iterable[EnrichJob]) -> Iterator[EnrichedEntry]:
        """
        Runs jobs on the worker pool and yields results as they complete
        (completion order, not submission order).
        """
        job_list: List[EnrichJob] = list(jobs)
        if not job_list:
            return

        logging.info(f"Enriching {len(job_list)} videos with {self.max_workers} workers")

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="enrich") as executor:
            future_to_job = {executor.submit(self.enrich, job): job for job in job_list}

            progress = tqdm(total=len(job_list), desc="Enriching", disable=not self.show_progress)
            try:
                for future in as_completed(future_to_job):
                    job = future_to_job[future]
                    try:
                        yield future.result()
                    except Exception as e:
                        # Unexpected failure inside a worker: degrade to an empty result
                        logging.error(f"Failed to enrich {job.candidate.path}: {e}")
                        failed = EnrichedEntry(
                            candidate=job.candidate,
                            canonical_key=job.canonical_key,
                            requested=frozenset(job.fields),
                        )
                        failed.errors = {f: str(e) for f in job.fields}
                        yield failed
                    progress.update(1)
            finally:
                progress.close()
