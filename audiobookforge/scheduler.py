"""Bounded-parallel chapter scheduler.

Chapters of a project run in batches of N; a batch settles completely before
the next one starts, and one chapter's failure never cancels its siblings.
"""

import logging
import math
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Iterable, Optional

from audiobookforge.config import Settings, get_config
from audiobookforge.jobs import SynthesisJobManager
from audiobookforge.models import Chapter, JobStatus, ProjectResult, ProjectStatus

logger = logging.getLogger(__name__)

HARD_CONCURRENCY_LIMIT = 4


def effective_concurrency(requested: Optional[int], settings: Settings) -> int:
    """Clamp the requested batch size to the configured and hard ceilings."""
    limit = settings.parallel_chapter_limit if requested is None else requested
    if limit < 1:
        raise ValueError(f"Concurrency must be at least 1, got {limit}")
    return min(limit, settings.max_concurrency, HARD_CONCURRENCY_LIMIT)


class ChapterScheduler:
    """Runs the chapters of a project through the job manager, N at a time."""

    def __init__(
        self,
        manager: SynthesisJobManager,
        settings: Optional[Settings] = None,
        concurrency: Optional[int] = None,
    ):
        self.manager = manager
        self.storage = manager.storage
        self.settings = settings or get_config()
        self.concurrency = effective_concurrency(concurrency, self.settings)

    def chapters_to_run(self, project_id: int, chapter_ids: Optional[Iterable[int]] = None) -> list[Chapter]:
        """Chapters that still need a synthesis pass, in sequence order.

        Chapters whose latest job is mastered are done; those with a provider
        task still in flight are already being handled.
        """
        wanted = set(chapter_ids) if chapter_ids is not None else None
        latest = self.storage.latest_jobs(project_id)
        chapters = []
        for chapter in self.storage.list_chapters(project_id):
            if wanted is not None and chapter.id not in wanted:
                continue
            job = latest.get(chapter.id)
            if job is not None and job.status == JobStatus.MASTERED:
                continue
            if job is not None and job.status == JobStatus.SYNTHESIZING and job.provider_task_handle:
                logger.debug("Chapter '%s' has a live provider task, skipping", chapter.title)
                continue
            chapters.append(chapter)
        return chapters

    def _run_batch(self, batch: list[Chapter]) -> list[tuple[Chapter, Optional[BaseException]]]:
        with ThreadPoolExecutor(max_workers=len(batch), thread_name_prefix="chapter") as pool:
            futures = [(chapter, pool.submit(self.manager.synthesize_chapter, chapter.id)) for chapter in batch]
            wait([future for _, future in futures])

        outcomes = []
        for chapter, future in futures:
            exc = future.exception()
            if exc is not None:
                logger.error("Chapter %d '%s' failed: %s", chapter.sequence_number, chapter.title, exc)
            outcomes.append((chapter, exc))
        return outcomes

    def run_project(self, project_id: int, chapter_ids: Optional[Iterable[int]] = None) -> ProjectResult:
        """Synthesize every chapter that still needs it and settle the project status."""
        project = self.storage.get_project(project_id)
        all_chapters = self.storage.list_chapters(project_id)
        if not all_chapters:
            raise ValueError(f"Project {project_id} has no chapters")

        chapters = self.chapters_to_run(project_id, chapter_ids)
        result = ProjectResult(project_id=project_id, status=project.status)
        result.skipped = len(all_chapters) - len(chapters)
        if not chapters:
            logger.info("Project %d '%s': nothing to synthesize", project_id, project.title)
            result.status = self.manager.settle_project(project_id)
            return result

        self.storage.update_project(project_id, status=ProjectStatus.SYNTHESIZING, error_message=None)
        total_batches = math.ceil(len(chapters) / self.concurrency)
        logger.info(
            "Project %d '%s': %d chapter(s) in %d batch(es) of up to %d",
            project_id, project.title, len(chapters), total_batches, self.concurrency,
        )

        failed = []
        for index in range(total_batches):
            batch = chapters[index * self.concurrency:(index + 1) * self.concurrency]
            logger.info(
                "Batch %d/%d: %s", index + 1, total_batches,
                ", ".join(c.title for c in batch),
            )
            for chapter, exc in self._run_batch(batch):
                if exc is None:
                    result.succeeded += 1
                else:
                    result.failed += 1
                    failed.append(chapter)
            result.batches += 1
            logger.info("Batch %d/%d finished", index + 1, total_batches)

        result.failed_chapters = [c.title for c in sorted(failed, key=lambda c: c.sequence_number)]
        result.status = self.manager.settle_project(project_id)
        logger.info(
            "Project %d finished: %d succeeded, %d failed, status %s",
            project_id, result.succeeded, result.failed, result.status.value,
        )
        return result
