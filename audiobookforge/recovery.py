"""Startup reconciliation of projects left synthesizing by a previous process.

Only the latest job of each chapter is looked at. Running a pass twice in a
row changes nothing the first pass did not already settle.
"""

import logging
from pathlib import Path
from typing import Optional

from audiobookforge.jobs import SynthesisJobManager
from audiobookforge.models import (
    Chapter,
    JobStatus,
    Project,
    ProjectStatus,
    RecoveryReport,
    SynthesisJob,
)
from audiobookforge.scheduler import ChapterScheduler

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Interrupted by a restart"


class RecoveryService:
    """Reconciles persisted jobs with reality and re-queues unfinished chapters.

    With a scheduler, queued chapters are synthesized right away; without
    one they are only reported.
    """

    def __init__(self, manager: SynthesisJobManager, scheduler: Optional[ChapterScheduler] = None):
        self.manager = manager
        self.storage = manager.storage
        self.scheduler = scheduler

    def recover(self) -> RecoveryReport:
        report = RecoveryReport()
        projects = self.storage.list_projects(ProjectStatus.SYNTHESIZING)
        if not projects:
            logger.info("Recovery: no interrupted projects")
            return report

        logger.info("Recovery: %d project(s) still synthesizing", len(projects))
        for project in projects:
            self._recover_project(project, report)
        logger.info(
            "Recovery finished: %d recovered, %d failed, %d pending, %d interrupted",
            report.recovered, report.failed, report.pending, report.interrupted,
        )
        return report

    def _recover_project(self, project: Project, report: RecoveryReport) -> None:
        latest = self.storage.latest_jobs(project.id)
        queue: list[Chapter] = []
        permanent: Optional[tuple[Chapter, SynthesisJob]] = None

        for chapter in self.storage.list_chapters(project.id):
            job = latest.get(chapter.id)
            if job is None:
                queue.append(chapter)
                continue
            if job.status in (JobStatus.PENDING, JobStatus.SYNTHESIZING, JobStatus.MASTERING):
                job = self._reconcile(job, chapter, report)
            if job.status == JobStatus.FAILED:
                if self.manager.failed_permanently(job):
                    permanent = permanent or (chapter, job)
                else:
                    queue.append(chapter)

        self.storage.refresh_mastered_count(project.id)

        if permanent is not None:
            chapter, job = permanent
            message = f"Chapter '{chapter.title}' failed permanently: {job.error_message}"
            self.storage.update_project(project.id, status=ProjectStatus.FAILED, error_message=message)
            logger.error("Project %d '%s' marked failed: %s", project.id, project.title, message)
            report.failed_projects.append(project.id)
            return

        if queue:
            logger.info(
                "Project %d '%s': re-queueing %s",
                project.id, project.title, ", ".join(c.title for c in queue),
            )
            report.queued_projects.append(project.id)
            if self.scheduler is not None:
                result = self.scheduler.run_project(project.id, [c.id for c in queue])
                self._record_outcome(project.id, result.status, report)
            return

        self._record_outcome(project.id, self.manager.settle_project(project.id), report)

    @staticmethod
    def _record_outcome(project_id: int, status: ProjectStatus, report: RecoveryReport) -> None:
        if status == ProjectStatus.COMPLETED:
            report.completed_projects.append(project_id)
        elif status == ProjectStatus.FAILED:
            report.failed_projects.append(project_id)

    def _reconcile(self, job: SynthesisJob, chapter: Chapter, report: RecoveryReport) -> SynthesisJob:
        """Bring a non-terminal job to where it really is."""
        if job.status == JobStatus.SYNTHESIZING and job.provider_task_handle:
            return self._check_task(job, chapter, report)

        if job.status == JobStatus.MASTERING and job.raw_audio_path and Path(job.raw_audio_path).is_file():
            logger.info("Job %d: re-running mastering for '%s'", job.id, chapter.title)
            try:
                job = self.manager.resume_mastering(job.id)
                report.recovered += 1
            except Exception as e:
                logger.error("Job %d: mastering after restart failed: %s", job.id, e)
                report.failed += 1
                job = self.storage.get_job(job.id)
            return job

        logger.warning("Job %d for '%s' was interrupted while %s", job.id, chapter.title, job.status.value)
        report.interrupted += 1
        return self.storage.update_job(job.id, status=JobStatus.FAILED, error_message=INTERRUPTED_MESSAGE)

    def _check_task(self, job: SynthesisJob, chapter: Chapter, report: RecoveryReport) -> SynthesisJob:
        project = self.storage.get_project(job.project_id)
        try:
            provider = self.manager.providers.get(project.provider)
            task = provider.get_task_status(job.provider_task_handle)
        except Exception as e:
            logger.warning(
                "Job %d: status check for task %s failed, treating as pending: %s",
                job.id, job.provider_task_handle, e,
            )
            report.pending += 1
            return job

        if task.state == "completed":
            logger.info("Job %d: task %s completed while offline", job.id, task.handle)
            try:
                job = self.manager.resume_task(job.id, task)
                report.recovered += 1
            except Exception as e:
                logger.error("Job %d: finishing task %s failed: %s", job.id, task.handle, e)
                report.failed += 1
                job = self.storage.get_job(job.id)
            return job

        if task.state == "failed":
            reason = task.reason or "unknown reason"
            self.manager.record_failure(job, chapter, RuntimeError(f"Provider task {task.handle} failed: {reason}"))
            report.failed += 1
            return self.storage.get_job(job.id)

        logger.info("Job %d: task %s still running", job.id, task.handle)
        report.pending += 1
        return job
