"""Thread-safe in-memory storage."""

import copy
import itertools
import threading
from typing import Optional

from audiobookforge.models import (
    Chapter,
    JobStatus,
    Project,
    ProjectStatus,
    SynthesisJob,
    check_transition,
)
from audiobookforge.storage.base import NotFoundError, Storage


class MemoryStorage(Storage):
    """Dict-backed store guarded by a single lock, so every write is serialized."""

    def __init__(self):
        self._projects: dict[int, Project] = {}
        self._chapters: dict[int, Chapter] = {}
        self._jobs: dict[int, SynthesisJob] = {}
        self._ids = {"project": itertools.count(1), "chapter": itertools.count(1), "job": itertools.count(1)}
        self._lock = threading.RLock()
        self.writes = 0

    def _changed(self) -> None:
        """Called after every effective write, with the lock held."""
        self.writes += 1

    @staticmethod
    def _apply(record, fields: dict) -> bool:
        changed = False
        for key, value in fields.items():
            if not hasattr(record, key) or key == "id":
                raise AttributeError(f"{type(record).__name__} has no writable field '{key}'")
            if getattr(record, key) != value:
                setattr(record, key, value)
                changed = True
        return changed

    # Projects

    def create_project(self, title: str, voice_id: str, provider: str, **fields) -> Project:
        with self._lock:
            project = Project(id=next(self._ids["project"]), title=title, voice_id=voice_id, provider=provider)
            self._apply(project, fields)
            self._projects[project.id] = project
            self._changed()
            return copy.deepcopy(project)

    def _project(self, project_id: int) -> Project:
        try:
            return self._projects[project_id]
        except KeyError:
            raise NotFoundError(f"Project {project_id} not found") from None

    def get_project(self, project_id: int) -> Project:
        with self._lock:
            return copy.deepcopy(self._project(project_id))

    def update_project(self, project_id: int, **fields) -> Project:
        with self._lock:
            project = self._project(project_id)
            if "status" in fields:
                fields["status"] = ProjectStatus(fields["status"])
            if self._apply(project, fields):
                self._changed()
            return copy.deepcopy(project)

    def list_projects(self, status: Optional[ProjectStatus] = None) -> list[Project]:
        with self._lock:
            return [
                copy.deepcopy(p) for p in self._projects.values()
                if status is None or p.status == status
            ]

    # Chapters

    def add_chapter(
        self,
        project_id: int,
        sequence_number: int,
        title: str,
        content_text: str,
        content_markup: Optional[str] = None,
    ) -> Chapter:
        with self._lock:
            project = self._project(project_id)
            if any(c.project_id == project_id and c.sequence_number == sequence_number
                   for c in self._chapters.values()):
                raise ValueError(f"Project {project_id} already has chapter #{sequence_number}")
            chapter = Chapter(
                id=next(self._ids["chapter"]),
                project_id=project_id,
                sequence_number=sequence_number,
                title=title,
                content_text=content_text,
                content_markup=content_markup,
            )
            self._chapters[chapter.id] = chapter
            project.total_chapters = sum(1 for c in self._chapters.values() if c.project_id == project_id)
            self._changed()
            return copy.deepcopy(chapter)

    def get_chapter(self, chapter_id: int) -> Chapter:
        with self._lock:
            try:
                return copy.deepcopy(self._chapters[chapter_id])
            except KeyError:
                raise NotFoundError(f"Chapter {chapter_id} not found") from None

    def list_chapters(self, project_id: int) -> list[Chapter]:
        with self._lock:
            chapters = [c for c in self._chapters.values() if c.project_id == project_id]
            return [copy.deepcopy(c) for c in sorted(chapters, key=lambda c: c.sequence_number)]

    # Jobs

    def create_job(self, chapter_id: int, project_id: int, retry_count: int = 0) -> SynthesisJob:
        with self._lock:
            if chapter_id not in self._chapters:
                raise NotFoundError(f"Chapter {chapter_id} not found")
            job = SynthesisJob(
                id=next(self._ids["job"]),
                chapter_id=chapter_id,
                project_id=project_id,
                retry_count=retry_count,
            )
            self._jobs[job.id] = job
            self._changed()
            return copy.deepcopy(job)

    def _job(self, job_id: int) -> SynthesisJob:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise NotFoundError(f"Job {job_id} not found") from None

    def get_job(self, job_id: int) -> SynthesisJob:
        with self._lock:
            return copy.deepcopy(self._job(job_id))

    def update_job(self, job_id: int, **fields) -> SynthesisJob:
        with self._lock:
            job = self._job(job_id)
            if "status" in fields:
                new_status = JobStatus(fields["status"])
                if new_status != job.status:
                    check_transition(job.status, new_status)
                fields["status"] = new_status
            if self._apply(job, fields):
                self._changed()
            return copy.deepcopy(job)

    def list_jobs(self, project_id: int) -> list[SynthesisJob]:
        with self._lock:
            return [copy.deepcopy(j) for j in sorted(self._jobs.values(), key=lambda j: j.id)
                    if j.project_id == project_id]

    def _latest(self, project_id: int) -> dict[int, SynthesisJob]:
        latest: dict[int, SynthesisJob] = {}
        for job in self._jobs.values():
            if job.project_id != project_id:
                continue
            current = latest.get(job.chapter_id)
            if current is None or job.id > current.id:
                latest[job.chapter_id] = job
        return latest

    def latest_jobs(self, project_id: int) -> dict[int, SynthesisJob]:
        with self._lock:
            return {cid: copy.deepcopy(j) for cid, j in self._latest(project_id).items()}

    def delete_superseded_jobs(self, chapter_id: int) -> int:
        with self._lock:
            jobs = [j for j in self._jobs.values() if j.chapter_id == chapter_id]
            if len(jobs) < 2:
                return 0
            newest = max(j.id for j in jobs)
            for job in jobs:
                if job.id != newest:
                    del self._jobs[job.id]
            self._changed()
            return len(jobs) - 1

    def refresh_mastered_count(self, project_id: int) -> int:
        with self._lock:
            project = self._project(project_id)
            chapter_ids = {c.id for c in self._chapters.values() if c.project_id == project_id}
            count = sum(
                1 for cid, job in self._latest(project_id).items()
                if cid in chapter_ids and job.status == JobStatus.MASTERED
            )
            if project.completed_chapters != count:
                project.completed_chapters = count
                self._changed()
            return count
