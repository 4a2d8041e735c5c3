"""Storage contract for projects, chapters and synthesis jobs."""

from abc import ABC, abstractmethod
from typing import Optional

from audiobookforge.models import Chapter, Project, ProjectStatus, SynthesisJob


class NotFoundError(KeyError):
    """Unknown project, chapter or job id."""


class Storage(ABC):
    """Persistence collaborator used by the job manager, scheduler and recovery.

    Implementations return copies: mutating a returned record has no effect
    until it is written back through an ``update_*`` call. A chapter may have
    many jobs; the one with the highest id is authoritative.
    """

    # Projects

    @abstractmethod
    def create_project(self, title: str, voice_id: str, provider: str, **fields) -> Project:
        ...

    @abstractmethod
    def get_project(self, project_id: int) -> Project:
        ...

    @abstractmethod
    def update_project(self, project_id: int, **fields) -> Project:
        ...

    @abstractmethod
    def list_projects(self, status: Optional[ProjectStatus] = None) -> list[Project]:
        ...

    # Chapters

    @abstractmethod
    def add_chapter(
        self,
        project_id: int,
        sequence_number: int,
        title: str,
        content_text: str,
        content_markup: Optional[str] = None,
    ) -> Chapter:
        """Add a chapter; ``sequence_number`` must be unique within the project."""
        ...

    @abstractmethod
    def get_chapter(self, chapter_id: int) -> Chapter:
        ...

    @abstractmethod
    def list_chapters(self, project_id: int) -> list[Chapter]:
        """Chapters of a project in sequence order."""
        ...

    # Jobs

    @abstractmethod
    def create_job(self, chapter_id: int, project_id: int, retry_count: int = 0) -> SynthesisJob:
        ...

    @abstractmethod
    def get_job(self, job_id: int) -> SynthesisJob:
        ...

    @abstractmethod
    def update_job(self, job_id: int, **fields) -> SynthesisJob:
        """Update job fields. A status change must follow the state machine."""
        ...

    @abstractmethod
    def list_jobs(self, project_id: int) -> list[SynthesisJob]:
        ...

    @abstractmethod
    def latest_jobs(self, project_id: int) -> dict[int, SynthesisJob]:
        """Most recent job per chapter, keyed by chapter id."""
        ...

    @abstractmethod
    def delete_superseded_jobs(self, chapter_id: int) -> int:
        """Delete every job of a chapter except the latest; return how many went."""
        ...

    @abstractmethod
    def refresh_mastered_count(self, project_id: int) -> int:
        """Recount mastered chapters from the latest jobs and store the result."""
        ...

    def latest_job(self, chapter_id: int, project_id: int) -> Optional[SynthesisJob]:
        return self.latest_jobs(project_id).get(chapter_id)
