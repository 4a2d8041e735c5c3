"""Data models for the audiobookforge pipeline."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional


class ProjectStatus(str, Enum):
    """Aggregate status of an audiobook project."""
    DRAFT = "draft"
    SYNTHESIZING = "synthesizing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(str, Enum):
    """Status of a single synthesis attempt.

    pending → synthesizing → mastering → mastered, or → failed from any
    non-terminal state.
    """
    PENDING = "pending"
    SYNTHESIZING = "synthesizing"
    MASTERING = "mastering"
    MASTERED = "mastered"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.MASTERED, JobStatus.FAILED)


TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.SYNTHESIZING, JobStatus.FAILED}),
    JobStatus.SYNTHESIZING: frozenset({JobStatus.MASTERING, JobStatus.FAILED}),
    JobStatus.MASTERING: frozenset({JobStatus.MASTERED, JobStatus.FAILED}),
    JobStatus.MASTERED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class InvalidTransitionError(ValueError):
    """Raised when a job status change would move the state machine backwards."""


def check_transition(current: JobStatus, new: JobStatus) -> None:
    """Raise InvalidTransitionError unless ``current → new`` is allowed."""
    if new not in TRANSITIONS[JobStatus(current)]:
        raise InvalidTransitionError(
            f"Illegal job transition {JobStatus(current).value} → {JobStatus(new).value}"
        )


@dataclass
class Project:
    """An audiobook production unit."""
    id: int
    title: str
    voice_id: str
    provider: str
    author: str = ""
    language: str = "es"
    speech_rate: str = "100%"
    status: ProjectStatus = ProjectStatus.DRAFT
    total_chapters: int = 0
    completed_chapters: int = 0
    error_message: Optional[str] = None
    failed_chapters: list[str] = field(default_factory=list)
    album_artist: Optional[str] = None
    year: Optional[str] = None
    genre: str = "Audiobook"
    cover_image_path: Optional[str] = None
    cover_image_data: Optional[str] = None


@dataclass
class Chapter:
    """A single chapter of a project, in reading order."""
    id: int
    project_id: int
    sequence_number: int
    title: str
    content_text: str
    content_markup: Optional[str] = None


@dataclass
class SynthesisJob:
    """Persisted record of one attempt to synthesize and master one chapter."""
    id: int
    chapter_id: int
    project_id: int
    status: JobStatus = JobStatus.PENDING
    provider_task_handle: Optional[str] = None
    raw_audio_path: Optional[str] = None
    output_uri: Optional[str] = None
    final_audio_url: Optional[str] = None
    error_message: Optional[str] = None
    warning: Optional[str] = None
    retry_count: int = 0
    chunk_count: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass(frozen=True)
class LoudnormAnalysis:
    """Measurements reported by ffmpeg's loudnorm filter."""
    input_i: float
    input_tp: float
    input_lra: float
    input_thresh: float
    target_offset: float
    output_i: Optional[float] = None
    output_tp: Optional[float] = None
    normalization_type: str = "dynamic"


@dataclass(frozen=True)
class MasteringOptions:
    """ACX mastering targets. Defaults follow the Audible submission requirements."""
    target_loudness: float = -20.0
    target_peak: float = -3.0
    target_lra: float = 11.0
    silence_start_ms: int = 1000
    silence_end_ms: int = 3000
    sample_rate: int = 44100
    bitrate: str = "192k"
    de_esser: bool = True
    de_esser_amount: float = -4.0
    loudness_tolerance: float = 1.0


@dataclass(frozen=True)
class ID3Metadata:
    """Tags written into each mastered chapter file."""
    title: str
    artist: Optional[str] = None
    album: Optional[str] = None
    album_artist: Optional[str] = None
    year: Optional[str] = None
    track: Optional[str] = None
    genre: str = "Audiobook"
    cover_image_path: Optional[str] = None
    cover_image_data: Optional[bytes | str] = None


@dataclass
class MasteringResult:
    """Outcome of MasteringEngine.master()."""
    success: bool
    output_path: Optional[Path] = None
    analysis: Optional[LoudnormAnalysis] = None
    verification: Optional[LoudnormAnalysis] = None
    duration_sec: Optional[float] = None
    error: Optional[str] = None


@dataclass
class ProjectResult:
    """Aggregate outcome of one scheduler run over a project."""
    project_id: int
    status: ProjectStatus
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    batches: int = 0
    failed_chapters: list[str] = field(default_factory=list)


@dataclass
class RecoveryReport:
    """What a recovery pass found and did."""
    recovered: int = 0
    failed: int = 0
    pending: int = 0
    interrupted: int = 0
    queued_projects: list[int] = field(default_factory=list)
    failed_projects: list[int] = field(default_factory=list)
    completed_projects: list[int] = field(default_factory=list)
