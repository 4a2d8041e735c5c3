"""Synthesis Job Manager - one chapter from text to a stored, mastered file.

A job moves pending → synthesizing → mastering → mastered, or to failed.
Each automatic retry is a new job; the newest job of a chapter is the one
that counts.
"""

import logging
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from audiobookforge.audio.audio_utils import concat_audio_files
from audiobookforge.audio.mastering import MasteringEngine
from audiobookforge.blobstore import BlobStore
from audiobookforge.config import Settings, get_config
from audiobookforge.models import (
    Chapter,
    ID3Metadata,
    JobStatus,
    Project,
    ProjectStatus,
    SynthesisJob,
)
from audiobookforge.storage.base import NotFoundError, Storage
from audiobookforge.text import (
    NormalizerOptions,
    compile_ssml,
    normalize_text,
    parse_speaking_rate,
    prepare_authored_markup,
    render_plain_text,
    split_text,
    strip_markup,
    text_size,
)
from audiobookforge.tts import ProviderRegistry
from audiobookforge.tts.base import (
    ProviderConfigError,
    ProviderError,
    ProviderTask,
    TransientProviderError,
    TTSProvider,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]


def is_retryable(exc: BaseException) -> bool:
    """Configuration and input errors fail the chapter at once."""
    return not isinstance(exc, (ProviderConfigError, ValueError, NotFoundError))


def _unlink(path: Optional[Path]) -> None:
    if path is None:
        return
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove temp file %s: %s", path, e)


class SynthesisJobManager:
    """Runs synthesis jobs against a provider, the mastering engine and a blob store.

    All record changes go through ``storage``; the manager itself keeps no
    job state, so several chapters can run on different threads at once.
    """

    def __init__(
        self,
        storage: Storage,
        providers: ProviderRegistry,
        mastering: MasteringEngine,
        blob_store: BlobStore,
        settings: Optional[Settings] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.storage = storage
        self.providers = providers
        self.mastering = mastering
        self.blob_store = blob_store
        self.settings = settings or get_config()
        self.on_progress = on_progress
        self.work_dir = Path(self.settings.work_dir)
        self._settle_lock = threading.RLock()

    # -- text -----------------------------------------------------------------

    def build_payload(self, chapter: Chapter, project: Project, provider: TTSProvider) -> str:
        """The full request text for a chapter, in the form the provider accepts."""
        if chapter.content_markup and chapter.content_markup.strip():
            markup = prepare_authored_markup(chapter.content_markup, project.speech_rate)
            return markup if provider.supports_markup else strip_markup(markup)

        if not chapter.content_text or not chapter.content_text.strip():
            raise ValueError(f"Chapter '{chapter.title}' has no text")
        normalized = normalize_text(chapter.content_text, NormalizerOptions(language=project.language))
        if provider.supports_markup:
            return compile_ssml(normalized, project.speech_rate)
        return render_plain_text(normalized)

    @staticmethod
    def _request_rate(project: Project, provider: TTSProvider) -> float:
        # Markup carries the rate in its prosody element.
        if provider.supports_markup:
            return 1.0
        return parse_speaking_rate(project.speech_rate)

    # -- provider calls -------------------------------------------------------

    def _uses_task(self, provider: TTSProvider, payload: str) -> bool:
        return (
            provider.supports_tasks
            and text_size(payload, provider.size_unit) <= provider.task_size_limit
        )

    def wait_for_task(self, provider: TTSProvider, handle: str) -> ProviderTask:
        """Poll a provider task until it finishes or the task timeout runs out."""
        deadline = time.monotonic() + self.settings.task_timeout
        while True:
            task = provider.get_task_status(handle)
            if task.state == "completed":
                return task
            if task.state == "failed":
                raise ProviderError(f"Provider task {handle} failed: {task.reason or 'unknown reason'}")
            if time.monotonic() >= deadline:
                raise TransientProviderError(
                    f"Provider task {handle} still running after {self.settings.task_timeout}s"
                )
            time.sleep(self.settings.task_poll_interval)

    def _synthesize_chunks(
        self,
        job: SynthesisJob,
        provider: TTSProvider,
        payload: str,
        voice_id: str,
        rate: float,
        raw_path: Path,
    ) -> int:
        chunks = split_text(
            payload,
            provider.max_request_size,
            unit=provider.size_unit,
            markup=provider.supports_markup,
        )
        self.storage.update_job(job.id, chunk_count=len(chunks))

        if len(chunks) == 1:
            raw_path.write_bytes(provider.synthesize(chunks[0], voice_id, rate))
            return 1

        parts = []
        try:
            for i, chunk in enumerate(chunks):
                if i and provider.request_delay:
                    time.sleep(provider.request_delay)
                logger.info("Job %d: chunk %d/%d (%d %s)", job.id, i + 1, len(chunks),
                            text_size(chunk, provider.size_unit), provider.size_unit)
                part = raw_path.with_name(f"{raw_path.stem}_part{i:03d}{raw_path.suffix}")
                part.write_bytes(provider.synthesize(chunk, voice_id, rate))
                parts.append(part)
            concat_audio_files(parts, raw_path, timeout=self.settings.mastering_timeout)
        finally:
            for part in parts:
                _unlink(part)
        return len(chunks)

    def _synthesize_task(
        self,
        job: SynthesisJob,
        provider: TTSProvider,
        payload: str,
        voice_id: str,
        rate: float,
        raw_path: Path,
    ) -> int:
        handle = provider.start_task(payload, voice_id, rate)
        # Recorded before waiting so a restart can pick the task up again.
        self.storage.update_job(job.id, provider_task_handle=handle, chunk_count=1)
        logger.info("Job %d: %s task %s started", job.id, provider.name, handle)
        task = self.wait_for_task(provider, handle)
        if task.output_uri:
            self.storage.update_job(job.id, output_uri=task.output_uri)
        raw_path.write_bytes(provider.fetch_task_audio(task))
        return 1

    # -- one attempt ----------------------------------------------------------

    def _raw_path(self, job: SynthesisJob, provider: TTSProvider) -> Path:
        raw_dir = self.work_dir / "raw"
        raw_dir.mkdir(parents=True, exist_ok=True)
        return raw_dir / f"job{job.id}_{int(time.time() * 1000)}.{provider.output_format}"

    def run_job(self, job_id: int) -> SynthesisJob:
        """Take a pending job through synthesis and mastering.

        On any error the job is marked failed, ``retry_count`` goes up by one
        and the exception propagates. Errors that are not retried use up the
        whole retry budget.
        """
        job = self.storage.get_job(job_id)
        chapter = self.storage.get_chapter(job.chapter_id)
        project = self.storage.get_project(job.project_id)
        raw_path = None

        try:
            job = self.storage.update_job(job.id, status=JobStatus.SYNTHESIZING, started_at=datetime.now())
            provider = self.providers.get(project.provider)
            payload = self.build_payload(chapter, project, provider)
            rate = self._request_rate(project, provider)
            raw_path = self._raw_path(job, provider)

            logger.info(
                "Synthesizing chapter %d '%s' with %s (%s)",
                chapter.sequence_number, chapter.title, provider.name, project.voice_id,
            )
            if self._uses_task(provider, payload):
                self._synthesize_task(job, provider, payload, project.voice_id, rate, raw_path)
            else:
                self._synthesize_chunks(job, provider, payload, project.voice_id, rate, raw_path)

            self.storage.update_job(job.id, status=JobStatus.MASTERING, raw_audio_path=str(raw_path))
            return self.master_job(job.id)
        except Exception as e:
            self.record_failure(job, chapter, e)
            _unlink(raw_path)
            raise

    def resume_task(self, job_id: int, task: ProviderTask) -> SynthesisJob:
        """Finish a job whose provider task completed while nobody was waiting on it."""
        job = self.storage.get_job(job_id)
        chapter = self.storage.get_chapter(job.chapter_id)
        project = self.storage.get_project(job.project_id)
        raw_path = None

        try:
            provider = self.providers.get(project.provider)
            raw_path = self._raw_path(job, provider)
            raw_path.write_bytes(provider.fetch_task_audio(task))
            self.storage.update_job(
                job.id,
                status=JobStatus.MASTERING,
                raw_audio_path=str(raw_path),
                output_uri=task.output_uri,
            )
            return self.master_job(job.id)
        except Exception as e:
            self.record_failure(job, chapter, e)
            _unlink(raw_path)
            raise

    def resume_mastering(self, job_id: int) -> SynthesisJob:
        """Re-run mastering for a job that was interrupted while mastering."""
        job = self.storage.get_job(job_id)
        chapter = self.storage.get_chapter(job.chapter_id)
        try:
            return self.master_job(job.id)
        except Exception as e:
            self.record_failure(job, chapter, e)
            raise

    def record_failure(self, job: SynthesisJob, chapter: Chapter, exc: Exception) -> None:
        """Mark ``job`` failed with ``exc``; errors that are not retried spend the whole budget."""
        retry_count = job.retry_count + 1
        if not is_retryable(exc):
            retry_count = max(retry_count, self.settings.job_max_retries + 1)
        logger.error("Job %d for chapter '%s' failed: %s", job.id, chapter.title, exc)
        self.storage.update_job(
            job.id,
            status=JobStatus.FAILED,
            error_message=str(exc) or type(exc).__name__,
            retry_count=retry_count,
            completed_at=datetime.now(),
        )

    def _metadata(self, chapter: Chapter, project: Project) -> ID3Metadata:
        return ID3Metadata(
            title=chapter.title,
            artist=project.author or None,
            album=project.title,
            album_artist=project.album_artist or project.author or None,
            year=project.year,
            track=f"{chapter.sequence_number}/{project.total_chapters}",
            genre=project.genre,
            cover_image_path=project.cover_image_path,
            cover_image_data=project.cover_image_data,
        )

    def master_job(self, job_id: int) -> SynthesisJob:
        """Master a job's raw audio, store the result and mark the job mastered.

        When mastering fails the unmastered audio is stored instead and the
        job carries a warning.
        """
        job = self.storage.get_job(job_id)
        if job.status != JobStatus.MASTERING:
            raise ValueError(f"Job {job.id} is {job.status.value}, not mastering")
        chapter = self.storage.get_chapter(job.chapter_id)
        project = self.storage.get_project(job.project_id)
        raw_path = Path(job.raw_audio_path or "")
        if not job.raw_audio_path or not raw_path.is_file():
            raise FileNotFoundError(f"Raw audio for job {job.id} is missing: {job.raw_audio_path}")

        mastered_dir = self.work_dir / "mastered"
        mastered_dir.mkdir(parents=True, exist_ok=True)
        mastered_path = mastered_dir / f"job{job.id}_{int(time.time() * 1000)}.mp3"

        result = self.mastering.master(
            raw_path, mastered_path, self._metadata(chapter, project), job_tag=f"job{job.id}",
        )
        warning = None
        if result.success:
            deliver = mastered_path
            if result.duration_sec:
                logger.info("Chapter '%s' mastered: %.1fs", chapter.title, result.duration_sec)
        else:
            warning = f"Mastering failed, delivered unmastered audio: {result.error}"
            logger.warning("Chapter '%s': %s", chapter.title, warning)
            deliver = raw_path

        key = f"projects/{project.id}/chapter_{chapter.sequence_number:03d}.mp3"
        try:
            uri = self.blob_store.put_file(key, deliver)
            url = self.blob_store.signed_url(uri)
        finally:
            _unlink(mastered_path)

        job = self.storage.update_job(
            job.id,
            status=JobStatus.MASTERED,
            output_uri=uri,
            final_audio_url=url,
            warning=warning,
            completed_at=datetime.now(),
        )
        _unlink(raw_path)
        logger.info("Chapter %d '%s' stored at %s", chapter.sequence_number, chapter.title, uri)
        return job

    # -- retries --------------------------------------------------------------

    def starting_retry_count(self, chapter: Chapter) -> int:
        """Retry count a new job for ``chapter`` starts from.

        A chapter whose latest job failed within budget carries its count on;
        anything else (no job, mastered, or an exhausted budget being
        explicitly re-run) starts over.
        """
        latest = self.storage.latest_job(chapter.id, chapter.project_id)
        if latest is not None and latest.status == JobStatus.FAILED:
            if latest.retry_count <= self.settings.job_max_retries:
                return latest.retry_count
        return 0

    def synthesize_chapter(self, chapter_id: int) -> SynthesisJob:
        """Synthesize one chapter, retrying with backoff.

        Every attempt is a new job. Returns the mastered job, or re-raises the
        last error once the budget is spent.
        """
        chapter = self.storage.get_chapter(chapter_id)
        retry_count = self.starting_retry_count(chapter)
        attempts = max(1, self.settings.job_max_retries + 1 - retry_count)

        retrying = Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(
                multiplier=self.settings.retry_backoff_seconds,
                max=self.settings.retry_max_wait_seconds,
            ),
            retry=retry_if_exception(is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    job = self.storage.create_job(chapter.id, chapter.project_id, retry_count=retry_count)
                    retry_count = job.retry_count + 1
                    return self.run_job(job.id)
        finally:
            self.chapter_finished(chapter)

    # -- project side effects -------------------------------------------------

    def failed_permanently(self, job: SynthesisJob) -> bool:
        """A failed job whose retry budget is spent."""
        return job.status == JobStatus.FAILED and job.retry_count > self.settings.job_max_retries

    def is_settled(self, job: Optional[SynthesisJob]) -> bool:
        """Mastered, or failed with nothing left to retry."""
        return job is not None and (job.status == JobStatus.MASTERED or self.failed_permanently(job))

    def chapter_finished(self, chapter: Chapter) -> None:
        """Refresh the project counters and status, then report progress.

        Progress is reported under the settle lock, so callbacks from
        different worker threads never interleave.
        """
        self.storage.refresh_mastered_count(chapter.project_id)
        with self._settle_lock:
            self.settle_project(chapter.project_id)
            if self.on_progress:
                latest = self.storage.latest_jobs(chapter.project_id)
                done = sum(1 for job in latest.values() if self.is_settled(job))
                total = self.storage.get_project(chapter.project_id).total_chapters
                self.on_progress(done, total, chapter.title)

    def settle_project(self, project_id: int) -> ProjectStatus:
        """Set the project's aggregate status from the latest job of each chapter.

        A project stays synthesizing until every chapter is settled.
        Then it is completed when any chapter was mastered (failed chapter
        titles are recorded) and failed when none was.
        """
        with self._settle_lock:
            project = self.storage.get_project(project_id)
            chapters = self.storage.list_chapters(project_id)
            latest = self.storage.latest_jobs(project_id)

            jobs = [latest.get(c.id) for c in chapters]
            if not chapters or not all(self.is_settled(job) for job in jobs):
                return project.status

            failed = [c.title for c, job in zip(chapters, jobs) if job.status == JobStatus.FAILED]
            if len(failed) == len(chapters):
                status = ProjectStatus.FAILED
                message = "All chapters failed: " + ", ".join(failed)
            else:
                status = ProjectStatus.COMPLETED
                message = f"{len(failed)} chapter(s) failed: " + ", ".join(failed) if failed else None

            self.storage.update_project(
                project_id, status=status, failed_chapters=failed, error_message=message,
            )
            if status != project.status:
                logger.info("Project %d '%s' is %s", project_id, project.title, status.value)
            return status
