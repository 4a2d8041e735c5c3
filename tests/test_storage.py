"""Tests for job storage: the state machine, latest-job lookups and the JSON file store."""

import json
from datetime import datetime

import pytest

from audiobookforge.models import InvalidTransitionError, JobStatus, ProjectStatus
from audiobookforge.storage import JsonFileStorage, MemoryStorage, NotFoundError


@pytest.fixture
def store():
    return MemoryStorage()


def _project_with_chapters(store, count=2):
    project = store.create_project("El libro", "voice", "fake")
    chapters = [store.add_chapter(project.id, n, f"Capítulo {n}", "Texto.") for n in range(1, count + 1)]
    return project, chapters


class TestTransitions:
    def test_forward_path(self, store):
        project, [chapter, _] = _project_with_chapters(store)
        job = store.create_job(chapter.id, project.id)

        for status in (JobStatus.SYNTHESIZING, JobStatus.MASTERING, JobStatus.MASTERED):
            job = store.update_job(job.id, status=status)

        assert job.status == JobStatus.MASTERED

    def test_accepts_string_status(self, store):
        project, [chapter, _] = _project_with_chapters(store)
        job = store.create_job(chapter.id, project.id)

        job = store.update_job(job.id, status="synthesizing")

        assert job.status is JobStatus.SYNTHESIZING

    @pytest.mark.parametrize("path", [
        (JobStatus.MASTERING,),
        (JobStatus.SYNTHESIZING, JobStatus.PENDING),
        (JobStatus.FAILED, JobStatus.SYNTHESIZING),
        (JobStatus.SYNTHESIZING, JobStatus.MASTERING, JobStatus.MASTERED, JobStatus.FAILED),
    ])
    def test_illegal_moves(self, store, path):
        project, [chapter, _] = _project_with_chapters(store)
        job = store.create_job(chapter.id, project.id)
        *legal, illegal = path
        for status in legal:
            store.update_job(job.id, status=status)

        with pytest.raises(InvalidTransitionError):
            store.update_job(job.id, status=illegal)

    def test_same_status_is_not_a_transition(self, store):
        project, [chapter, _] = _project_with_chapters(store)
        job = store.create_job(chapter.id, project.id)
        store.update_job(job.id, status=JobStatus.SYNTHESIZING)

        job = store.update_job(job.id, status=JobStatus.SYNTHESIZING, chunk_count=3)

        assert job.chunk_count == 3

    def test_unknown_field(self, store):
        project, [chapter, _] = _project_with_chapters(store)
        job = store.create_job(chapter.id, project.id)

        with pytest.raises(AttributeError):
            store.update_job(job.id, colour="blue")


class TestRecords:
    def test_total_chapters_follows_chapters(self, store):
        project, _ = _project_with_chapters(store, 3)

        assert store.get_project(project.id).total_chapters == 3

    def test_duplicate_sequence_number(self, store):
        project, _ = _project_with_chapters(store)

        with pytest.raises(ValueError, match="#1"):
            store.add_chapter(project.id, 1, "Otra vez", "Texto.")

    def test_chapters_listed_in_reading_order(self, store):
        project = store.create_project("El libro", "voice", "fake")
        store.add_chapter(project.id, 2, "Dos", "b")
        store.add_chapter(project.id, 1, "Uno", "a")

        assert [c.title for c in store.list_chapters(project.id)] == ["Uno", "Dos"]

    def test_missing_records(self, store):
        with pytest.raises(NotFoundError):
            store.get_project(99)
        with pytest.raises(NotFoundError):
            store.get_chapter(99)
        with pytest.raises(NotFoundError):
            store.get_job(99)
        with pytest.raises(NotFoundError):
            store.create_job(99, 1)

    def test_returned_records_are_copies(self, store):
        project, _ = _project_with_chapters(store)
        copy = store.get_project(project.id)
        copy.title = "Cambiado"

        assert store.get_project(project.id).title == "El libro"

    def test_list_projects_by_status(self, store):
        first = store.create_project("Uno", "voice", "fake")
        store.create_project("Dos", "voice", "fake")
        store.update_project(first.id, status=ProjectStatus.SYNTHESIZING)

        assert [p.title for p in store.list_projects(ProjectStatus.SYNTHESIZING)] == ["Uno"]
        assert len(store.list_projects()) == 2


class TestLatestJobs:
    def test_newest_job_wins(self, store):
        project, [first, second] = _project_with_chapters(store)
        store.create_job(first.id, project.id)
        newest = store.create_job(first.id, project.id, retry_count=1)
        other = store.create_job(second.id, project.id)

        latest = store.latest_jobs(project.id)

        assert latest[first.id].id == newest.id
        assert latest[second.id].id == other.id
        assert store.latest_job(first.id, project.id).retry_count == 1

    def test_no_job_yet(self, store):
        project, [chapter, _] = _project_with_chapters(store)

        assert store.latest_job(chapter.id, project.id) is None

    def test_delete_superseded_jobs(self, store):
        project, [chapter, _] = _project_with_chapters(store)
        for _ in range(3):
            newest = store.create_job(chapter.id, project.id)

        assert store.delete_superseded_jobs(chapter.id) == 2
        assert [j.id for j in store.list_jobs(project.id)] == [newest.id]
        assert store.delete_superseded_jobs(chapter.id) == 0

    def test_refresh_mastered_count_counts_latest_only(self, store):
        project, [first, second] = _project_with_chapters(store)
        done = store.create_job(first.id, project.id)
        for status in (JobStatus.SYNTHESIZING, JobStatus.MASTERING, JobStatus.MASTERED):
            store.update_job(done.id, status=status)
        store.create_job(first.id, project.id)
        mastered = store.create_job(second.id, project.id)
        for status in (JobStatus.SYNTHESIZING, JobStatus.MASTERING, JobStatus.MASTERED):
            store.update_job(mastered.id, status=status)

        assert store.refresh_mastered_count(project.id) == 1
        assert store.get_project(project.id).completed_chapters == 1

    def test_refresh_mastered_count_writes_only_on_change(self, store):
        project, _ = _project_with_chapters(store)
        writes = store.writes

        store.refresh_mastered_count(project.id)

        assert store.writes == writes


class TestJsonFileStorage:
    def test_state_survives_reload(self, tmp_path):
        path = tmp_path / "state.json"
        store = JsonFileStorage(path)
        project = store.create_project("El libro", "voice", "polly", author="Ana")
        chapter = store.add_chapter(project.id, 1, "Uno", "Texto.", content_markup="<speak>Hola</speak>")
        job = store.create_job(chapter.id, project.id)
        store.update_job(
            job.id, status=JobStatus.SYNTHESIZING, provider_task_handle="task-1",
            started_at=datetime(2024, 5, 1, 12, 30),
        )
        store.update_project(project.id, status=ProjectStatus.SYNTHESIZING)

        reloaded = JsonFileStorage(path)

        assert reloaded.get_project(project.id).status is ProjectStatus.SYNTHESIZING
        assert reloaded.get_project(project.id).author == "Ana"
        assert reloaded.get_chapter(chapter.id).content_markup == "<speak>Hola</speak>"
        job = reloaded.get_job(job.id)
        assert job.status is JobStatus.SYNTHESIZING
        assert job.provider_task_handle == "task-1"
        assert job.started_at == datetime(2024, 5, 1, 12, 30)

    def test_ids_continue_after_reload(self, tmp_path):
        path = tmp_path / "state.json"
        store = JsonFileStorage(path)
        project = store.create_project("El libro", "voice", "fake")
        chapter = store.add_chapter(project.id, 1, "Uno", "Texto.")
        first = store.create_job(chapter.id, project.id)

        reloaded = JsonFileStorage(path)
        second = reloaded.create_job(chapter.id, project.id)

        assert second.id == first.id + 1
        assert reloaded.latest_job(chapter.id, project.id).id == second.id

    def test_file_format(self, tmp_path):
        path = tmp_path / "nested" / "state.json"
        store = JsonFileStorage(path)
        store.create_project("Año", "voice", "fake")

        data = json.loads(path.read_text(encoding="utf-8"))

        assert data["version"] == 1
        assert data["projects"][0]["title"] == "Año"
        assert data["projects"][0]["status"] == "draft"
        assert not path.with_name("state.json.tmp").exists()

    def test_transitions_still_enforced(self, tmp_path):
        store = JsonFileStorage(tmp_path / "state.json")
        project = store.create_project("El libro", "voice", "fake")
        chapter = store.add_chapter(project.id, 1, "Uno", "Texto.")
        job = store.create_job(chapter.id, project.id)

        with pytest.raises(InvalidTransitionError):
            store.update_job(job.id, status=JobStatus.MASTERED)
