"""JSON-file storage: the in-memory store, saved to disk after every write."""

import dataclasses
import itertools
import json
import logging
from datetime import datetime
from enum import Enum
from pathlib import Path

from audiobookforge.models import Chapter, JobStatus, Project, ProjectStatus, SynthesisJob
from audiobookforge.storage.memory import MemoryStorage

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


def _encode(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _record_to_dict(record) -> dict:
    return {f.name: _encode(getattr(record, f.name)) for f in dataclasses.fields(record)}


def _known_fields(cls, data: dict) -> dict:
    names = {f.name for f in dataclasses.fields(cls)}
    return {k: v for k, v in data.items() if k in names}


def _project_from_dict(data: dict) -> Project:
    data = _known_fields(Project, data)
    data["status"] = ProjectStatus(data.get("status", ProjectStatus.DRAFT.value))
    return Project(**data)


def _job_from_dict(data: dict) -> SynthesisJob:
    data = _known_fields(SynthesisJob, data)
    data["status"] = JobStatus(data.get("status", JobStatus.PENDING.value))
    for key in ("started_at", "completed_at"):
        if data.get(key):
            data[key] = datetime.fromisoformat(data[key])
    return SynthesisJob(**data)


class JsonFileStorage(MemoryStorage):
    """Keeps the whole state in one JSON file so a restarted process can recover.

    Each write rewrites the file through a temp file and an atomic rename.
    """

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            self._load()

    def _load(self) -> None:
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)

        self._projects = {p["id"]: _project_from_dict(p) for p in data.get("projects", [])}
        self._chapters = {c["id"]: Chapter(**_known_fields(Chapter, c)) for c in data.get("chapters", [])}
        self._jobs = {j["id"]: _job_from_dict(j) for j in data.get("jobs", [])}
        for name, records in (("project", self._projects), ("chapter", self._chapters), ("job", self._jobs)):
            self._ids[name] = itertools.count(max(records, default=0) + 1)
        logger.debug(
            "Loaded %d projects, %d chapters, %d jobs from %s",
            len(self._projects), len(self._chapters), len(self._jobs), self.path,
        )

    def _save(self) -> None:
        data = {
            "version": FORMAT_VERSION,
            "projects": [_record_to_dict(p) for p in self._projects.values()],
            "chapters": [_record_to_dict(c) for c in self._chapters.values()],
            "jobs": [_record_to_dict(j) for j in self._jobs.values()],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        tmp.replace(self.path)

    def _changed(self) -> None:
        super()._changed()
        self._save()
