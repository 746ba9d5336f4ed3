"""
Study plan data models and JSON persistence.
Pydantic v2 models for plans, skill aggregates and streak state.
"""

import json
import logging
import os
import tempfile
from datetime import date, datetime
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

DATA_DIR = Path(os.getenv("STUDY_DATA_DIR", str(Path.home() / ".studyplan" / "users")))

ResourceType = Literal["video", "article", "notes", "practice", "coding_challenge"]
PlanStatus = Literal["active", "archived"]

logger = logging.getLogger("study_model")


class TestCase(BaseModel):
    __test__ = False  # not a pytest class

    input: str  # JSON text of the argument
    expected: str  # JSON text of the return value


class Resource(BaseModel):
    type: ResourceType
    title: str
    content: str  # URL for video/article, markdown otherwise
    test_cases: Optional[list[TestCase]] = None
    solution: Optional[str] = None

    @model_validator(mode="after")
    def _challenge_fields_only_on_challenges(self) -> "Resource":
        if self.type != "coding_challenge":
            self.test_cases = None
            self.solution = None
        return self


class Reflection(BaseModel):
    notes: str = ""
    feedback: str = ""


class Task(BaseModel):
    id: str
    title: str
    description: str = ""
    is_completed: bool = False
    skill: Optional[str] = None
    resources: list[Resource] = Field(default_factory=list)
    reflection: Optional[Reflection] = None

    @model_validator(mode="after")
    def _reflection_requires_completion(self) -> "Task":
        if not self.is_completed:
            self.reflection = None
        return self


class DayPlan(BaseModel):
    day: int = Field(ge=1)
    date: str = ""  # display string from the generator
    iso_date: str = ""
    theme: str = ""
    tasks: list[Task] = Field(default_factory=list)


class PlanContent(BaseModel):
    """Plan payload as produced by the generator, before the ledger stamps it."""

    goal: str
    duration_days: Optional[int] = None
    schedule: list[DayPlan] = Field(default_factory=list)


class Plan(PlanContent):
    id: str
    created_at: str = Field(default_factory=lambda: datetime.now().isoformat())
    status: PlanStatus = "active"

    def iter_tasks(self):
        for day in self.schedule:
            yield from day.tasks

    def find_task(self, task_id: str) -> Optional[Task]:
        for task in self.iter_tasks():
            if task.id == task_id:
                return task
        return None

    def find_challenge(self, task_id: str, resource_index: Optional[int] = None) -> Optional[Resource]:
        """The task's coding challenge; resource_index picks one when there are several."""
        task = self.find_task(task_id)
        if task is None:
            return None
        for i, resource in enumerate(task.resources):
            if resource.type != "coding_challenge":
                continue
            if resource_index is None or i == resource_index:
                return resource
        return None


class SkillAggregate(BaseModel):
    completed: int = Field(0, ge=0)
    total: int = Field(0, ge=0)


class StreakStats(BaseModel):
    streak: int = Field(0, ge=0)
    last_completion_date: Optional[date] = None


class GoalDetails(BaseModel):
    goal: str
    deadline: str
    daily_availability: str
    level: str


class UserRecord(BaseModel):
    credential_hash: str = ""
    plans: list[Plan] = Field(default_factory=list)
    skills: dict[str, SkillAggregate] = Field(default_factory=dict)
    stats: StreakStats = Field(default_factory=StreakStats)


# ---------------------------------------------------------------------------
# Durable store
# ---------------------------------------------------------------------------

class JsonFileStore:
    """One JSON document per user key, replaced atomically on every write."""

    def __init__(self, data_dir: Optional[Path] = None):
        self.data_dir = Path(data_dir) if data_dir else DATA_DIR

    def _path(self, key: str) -> Path:
        # keys are usernames; keep them from escaping the data dir
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in key)
        return self.data_dir / f"{safe}.json"

    def read(self, key: str) -> Optional[dict]:
        path = self._path(key)
        if not path.exists():
            return None
        return json.loads(path.read_text())

    def write(self, key: str, record: dict) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        fd, tmp = tempfile.mkstemp(dir=self.data_dir, prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as fh:
                json.dump(record, fh, indent=2)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def exists(self, key: str) -> bool:
        return self._path(key).exists()


def load_record(store, key: str) -> UserRecord:
    """Load a user record; absent or malformed data yields an empty record."""
    try:
        data = store.read(key)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Unreadable record for %s, treating as empty: %s", key, exc)
        return UserRecord()
    if data is None:
        return UserRecord()
    try:
        return UserRecord.model_validate(data)
    except ValidationError as exc:
        logger.warning("Malformed record for %s, treating as empty: %s", key, exc)
        return UserRecord()


def save_record(store, key: str, record: UserRecord) -> None:
    store.write(key, record.model_dump(mode="json"))
