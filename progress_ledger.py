"""
ProgressLedger: the authoritative per-user store of plans, skills and streak.

Every operation resolves the current identity first. Without one, reads
return empty values and writes do nothing. Writes for the same identity are
serialized (load -> mutate -> save under a per-user lock) so concurrent
toggles cannot lose updates; reads work on the last persisted snapshot.
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import date, datetime
from typing import Callable, Optional, Union

from progress_engine import (
    apply_completion,
    carry_task_progress,
    current_streak,
    overall_progress,
    record_completion,
    register_plan_skills,
    release_plan_skills,
    replace_plan_skills,
    validate_plan_content,
)
from study_model import (
    Plan,
    PlanContent,
    Reflection,
    SkillAggregate,
    StreakStats,
    Task,
    load_record,
    save_record,
)

logger = logging.getLogger("progress_ledger")


class ProgressLedger:
    def __init__(self, store, resolver, today: Callable[[], date] = date.today):
        self.store = store
        self.resolver = resolver
        self._today = today
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def with_resolver(self, resolver) -> "ProgressLedger":
        """Same store and write locks, scoped to another identity resolver."""
        scoped = ProgressLedger(self.store, resolver, today=self._today)
        scoped._locks = self._locks
        scoped._locks_guard = self._locks_guard
        return scoped

    # -- internals ---------------------------------------------------------

    def _identity(self) -> Optional[str]:
        return self.resolver.current_identity()

    def _lock_for(self, username: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(username)
            if lock is None:
                lock = self._locks[username] = threading.Lock()
            return lock

    @contextmanager
    def _writing(self):
        """Yield the current user's record under its write lock, then persist it.

        Yields None when no identity resolves. Raising _Unchanged in the
        body skips the save.
        """
        username = self._identity()
        if not username:
            yield None
            return
        with self._lock_for(username):
            record = load_record(self.store, username)
            try:
                yield record
            except _Unchanged:
                return
            save_record(self.store, username, record)

    def _snapshot(self):
        username = self._identity()
        if not username:
            return None
        return load_record(self.store, username)

    # -- plan lifecycle ----------------------------------------------------

    def add_plan(self, new_plan_content: Union[PlanContent, dict]) -> Optional[Plan]:
        """Store a new plan and count its skill-tagged tasks into the totals."""
        with self._writing() as record:
            if record is None:
                return None
            content = PlanContent.model_validate(
                new_plan_content.model_dump() if isinstance(new_plan_content, PlanContent) else new_plan_content
            )
            validate_plan_content(content)
            plan = Plan(
                **content.model_dump(),
                id=f"plan_{uuid.uuid4().hex}",
                created_at=datetime.now().isoformat(),
                status="active",
            )
            record.plans.append(plan)
            register_plan_skills(record.skills, plan)
            logger.info("Added plan %s (%d days)", plan.id, len(plan.schedule))
            return plan.model_copy(deep=True)

    def update_plan(self, plan: Union[Plan, dict]) -> bool:
        """
        Replace the stored plan with the same id. Unknown ids are ignored.
        Tasks that already existed keep their completion state and skill tag
        (set_task_completion changes those); added and removed tasks move
        the skill totals.
        """
        with self._writing() as record:
            if record is None:
                return False
            incoming = Plan.model_validate(plan.model_dump() if isinstance(plan, Plan) else plan)
            for i, stored in enumerate(record.plans):
                if stored.id == incoming.id:
                    validate_plan_content(incoming)
                    carry_task_progress(stored, incoming)
                    replace_plan_skills(record.skills, stored, incoming)
                    record.plans[i] = incoming
                    return True
            raise _Unchanged
        return False

    def delete_plan(self, plan_id: str) -> bool:
        """Remove a plan, first giving back its skill totals and completions."""
        with self._writing() as record:
            if record is None:
                return False
            for i, stored in enumerate(record.plans):
                if stored.id == plan_id:
                    release_plan_skills(record.skills, stored)
                    del record.plans[i]
                    logger.info("Deleted plan %s", plan_id)
                    return True
            raise _Unchanged
        return False

    # -- completion bookkeeping -------------------------------------------

    def toggle_task_completion(self, task: Union[Task, dict], is_completion: bool) -> None:
        """
        Count one completion in or out of the task's skill and, for a
        completion, advance the streak. Not idempotent: call it once per
        user action. set_task_completion is the deduplicating path.
        """
        task = task if isinstance(task, Task) else Task.model_validate(task)
        with self._writing() as record:
            if record is None:
                return
            self._apply_toggle(record, task.skill, is_completion)

    def set_task_completion(
        self,
        plan_id: str,
        task_id: str,
        completed: bool,
        reflection: Optional[Reflection] = None,
    ) -> Optional[Task]:
        """
        Move a stored task to `completed`, updating plan, skills and streak in
        one write. Returns the updated task, or None when nothing changed
        (unknown ids, or the task is already in that state).
        """
        with self._writing() as record:
            if record is None:
                return None
            plan = next((p for p in record.plans if p.id == plan_id), None)
            task = plan.find_task(task_id) if plan else None
            if task is None or task.is_completed == completed:
                raise _Unchanged

            task.is_completed = completed
            task.reflection = (reflection or Reflection()) if completed else None
            self._apply_toggle(record, task.skill, completed)
            return task.model_copy(deep=True)
        return None

    def _apply_toggle(self, record, skill: Optional[str], is_completion: bool) -> None:
        apply_completion(record.skills, skill, is_completion)
        if is_completion:
            record.stats = record_completion(record.stats, self._today())

    # -- reads -------------------------------------------------------------

    def get_plans(self) -> list[Plan]:
        record = self._snapshot()
        return record.plans if record else []

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        return next((p for p in self.get_plans() if p.id == plan_id), None)

    def get_skills(self) -> dict[str, SkillAggregate]:
        record = self._snapshot()
        return record.skills if record else {}

    def get_stats(self) -> StreakStats:
        record = self._snapshot()
        return record.stats if record else StreakStats()

    def overview(self) -> dict:
        record = self._snapshot()
        if record is None:
            return {"progress": overall_progress({}), "streak": 0, "plan_count": 0}
        return {
            "progress": overall_progress(record.skills),
            "streak": current_streak(record.stats, self._today()),
            "plan_count": len(record.plans),
        }


class _Unchanged(Exception):
    """Internal signal: leave the stored record as it was."""
