"""
Contracts for the external plan generator and reflection evaluator, and the
two flows that call them without letting their failures reach the ledger.
"""

import logging
from datetime import date, timedelta
from typing import Optional, Protocol

from study_model import GoalDetails, Plan, Reflection, Task

logger = logging.getLogger("collaborators")


class GenerationError(Exception):
    """The plan generator failed; nothing was stored. Safe to retry."""


class PlanGenerator(Protocol):
    def generate(self, details: GoalDetails) -> dict: ...


class ReflectionEvaluator(Protocol):
    def evaluate(self, task: Task, notes: str) -> str: ...


def fill_iso_dates(content: dict, start: Optional[date] = None) -> dict:
    """Stamp each scheduled day with its calendar date, day 1 being `start`."""
    start = start or date.today()
    for offset, day in enumerate(content.get("schedule", [])):
        day["iso_date"] = (start + timedelta(days=offset)).isoformat()
    return content


def create_plan_from_goal(ledger, generator: PlanGenerator, details: GoalDetails) -> Optional[Plan]:
    """Generate a plan and store it. A failed generation stores nothing."""
    try:
        content = generator.generate(details)
    except Exception as exc:
        logger.error("Plan generation failed for goal %r: %s", details.goal, exc)
        raise GenerationError("Failed to generate a learning plan. Please try again.") from exc
    return ledger.add_plan(fill_iso_dates(content))


def complete_with_reflection(
    ledger,
    evaluator: Optional[ReflectionEvaluator],
    plan_id: str,
    task_id: str,
    notes: str,
) -> Optional[Task]:
    """
    Mark a task complete with the learner's notes and, when an evaluator is
    available, its feedback. Evaluator trouble only costs the feedback.
    """
    plan = ledger.get_plan(plan_id)
    task = plan.find_task(task_id) if plan else None
    if task is None or task.is_completed:
        return None

    feedback = ""
    if evaluator is not None and notes.strip():
        try:
            feedback = evaluator.evaluate(task, notes)
        except Exception as exc:
            logger.warning("Reflection evaluation failed for task %s: %s", task_id, exc)
            feedback = ""

    return ledger.set_task_completion(
        plan_id, task_id, True, reflection=Reflection(notes=notes, feedback=feedback)
    )
