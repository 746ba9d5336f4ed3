"""
Progress engine — pure logic, no I/O.
Skill aggregate bookkeeping, streak transitions, plan validation, progress summaries.
"""

import json
from datetime import date, timedelta
from typing import Optional

from study_model import Plan, PlanContent, SkillAggregate, StreakStats

SKILL_ORDERS = ("mastery_desc", "mastery_asc", "alpha")


class PlanValidationError(ValueError):
    """Raised when plan content is not fit to be stored."""


def percent(part: int, whole: int) -> int:
    """Half-up rounded percentage, 0 when there is nothing to count."""
    if whole <= 0:
        return 0
    return (200 * part + whole) // (2 * whole)


# ---------------------------------------------------------------------------
# Skill aggregates
# ---------------------------------------------------------------------------

def clamp_aggregate(aggregate: SkillAggregate) -> SkillAggregate:
    """Force 0 <= completed <= total and total >= 0."""
    aggregate.total = max(0, aggregate.total)
    aggregate.completed = max(0, min(aggregate.completed, aggregate.total))
    return aggregate


def register_plan_skills(skills: dict[str, SkillAggregate], plan: PlanContent) -> None:
    """Count every skill-tagged task of a newly added plan into the totals."""
    for day in plan.schedule:
        for task in day.tasks:
            if not task.skill:
                continue
            aggregate = skills.setdefault(task.skill, SkillAggregate())
            aggregate.total += 1


def release_plan_skills(skills: dict[str, SkillAggregate], plan: Plan) -> None:
    """
    Undo what register_plan_skills added for a plan that is being deleted.
    Completed tasks also give back their completion. Skills left with no
    tasks are dropped from the map.
    """
    for task in plan.iter_tasks():
        if not task.skill or task.skill not in skills:
            continue
        aggregate = skills[task.skill]
        aggregate.total = max(0, aggregate.total - 1)
        if task.is_completed:
            aggregate.completed = max(0, aggregate.completed - 1)
        clamp_aggregate(aggregate)
        if aggregate.total == 0:
            del skills[task.skill]


def carry_task_progress(stored: Plan, incoming: Plan) -> None:
    """
    Tasks that survive an edit keep their completion, reflection and skill
    tag; tasks new to the plan start open. Completion only moves through
    apply_completion, so the aggregates stay in step with the stored tasks.
    """
    previous = {task.id: task for task in stored.iter_tasks()}
    for task in incoming.iter_tasks():
        before = previous.get(task.id)
        if before is None:
            task.is_completed = False
            task.reflection = None
        else:
            task.is_completed = before.is_completed
            task.reflection = before.reflection
            task.skill = before.skill


def replace_plan_skills(skills: dict[str, SkillAggregate], stored: Plan, incoming: Plan) -> None:
    """Swap one plan's contribution to the totals for its edited version's."""
    release_plan_skills(skills, stored)
    register_plan_skills(skills, incoming)
    for task in incoming.iter_tasks():
        if task.is_completed:
            apply_completion(skills, task.skill, True)


def apply_completion(
    skills: dict[str, SkillAggregate], skill: Optional[str], is_completion: bool
) -> None:
    """Move one completion in or out of a skill; unknown skills are ignored."""
    if not skill or skill not in skills:
        return
    aggregate = skills[skill]
    aggregate.completed += 1 if is_completion else -1
    clamp_aggregate(aggregate)


def skill_mastery(aggregate: SkillAggregate) -> int:
    return percent(aggregate.completed, aggregate.total)


def rank_skills(skills: dict[str, SkillAggregate], order: str = "mastery_desc") -> list[dict]:
    """Flatten the skill map into rows sorted for display."""
    if order not in SKILL_ORDERS:
        raise ValueError(f"Unknown skill order '{order}'. Use one of {SKILL_ORDERS}.")

    rows = [
        {
            "name": name,
            "completed": agg.completed,
            "total": agg.total,
            "mastery": skill_mastery(agg),
        }
        for name, agg in skills.items()
    ]
    if order == "mastery_desc":
        rows.sort(key=lambda r: (-r["mastery"], r["name"]))
    elif order == "mastery_asc":
        rows.sort(key=lambda r: (r["mastery"], r["name"]))
    else:
        rows.sort(key=lambda r: r["name"])
    return rows


# ---------------------------------------------------------------------------
# Streaks
# ---------------------------------------------------------------------------

def record_completion(stats: StreakStats, today: date) -> StreakStats:
    """
    Streak transition for a completion on `today`.
    Same day is a no-op, the day after the last completion extends the
    streak, anything else starts over at 1. Returns a new object.
    """
    last = stats.last_completion_date
    if last == today:
        return stats.model_copy()
    if last is not None and last == today - timedelta(days=1):
        return StreakStats(streak=stats.streak + 1, last_completion_date=today)
    return StreakStats(streak=1, last_completion_date=today)


def current_streak(stats: StreakStats, today: date) -> int:
    """Streak as it should be shown today: a missed day means it has lapsed."""
    last = stats.last_completion_date
    if last is None:
        return 0
    if last >= today - timedelta(days=1):
        return stats.streak
    return 0


# ---------------------------------------------------------------------------
# Progress summaries
# ---------------------------------------------------------------------------

def plan_progress(plan: PlanContent) -> dict:
    total = 0
    completed = 0
    for day in plan.schedule:
        for task in day.tasks:
            total += 1
            if task.is_completed:
                completed += 1
    return {"completed": completed, "total": total, "percentage": percent(completed, total)}


def overall_progress(skills: dict[str, SkillAggregate]) -> dict:
    completed = sum(agg.completed for agg in skills.values())
    total = sum(agg.total for agg in skills.values())
    return {"completed": completed, "total": total, "percentage": percent(completed, total)}


# ---------------------------------------------------------------------------
# Validation of untrusted plan content
# ---------------------------------------------------------------------------

def validate_plan_content(content: PlanContent) -> PlanContent:
    """
    Reject generator output that would break ledger bookkeeping.
    Blank skill tags are normalized to None in place.
    """
    if not content.schedule:
        raise PlanValidationError("Plan has no scheduled days.")

    seen_ids: set[str] = set()
    for expected_day, day in enumerate(content.schedule, start=1):
        if day.day != expected_day:
            raise PlanValidationError(
                f"Day numbers must be sequential from 1; found {day.day} at position {expected_day}."
            )
        for task in day.tasks:
            if task.id in seen_ids:
                raise PlanValidationError(f"Duplicate task id '{task.id}'.")
            seen_ids.add(task.id)
            if task.skill is not None and not task.skill.strip():
                task.skill = None
            elif task.skill:
                task.skill = task.skill.strip()
            for resource in task.resources:
                if resource.type != "coding_challenge":
                    continue
                if not resource.test_cases:
                    raise PlanValidationError(
                        f"Coding challenge '{resource.title}' in task '{task.id}' has no test cases."
                    )
                for case in resource.test_cases:
                    _require_json(case.input, resource.title)
                    _require_json(case.expected, resource.title)
    return content


def _require_json(text: str, title: str) -> None:
    try:
        json.loads(text)
    except json.JSONDecodeError as exc:
        raise PlanValidationError(
            f"Test case in '{title}' is not valid JSON: {text!r}"
        ) from exc
