"""
Study Plan MCP Server.
Exposes tools for accounts, plan management, task completion, progress and
coding-challenge grading. Plans and reflection feedback are authored by the
calling model and handed in as tool arguments.
"""

import os
import sys

# Ensure sibling modules are importable
sys.path.insert(0, os.path.dirname(__file__))

import logging
from typing import Optional

from fastmcp import FastMCP
from pydantic import ValidationError

from grading_sandbox import SandboxUnavailable, grade_submission
from progress_engine import PlanValidationError, plan_progress, rank_skills
from progress_ledger import ProgressLedger
from session_authority import AuthError, SessionAuthority, StaticIdentity
from study_model import JsonFileStore, Reflection

logger = logging.getLogger("study_mcp_server")

mcp = FastMCP("StudyPlanTracker")

store = JsonFileStore()
authority = SessionAuthority(store)
ledger = ProgressLedger(store, StaticIdentity(None))


def _ledger_for(session_token: str) -> ProgressLedger:
    return ledger.with_resolver(authority.resolver(session_token))


def _plan_summary(plan) -> dict:
    return {
        "plan_id": plan.id,
        "goal": plan.goal,
        "created_at": plan.created_at,
        "status": plan.status,
        "days": len(plan.schedule),
        "progress": plan_progress(plan),
    }


@mcp.tool()
def sign_up(username: str, password: str) -> dict:
    """Create a learner account. Returns a session token for the other tools."""
    try:
        token = authority.sign_up(username, password)
    except AuthError as e:
        return {"created": False, "error": str(e)}
    return {"created": True, "username": username.strip(), "session_token": token}


@mcp.tool()
def login(username: str, password: str) -> dict:
    """Log in and return a session token."""
    try:
        token = authority.login(username, password)
    except AuthError as e:
        return {"logged_in": False, "error": str(e)}
    return {"logged_in": True, "session_token": token}


@mcp.tool()
def logout(session_token: str) -> dict:
    authority.logout(session_token)
    return {"logged_out": True}


@mcp.tool()
def add_plan(session_token: str, plan: dict) -> dict:
    """
    Save an AI-generated learning plan for the learner.
    plan is {"goal", "duration_days", "schedule": [{"day", "date", "theme",
    "tasks": [{"id", "title", "description", "skill", "resources": [...]}]}]}.
    Coding challenges carry "test_cases": [{"input", "expected"}] as JSON text.
    """
    try:
        stored = _ledger_for(session_token).add_plan(plan)
    except (ValidationError, PlanValidationError) as e:
        return {"stored": False, "error": str(e)}
    if stored is None:
        return {"stored": False, "error": "Not logged in."}
    return {"stored": True, **_plan_summary(stored)}


@mcp.tool()
def list_plans(session_token: str) -> list[dict]:
    """Summaries of every plan with its completion progress."""
    return [_plan_summary(p) for p in _ledger_for(session_token).get_plans()]


@mcp.tool()
def get_plan(session_token: str, plan_id: str) -> dict:
    """Full plan with its day-by-day schedule. Challenge solutions are withheld."""
    plan = _ledger_for(session_token).get_plan(plan_id)
    if plan is None:
        return {"error": f"Plan '{plan_id}' not found."}
    return plan.model_dump(
        mode="json",
        exclude={"schedule": {"__all__": {"tasks": {"__all__": {"resources": {"__all__": {"solution"}}}}}}},
    )


@mcp.tool()
def update_plan(session_token: str, plan: dict) -> dict:
    """
    Replace a stored plan wholesale (e.g. to archive it or edit a task).
    Completion state and skill tags of existing tasks are kept; change
    completion with set_task_completion.
    """
    try:
        updated = _ledger_for(session_token).update_plan(plan)
    except (ValidationError, PlanValidationError) as e:
        return {"updated": False, "error": str(e)}
    return {"updated": updated}


@mcp.tool()
def delete_plan(session_token: str, plan_id: str) -> dict:
    """Delete a plan and give back its skill totals."""
    return {"deleted": _ledger_for(session_token).delete_plan(plan_id), "plan_id": plan_id}


@mcp.tool()
def set_task_completion(
    session_token: str,
    plan_id: str,
    task_id: str,
    completed: bool,
    notes: str = "",
    feedback: str = "",
) -> dict:
    """
    Check or uncheck a task. On completion, store the learner's reflection
    notes and your feedback on them. Unchecking clears the reflection.
    Repeating the current state is ignored.
    """
    lg = _ledger_for(session_token)
    reflection = Reflection(notes=notes, feedback=feedback) if completed else None
    task = lg.set_task_completion(plan_id, task_id, completed, reflection=reflection)
    return {
        "changed": task is not None,
        "task_id": task_id,
        "is_completed": task.is_completed if task else None,
        "streak": lg.get_stats().streak,
    }


@mcp.tool()
def get_skills(session_token: str, order: str = "mastery_desc") -> dict:
    """Skill mastery rows. order: mastery_desc, mastery_asc or alpha."""
    try:
        return {"skills": rank_skills(_ledger_for(session_token).get_skills(), order)}
    except ValueError as e:
        return {"error": str(e)}


@mcp.tool()
def get_stats(session_token: str) -> dict:
    return _ledger_for(session_token).get_stats().model_dump(mode="json")


@mcp.tool()
def get_overview(session_token: str) -> dict:
    """Overall progress across skills, current streak and plan count."""
    return _ledger_for(session_token).overview()


@mcp.tool()
async def run_challenge(
    session_token: str,
    plan_id: str,
    task_id: str,
    code: str,
    resource_index: Optional[int] = None,
) -> dict:
    """
    Grade the learner's Python `solution` function against the hidden test
    cases of a coding challenge in the given task. resource_index picks the
    challenge when a task has more than one.
    """
    plan = _ledger_for(session_token).get_plan(plan_id)
    challenge = plan.find_challenge(task_id, resource_index) if plan else None
    if challenge is None:
        return {"error": f"No coding challenge for task '{task_id}' in plan '{plan_id}'."}

    try:
        report = await grade_submission(code, challenge.test_cases or [])
    except SandboxUnavailable as e:
        return {"error": str(e)}
    return report.model_dump(mode="json", exclude_none=True)


if __name__ == "__main__":
    logging.basicConfig(level=os.getenv("STUDY_LOG_LEVEL", "INFO").upper())
    mcp.run()
