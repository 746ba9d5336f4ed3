"""
Study Plan Tracker web backend — FastAPI.

JSON endpoints over the progress ledger, plus a websocket grading channel:
closing the socket (or sending {"type": "cancel"}) tears down the sandbox.

    python3 study_app.py
    open http://localhost:8000/docs
"""

import asyncio
import contextlib
import json
import logging
import os
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from collaborators import GenerationError, complete_with_reflection, create_plan_from_goal
from grading_sandbox import SandboxUnavailable, grade_submission
from progress_engine import PlanValidationError, plan_progress, rank_skills
from progress_ledger import ProgressLedger
from session_authority import AuthError, SessionAuthority, StaticIdentity
from study_model import GoalDetails, JsonFileStore, TestCase

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

HOST = os.getenv("STUDY_HOST", "127.0.0.1")
PORT = int(os.getenv("STUDY_PORT", "8000"))
LOG_LEVEL = os.getenv("STUDY_LOG_LEVEL", "INFO").upper()

logger = logging.getLogger("study_app")


class Credentials(BaseModel):
    username: str
    password: str


class CompletionRequest(BaseModel):
    completed: bool
    notes: str = ""


class GradeRequest(BaseModel):
    code: str
    plan_id: Optional[str] = None
    task_id: Optional[str] = None
    resource_index: Optional[int] = None
    test_cases: Optional[list[TestCase]] = None


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

def create_app(store=None, plan_generator=None, reflection_evaluator=None) -> FastAPI:
    app = FastAPI(title="Study Plan Tracker")
    app.state.store = store or JsonFileStore()
    app.state.authority = SessionAuthority(app.state.store)
    app.state.ledger = ProgressLedger(app.state.store, StaticIdentity(None))
    app.state.plan_generator = plan_generator
    app.state.reflection_evaluator = reflection_evaluator
    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    authority: SessionAuthority = app.state.authority

    def current_ledger(x_session_token: Optional[str] = Header(None)) -> ProgressLedger:
        if not authority.identity_for(x_session_token):
            raise HTTPException(status_code=401, detail="Not logged in")
        return app.state.ledger.with_resolver(authority.resolver(x_session_token))

    # Handlers that touch the store are plain defs, so FastAPI runs them in its threadpool.

    # -- accounts ----------------------------------------------------------

    @app.post("/api/signup")
    def signup(creds: Credentials):
        try:
            token = authority.sign_up(creds.username, creds.password)
        except AuthError as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        return {"username": creds.username.strip(), "session_token": token}

    @app.post("/api/login")
    def login(creds: Credentials):
        try:
            token = authority.login(creds.username, creds.password)
        except AuthError as e:
            return JSONResponse({"error": str(e)}, status_code=401)
        return {"username": creds.username.strip(), "session_token": token}

    @app.post("/api/logout")
    def logout(x_session_token: Optional[str] = Header(None)):
        authority.logout(x_session_token)
        return {"logged_out": True}

    # -- plans -------------------------------------------------------------

    @app.get("/api/plans")
    def list_plans(ledger: ProgressLedger = Depends(current_ledger)):
        return [
            {**p.model_dump(mode="json", include={"id", "goal", "created_at", "status"}),
             "progress": plan_progress(p)}
            for p in ledger.get_plans()
        ]

    @app.post("/api/plans")
    def add_plan(content: dict, ledger: ProgressLedger = Depends(current_ledger)):
        try:
            plan = ledger.add_plan(content)
        except (ValidationError, PlanValidationError) as e:
            return JSONResponse({"error": str(e)}, status_code=422)
        return plan.model_dump(mode="json")

    @app.post("/api/plans/generate")
    def generate_plan(details: GoalDetails, ledger: ProgressLedger = Depends(current_ledger)):
        generator = app.state.plan_generator
        if generator is None:
            return JSONResponse({"error": "No plan generator configured"}, status_code=503)
        try:
            plan = create_plan_from_goal(ledger, generator, details)
        except GenerationError as e:
            return JSONResponse({"error": str(e)}, status_code=502)
        except (ValidationError, PlanValidationError) as e:
            return JSONResponse({"error": f"Generated plan was rejected: {e}"}, status_code=502)
        return plan.model_dump(mode="json")

    @app.get("/api/plans/{plan_id}")
    def get_plan(plan_id: str, ledger: ProgressLedger = Depends(current_ledger)):
        plan = ledger.get_plan(plan_id)
        if plan is None:
            return JSONResponse({"error": "Plan not found"}, status_code=404)
        return plan.model_dump(mode="json")

    @app.put("/api/plans/{plan_id}")
    def update_plan(plan_id: str, plan: dict, ledger: ProgressLedger = Depends(current_ledger)):
        plan["id"] = plan_id
        try:
            updated = ledger.update_plan(plan)
        except (ValidationError, PlanValidationError) as e:
            return JSONResponse({"error": str(e)}, status_code=422)
        return {"updated": updated}

    @app.delete("/api/plans/{plan_id}")
    def delete_plan(plan_id: str, ledger: ProgressLedger = Depends(current_ledger)):
        return {"deleted": ledger.delete_plan(plan_id)}

    @app.post("/api/plans/{plan_id}/tasks/{task_id}")
    def set_completion(
        plan_id: str,
        task_id: str,
        body: CompletionRequest,
        ledger: ProgressLedger = Depends(current_ledger),
    ):
        if body.completed:
            task = complete_with_reflection(
                ledger, app.state.reflection_evaluator, plan_id, task_id, body.notes
            )
        else:
            task = ledger.set_task_completion(plan_id, task_id, False)
        return {
            "changed": task is not None,
            "task": task.model_dump(mode="json") if task else None,
            "stats": ledger.get_stats().model_dump(mode="json"),
        }

    # -- progress ----------------------------------------------------------

    @app.get("/api/skills")
    def get_skills(order: str = "mastery_desc", ledger: ProgressLedger = Depends(current_ledger)):
        try:
            return rank_skills(ledger.get_skills(), order)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

    @app.get("/api/stats")
    def get_stats(ledger: ProgressLedger = Depends(current_ledger)):
        return ledger.get_stats().model_dump(mode="json")

    @app.get("/api/overview")
    def get_overview(ledger: ProgressLedger = Depends(current_ledger)):
        return ledger.overview()

    # -- grading -----------------------------------------------------------

    def resolve_cases(req: GradeRequest, ledger: Optional[ProgressLedger]) -> Optional[list[TestCase]]:
        if req.plan_id and req.task_id and ledger is not None:
            plan = ledger.get_plan(req.plan_id)
            challenge = plan.find_challenge(req.task_id, req.resource_index) if plan else None
            if challenge is None:
                return None
            return challenge.test_cases or []
        return req.test_cases

    @app.post("/api/grade")
    async def grade(req: GradeRequest, x_session_token: Optional[str] = Header(None)):
        ledger = None
        if authority.identity_for(x_session_token):
            ledger = app.state.ledger.with_resolver(authority.resolver(x_session_token))
        cases = await asyncio.to_thread(resolve_cases, req, ledger)
        if cases is None:
            return JSONResponse({"error": "No test cases for this submission"}, status_code=404)
        try:
            report = await grade_submission(req.code, cases)
        except SandboxUnavailable as e:
            return JSONResponse({"error": str(e)}, status_code=503)
        return report.model_dump(mode="json", exclude_none=True)

    @app.websocket("/ws/grade")
    async def grade_socket(ws: WebSocket):
        await ws.accept()
        run: Optional[asyncio.Task] = None

        async def grade_and_reply(code: str, cases: list[TestCase]):
            await ws.send_json({"type": "running"})
            try:
                report = await grade_submission(code, cases)
            except SandboxUnavailable as e:
                await ws.send_json({"type": "error", "content": str(e)})
                return
            await ws.send_json({"type": "result", **report.model_dump(mode="json", exclude_none=True)})

        try:
            while True:
                raw = await ws.receive_text()
                try:
                    msg = json.loads(raw)
                except json.JSONDecodeError:
                    await ws.send_json({"type": "error", "content": "Invalid JSON"})
                    continue

                msg_type = msg.get("type")

                if msg_type == "run":
                    if run and not run.done():
                        await ws.send_json({"type": "error", "content": "A run is already in progress"})
                        continue
                    try:
                        req = GradeRequest.model_validate(msg)
                    except ValidationError as e:
                        await ws.send_json({"type": "error", "content": str(e)})
                        continue
                    token = msg.get("session_token")
                    ledger = None
                    if authority.identity_for(token):
                        ledger = app.state.ledger.with_resolver(authority.resolver(token))
                    cases = await asyncio.to_thread(resolve_cases, req, ledger)
                    if cases is None:
                        await ws.send_json({"type": "error", "content": "No test cases for this submission"})
                        continue
                    run = asyncio.create_task(grade_and_reply(req.code, cases))

                elif msg_type == "cancel":
                    if run and not run.done():
                        run.cancel()
                        with contextlib.suppress(asyncio.CancelledError):
                            await run
                        await ws.send_json({"type": "cancelled"})

                else:
                    await ws.send_json({"type": "error", "content": f"Unknown message type: {msg_type}"})

        except WebSocketDisconnect:
            pass
        finally:
            if run and not run.done():
                run.cancel()
                with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect):
                    await run


app = create_app()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=LOG_LEVEL)
    logger.info(f"Storing learner records in {app.state.store.data_dir}")
    uvicorn.run(app, host=HOST, port=PORT)
