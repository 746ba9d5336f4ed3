"""
Sandboxed grading of learner-written `solution` functions.

Each run gets a fresh child interpreter (see sandbox_runner.py) with an empty
environment, a throwaway working directory it is chrooted into, and resource
limits. A child that cannot confine itself refuses to run anything. The host
reads the child's NDJSON event stream with a per-case deadline: a case that
overruns is recorded as timed out, the child is killed and a new one picks
up the remaining cases. Cancelling the awaiting task tears the child down.
"""

import asyncio
import json
import logging
import os
import signal
import sys
import tempfile
from enum import Enum
from pathlib import Path
from typing import Literal, Optional, Union

from pydantic import BaseModel

from progress_engine import percent
from study_model import TestCase

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

RUNNER_PATH = Path(__file__).resolve().parent / "sandbox_runner.py"
CASE_TIMEOUT = float(os.getenv("STUDY_GRADER_CASE_TIMEOUT", "2"))
STARTUP_TIMEOUT = float(os.getenv("STUDY_GRADER_STARTUP_TIMEOUT", "5"))
CPU_SECONDS = int(os.getenv("STUDY_GRADER_CPU_SECONDS", "10"))
MEMORY_MB = int(os.getenv("STUDY_GRADER_MEMORY_MB", "256"))
STREAM_LIMIT = 1024 * 1024  # longest NDJSON line accepted from the child

logger = logging.getLogger("grading_sandbox")


class CaseResult(BaseModel):
    input: Optional[str] = None
    expected: Optional[str] = None
    actual: Optional[str] = None
    passed: Optional[bool] = None
    error: Optional[str] = None


class GradingReport(BaseModel):
    status: Literal["completed", "compile_error"]
    results: list[CaseResult]
    passed_count: int
    total_count: int
    score: int


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPILE_ERROR = "compile_error"
    CANCELLED = "cancelled"
    FAILED = "failed"


class SandboxUnavailable(RuntimeError):
    """The child could not isolate itself from the host, so nothing was graded."""


class _CompileFailure(Exception):
    pass


def score_results(results: list[CaseResult], total_count: int) -> int:
    return percent(sum(1 for r in results if r.passed), total_count)


class GradingRun:
    """One submission against one list of test cases. Executes at most once."""

    def __init__(
        self,
        candidate_source: str,
        test_cases: list[Union[TestCase, dict]],
        case_timeout: float = CASE_TIMEOUT,
        startup_timeout: float = STARTUP_TIMEOUT,
        cpu_seconds: int = CPU_SECONDS,
        memory_mb: int = MEMORY_MB,
    ):
        self.candidate_source = candidate_source
        self.test_cases = [
            tc if isinstance(tc, TestCase) else TestCase.model_validate(tc) for tc in test_cases
        ]
        self.case_timeout = case_timeout
        self.startup_timeout = startup_timeout
        self.limits = {"cpu_seconds": cpu_seconds, "memory_mb": memory_mb}
        self.state = RunState.IDLE
        self.process: Optional[asyncio.subprocess.Process] = None

    async def execute(self) -> GradingReport:
        if self.state is not RunState.IDLE:
            raise RuntimeError("A grading run can only be executed once.")
        self.state = RunState.RUNNING
        try:
            results = await self._run_all()
        except _CompileFailure as exc:
            self.state = RunState.COMPILE_ERROR
            return GradingReport(
                status="compile_error",
                results=[CaseResult(error=str(exc))],
                passed_count=0,
                total_count=len(self.test_cases),
                score=0,
            )
        except asyncio.CancelledError:
            self.state = RunState.CANCELLED
            logger.info("Grading run cancelled")
            raise
        except SandboxUnavailable as exc:
            self.state = RunState.FAILED
            logger.error("Refusing to grade: %s", exc)
            raise
        finally:
            await self.kill()

        self.state = RunState.COMPLETED
        passed = sum(1 for r in results if r.passed)
        return GradingReport(
            status="completed",
            results=results,
            passed_count=passed,
            total_count=len(results),
            score=score_results(results, len(results)),
        )

    async def kill(self):
        if self.process and self.process.returncode is None:
            try:
                self.process.send_signal(signal.SIGTERM)
                try:
                    await asyncio.wait_for(self.process.wait(), timeout=3)
                except asyncio.TimeoutError:
                    self.process.kill()
                    await self.process.wait()
            except ProcessLookupError:
                pass
        self.process = None

    # -- internals ---------------------------------------------------------

    def _result(self, index: int, actual: str, passed: bool, error: Optional[str]) -> CaseResult:
        case = self.test_cases[index]
        return CaseResult(
            input=case.input, expected=case.expected, actual=actual, passed=passed, error=error
        )

    async def _run_all(self) -> list[CaseResult]:
        results: dict[int, CaseResult] = {}
        pending = list(range(len(self.test_cases)))

        with tempfile.TemporaryDirectory(prefix="grading-") as workdir:
            try:
                while True:
                    await self._spawn(pending, workdir)
                    await self._collect(pending, results)
                    await self.kill()
                    if not pending:
                        break
            finally:
                await self.kill()

        return [results[i] for i in range(len(self.test_cases))]

    async def _spawn(self, pending: list[int], workdir: str) -> None:
        payload = {
            "source": self.candidate_source,
            "cases": [
                {"index": i, "input": self.test_cases[i].input, "expected": self.test_cases[i].expected}
                for i in pending
            ],
            "limits": self.limits,
        }
        spawning = asyncio.ensure_future(asyncio.create_subprocess_exec(
            sys.executable, "-I", "-S", "-X", "utf8", str(RUNNER_PATH),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            env={},
            cwd=workdir,
            limit=STREAM_LIMIT,
            start_new_session=True,
        ))
        try:
            proc = await asyncio.shield(spawning)
        except asyncio.CancelledError:
            # let the spawn finish so kill() has a process to tear down
            self.process = await spawning
            raise
        self.process = proc
        proc.stdin.write(json.dumps(payload).encode())
        try:
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            pass
        proc.stdin.close()

    async def _read_event(self, timeout: float) -> Optional[dict]:
        """Next event from the child; None on EOF. Raises asyncio.TimeoutError."""
        if self.process is None or self.process.stdout is None:
            raise RuntimeError("No sandbox process to read from.")
        while True:
            line = await asyncio.wait_for(self.process.stdout.readline(), timeout=timeout)
            if not line:
                return None
            line = line.strip()
            if not line:
                continue
            try:
                return json.loads(line)
            except json.JSONDecodeError:
                continue

    async def _collect(self, pending: list[int], results: dict[int, CaseResult]) -> None:
        """Drain one child process. Completed cases are removed from `pending`."""
        try:
            event = await self._read_event(self.startup_timeout)
        except asyncio.TimeoutError:
            raise _CompileFailure(
                f"Definition Error: Timed out after {self.startup_timeout:g}s while loading the solution."
            )
        if event is None:
            raise _CompileFailure("Definition Error: Sandbox process exited before loading the solution.")
        if event.get("type") == "sandbox_error":
            raise SandboxUnavailable(event.get("error") or "Could not isolate the sandbox")
        if event.get("type") == "compile_error":
            raise _CompileFailure(event.get("error") or "Syntax Error")

        while pending:
            current = pending[0]
            try:
                event = await self._read_event(self.case_timeout)
            except asyncio.TimeoutError:
                message = f"Timed out after {self.case_timeout:g}s"
                logger.info("Case %d timed out; restarting sandbox for the rest", current)
                results[current] = self._result(current, f"Error: {message}", False, message)
                pending.pop(0)
                return
            except ValueError:
                # line over STREAM_LIMIT
                message = "Output too large"
                results[current] = self._result(current, f"Error: {message}", False, message)
                pending.pop(0)
                return

            if event is None:
                code = await self.process.wait()
                message = f"Sandbox process exited (code {code})"
                logger.info("Case %d crashed the sandbox: %s", current, message)
                results[current] = self._result(current, f"Error: {message}", False, message)
                pending.pop(0)
                return

            if event.get("type") == "case":
                index = event["index"]
                results[index] = self._result(
                    index, event.get("actual"), bool(event.get("passed")), event.get("error")
                )
                if index in pending:
                    pending.remove(index)
            elif event.get("type") == "done":
                for index in pending:
                    results[index] = self._result(index, "Error: No result reported", False, "No result reported")
                pending.clear()
                return


async def grade_submission(
    candidate_source: str, test_cases: list[Union[TestCase, dict]], **options
) -> GradingReport:
    """Grade a submission in a fresh sandbox. Await it; never call it on the UI thread."""
    return await GradingRun(candidate_source, test_cases, **options).execute()
