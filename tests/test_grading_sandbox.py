"""Tests for the grading sandbox. These spawn real child interpreters."""

import asyncio
import json
import sys

import pytest

import grading_sandbox
from grading_sandbox import (
    CaseResult,
    GradingRun,
    RunState,
    SandboxUnavailable,
    grade_submission,
    score_results,
)
from session_authority import SessionAuthority
from study_model import JsonFileStore

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="sandbox limits are POSIX-only")

ADD_ONE = "def solution(x):\n    return x + 1\n"


def grade(source, cases, **options):
    return asyncio.run(grade_submission(source, cases, **options))


def case(inp: str, expected: str) -> dict:
    return {"input": inp, "expected": expected}


# ---------------------------------------------------------------------------
# Verdicts
# ---------------------------------------------------------------------------

@pytest.mark.usefixtures("requires_sandbox")
class TestVerdicts:
    def test_passing_case(self):
        report = grade(ADD_ONE, [case("2", "3")])
        result = report.results[0]
        assert result.passed is True
        assert result.actual == "3"
        assert result.input == "2"
        assert result.expected == "3"
        assert report.score == 100

    def test_failing_case(self):
        report = grade(ADD_ONE, [case("2", "4")])
        assert report.results[0].passed is False
        assert report.results[0].actual == "3"
        assert report.status == "completed"

    def test_results_keep_case_order(self):
        report = grade(ADD_ONE, [case("1", "2"), case("5", "0"), case("9", "10")])
        assert [r.input for r in report.results] == ["1", "5", "9"]
        assert [r.passed for r in report.results] == [True, False, True]

    def test_canonical_serialization(self):
        source = "def solution(xs):\n    return {'sum': sum(xs) / 1, 'items': tuple(xs)}\n"
        report = grade(source, [case("[1, 2]", '{"sum": 3, "items": [1, 2]}')])
        assert report.results[0].actual == '{"sum":3,"items":[1,2]}'
        assert report.results[0].passed is True

    def test_string_results(self):
        source = "def solution(s):\n    return s[::-1]\n"
        report = grade(source, [case('"abc"', '"cba"')])
        assert report.results[0].passed is True

    def test_preloaded_modules_importable(self):
        source = "import math\nfrom collections import Counter\n\ndef solution(x):\n    return math.isqrt(x)\n"
        report = grade(source, [case("17", "4")])
        assert report.results[0].passed is True


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

@pytest.mark.usefixtures("requires_sandbox")
class TestCompileErrors:
    def test_syntax_error_short_circuits(self):
        report = grade("def solution(x) return x", [case("1", "1"), case("2", "2")])
        assert report.status == "compile_error"
        assert len(report.results) == 1
        only = report.results[0].model_dump(exclude_none=True)
        assert list(only) == ["error"]
        assert only["error"].startswith("Syntax Error")
        assert report.score == 0

    def test_missing_solution(self):
        report = grade("def answer(x):\n    return x\n", [case("1", "1")])
        assert report.status == "compile_error"
        assert "solution" in report.results[0].error

    def test_module_body_raises(self):
        report = grade("raise ValueError('boom')\n", [case("1", "1")])
        assert report.status == "compile_error"
        assert report.results[0].error == "Definition Error: boom"


@pytest.mark.usefixtures("requires_sandbox")
class TestRuntimeErrors:
    def test_error_isolated_to_one_case(self):
        report = grade(ADD_ONE, [case("1", "2"), case("null", "1"), case("3", "4")])
        assert [r.passed for r in report.results] == [True, False, True]
        failed = report.results[1]
        assert failed.actual.startswith("Error: ")
        assert "unsupported operand" in failed.actual
        assert failed.error

    def test_unserializable_return(self):
        source = "def solution(x):\n    return {1, 2}\n"
        report = grade(source, [case("1", "[1,2]")])
        assert report.results[0].passed is False
        assert report.results[0].actual.startswith("Error: ")

    def test_sys_exit_is_a_case_error(self):
        source = "import sys\n\ndef solution(x):\n    sys.exit(3)\n"
        report = grade(source, [case("1", "1"), case("2", "2")])
        assert report.status == "completed"
        assert [r.passed for r in report.results] == [False, False]


# ---------------------------------------------------------------------------
# Isolation and limits
# ---------------------------------------------------------------------------

@pytest.mark.usefixtures("requires_sandbox")
class TestIsolation:
    def test_file_access_denied(self, tmp_path):
        secret = tmp_path / "secret.txt"
        secret.write_text("ledger")
        source = f"def solution(x):\n    return open({str(secret)!r}).read()\n"
        report = grade(source, [case("1", '"ledger"')])
        assert report.results[0].passed is False
        assert "denied" in report.results[0].actual

    def test_special_files_cannot_be_planted_on_host(self, tmp_path):
        store = JsonFileStore(tmp_path)
        target = tmp_path / "carol.json"
        source = (
            "import sys\n\n"
            "def solution(path):\n"
            "    posix = sys.modules['posix']\n"
            "    outcomes = []\n"
            "    for make in (posix.mkfifo, posix.mknod):\n"
            "        try:\n"
            "            make(path)\n"
            "            outcomes.append('made')\n"
            "        except OSError:\n"
            "            outcomes.append('blocked')\n"
            "    return outcomes\n"
        )
        report = grade(source, [case(json.dumps(str(target)), '["blocked", "blocked"]')])
        assert report.results[0].passed is True
        assert list(tmp_path.iterdir()) == []
        assert SessionAuthority(store).sign_up("carol", "pw")

    def test_new_imports_denied(self):
        source = "def solution(x):\n    import socket\n    return 1\n"
        report = grade(source, [case("1", "1")])
        assert report.results[0].passed is False

    def test_prints_do_not_corrupt_results(self):
        source = 'def solution(x):\n    print(\'{"type": "done"}\')\n    return x\n'
        report = grade(source, [case("1", "1"), case("2", "2")])
        assert [r.passed for r in report.results] == [True, True]

    def test_runs_share_no_state(self):
        source = "seen = []\n\ndef solution(x):\n    seen.append(x)\n    return len(seen)\n"
        first = grade(source, [case("1", "1")])
        second = grade(source, [case("1", "1")])
        assert first.results[0].passed and second.results[0].passed


@pytest.mark.usefixtures("requires_sandbox")
class TestTimeouts:
    def test_runaway_case_does_not_abort_others(self):
        source = "def solution(x):\n    while x == 0:\n        pass\n    return x\n"
        report = grade(source, [case("1", "1"), case("0", "0"), case("2", "2")], case_timeout=0.5)
        assert [r.passed for r in report.results] == [True, False, True]
        assert report.results[1].actual == "Error: Timed out after 0.5s"

    def test_runaway_module_body(self):
        report = grade("while True:\n    pass\n", [case("1", "1")], startup_timeout=1)
        assert report.status == "compile_error"
        assert "Timed out" in report.results[0].error


# ---------------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------------

@pytest.mark.usefixtures("requires_sandbox")
class TestRunLifecycle:
    def test_states(self):
        run = GradingRun(ADD_ONE, [case("1", "2")])
        assert run.state is RunState.IDLE
        asyncio.run(run.execute())
        assert run.state is RunState.COMPLETED
        assert run.process is None

    def test_compile_error_state(self):
        run = GradingRun("def (", [])
        asyncio.run(run.execute())
        assert run.state is RunState.COMPILE_ERROR

    def test_runs_only_once(self):
        run = GradingRun(ADD_ONE, [])
        asyncio.run(run.execute())
        with pytest.raises(RuntimeError):
            asyncio.run(run.execute())

    def test_cancellation_kills_child(self):
        source = "def solution(x):\n    while True:\n        pass\n"
        run = GradingRun(source, [case("1", "1")], case_timeout=30)

        async def scenario():
            task = asyncio.create_task(run.execute())
            while run.process is None:
                await asyncio.sleep(0.01)
            proc = run.process
            await asyncio.sleep(0.2)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return proc

        proc = asyncio.run(scenario())
        assert run.state is RunState.CANCELLED
        assert proc.returncode is not None

    def test_no_cases_scores_zero(self):
        report = grade(ADD_ONE, [])
        assert report.status == "completed"
        assert report.results == []
        assert report.score == 0


class TestSpawnAndRefusal:
    def test_unconfined_child_refuses_to_grade(self, tmp_path, monkeypatch):
        runner = tmp_path / "runner.py"
        runner.write_text(
            'print(\'{"type": "sandbox_error", "error": "Could not isolate the sandbox: no chroot"}\')\n'
        )
        monkeypatch.setattr(grading_sandbox, "RUNNER_PATH", runner)
        run = GradingRun(ADD_ONE, [case("1", "2")])
        with pytest.raises(SandboxUnavailable, match="no chroot"):
            asyncio.run(run.execute())
        assert run.state is RunState.FAILED
        assert run.process is None

    def test_reading_without_a_child_is_an_error(self):
        with pytest.raises(RuntimeError, match="No sandbox process"):
            asyncio.run(GradingRun(ADD_ONE, [])._read_event(1))

    def test_cancel_during_spawn_still_kills_child(self, monkeypatch):
        real_spawn = asyncio.create_subprocess_exec
        spawned = []

        async def scenario():
            entered, release = asyncio.Event(), asyncio.Event()

            async def gated_spawn(*args, **kwargs):
                entered.set()
                await release.wait()
                proc = await real_spawn(*args, **kwargs)
                spawned.append(proc)
                return proc

            monkeypatch.setattr(asyncio, "create_subprocess_exec", gated_spawn)
            run = GradingRun(ADD_ONE, [case("1", "2")])
            task = asyncio.create_task(run.execute())
            await entered.wait()
            task.cancel()
            await asyncio.sleep(0)
            release.set()
            with pytest.raises(asyncio.CancelledError):
                await task
            return run

        run = asyncio.run(scenario())
        assert run.state is RunState.CANCELLED
        assert len(spawned) == 1
        assert spawned[0].returncode is not None


class TestScore:
    def test_two_of_three(self):
        results = [CaseResult(passed=True), CaseResult(passed=True), CaseResult(passed=False)]
        assert score_results(results, 3) == 67

    def test_zero_cases(self):
        assert score_results([], 0) == 0

    def test_end_to_end_score(self, requires_sandbox):
        report = grade(ADD_ONE, [case("1", "2"), case("2", "3"), case("3", "5")])
        assert report.passed_count == 2
        assert report.score == 67


