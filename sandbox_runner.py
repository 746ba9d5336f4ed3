"""
Child-process side of the grading sandbox.

Started by grading_sandbox as `python -I -S sandbox_runner.py`. Reads one JSON
payload from stdin, applies resource limits, confines itself to its empty
working directory (chroot, then no privileges left to undo it), locks the
interpreter down with an audit hook, then runs the candidate's `solution` against each case and
writes one NDJSON line per event to stdout:

    {"type": "sandbox_error", "error": ...}
    {"type": "compile_error", "error": ...}
    {"type": "ready"}
    {"type": "case", "index": ..., "actual": ..., "passed": ..., "error": ...}
    {"type": "done"}

This file is never imported by the host process.
"""

import builtins
import io
import json
import os
import sys

# Modules a solution may import; anything not loaded before the hook goes in is refused.
import bisect  # noqa: F401
import collections  # noqa: F401
import copy  # noqa: F401
import functools  # noqa: F401
import heapq  # noqa: F401
import itertools  # noqa: F401
import math  # noqa: F401
import operator  # noqa: F401
import re  # noqa: F401
import string  # noqa: F401
import typing  # noqa: F401

try:
    import resource
except ImportError:  # not POSIX
    resource = None

DENIED_EVENTS = {
    "open",
    "import",
    "subprocess.Popen",
    "os.system",
    "os.exec",
    "os.posix_spawn",
    "os.spawn",
    "os.fork",
    "os.forkpty",
    "os.kill",
    "os.killpg",
    "os.putenv",
    "os.unsetenv",
    "os.chdir",
    "os.chmod",
    "os.chown",
    "os.link",
    "os.symlink",
    "os.listdir",
    "os.scandir",
    "os.mkdir",
    "os.remove",
    "os.rename",
    "os.rmdir",
    "os.truncate",
    "os.utime",
    "builtins.input",
    "sys.settrace",
    "sys.setprofile",
}
DENIED_PREFIXES = ("socket.", "ctypes.", "shutil.", "urllib.", "http.", "ftplib.", "smtplib.", "winreg.")

NOBODY = 65534

_out = sys.stdout


def _emit(event: dict) -> None:
    _out.write(json.dumps(event) + "\n")
    _out.flush()


def _audit(event, args):
    if event in DENIED_EVENTS or event.startswith(DENIED_PREFIXES):
        raise PermissionError(f"Sandbox denied '{event}'")


def _apply_limits(limits: dict) -> None:
    if resource is None:
        return
    cpu = int(limits.get("cpu_seconds", 10))
    resource.setrlimit(resource.RLIMIT_CPU, (cpu, cpu + 1))
    memory = int(limits.get("memory_mb", 256)) * 1024 * 1024
    resource.setrlimit(resource.RLIMIT_AS, (memory, memory))
    resource.setrlimit(resource.RLIMIT_FSIZE, (0, 0))
    resource.setrlimit(resource.RLIMIT_NOFILE, (16, 16))


def _confine() -> None:
    """
    Make the host filesystem unreachable before any candidate code runs.

    The working directory is a fresh, empty temp dir; it becomes `/`. As root
    the process then drops to nobody, which can neither write that root-owned
    0700 directory nor chroot back out. Otherwise it enters a new user
    namespace first, which grants chroot but leaves the process with no
    mapped uid, so it cannot create anything either. Raises OSError when
    neither route is available; the host then refuses to grade.
    """
    if not hasattr(os, "chroot"):
        raise OSError("chroot is not available on this platform")
    if os.getuid() == 0:
        os.chroot(".")
        os.chdir("/")
        os.setgroups([])
        os.setgid(NOBODY)
        os.setuid(NOBODY)
        return
    unshare = getattr(os, "unshare", None)
    if unshare is None:
        raise OSError("running as a regular user needs os.unshare (Python 3.12+)")
    unshare(os.CLONE_NEWUSER)
    os.chroot(".")
    os.chdir("/")


def _normalize(value):
    """Integral floats become ints so 3.0 serializes as 3, like the generator's JSON."""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return value


def canonical_json(value) -> str:
    return json.dumps(_normalize(value), separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def _canonical_expected(text: str) -> str:
    try:
        return canonical_json(json.loads(text))
    except ValueError:
        return text


def _message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def main() -> None:
    payload = json.loads(sys.stdin.read())
    _apply_limits(payload.get("limits", {}))
    try:
        _confine()
    except OSError as exc:
        _emit({"type": "sandbox_error", "error": f"Could not isolate the sandbox: {_message(exc)}"})
        return

    # candidate prints must not reach the protocol stream
    sys.stdout = io.StringIO()
    sys.stdin = io.StringIO()
    sys.addaudithook(_audit)

    try:
        code = compile(payload["source"], "<solution>", "exec")
    except SyntaxError as exc:
        where = f" (line {exc.lineno})" if exc.lineno else ""
        _emit({"type": "compile_error", "error": f"Syntax Error: {exc.msg}{where}"})
        return
    except ValueError as exc:  # null bytes in source
        _emit({"type": "compile_error", "error": f"Syntax Error: {_message(exc)}"})
        return

    namespace = {"__builtins__": builtins, "__name__": "solution_module"}
    try:
        exec(code, namespace)
    except (Exception, SystemExit) as exc:
        _emit({"type": "compile_error", "error": f"Definition Error: {_message(exc)}"})
        return

    solution = namespace.get("solution")
    if not callable(solution):
        _emit({"type": "compile_error", "error": "Definition Error: no callable named 'solution' was defined."})
        return

    _emit({"type": "ready"})

    for case in payload["cases"]:
        expected = _canonical_expected(case["expected"])
        try:
            arg = json.loads(case["input"])
            actual = canonical_json(solution(arg))
        except (Exception, SystemExit) as exc:
            message = _message(exc)
            _emit({
                "type": "case",
                "index": case["index"],
                "actual": f"Error: {message}",
                "passed": False,
                "error": message,
            })
            continue
        _emit({
            "type": "case",
            "index": case["index"],
            "actual": actual,
            "passed": actual == expected,
            "error": None,
        })

    _emit({"type": "done"})


if __name__ == "__main__":
    main()
