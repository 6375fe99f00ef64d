#!/usr/bin/env python3
"""
grind.py: inhibitory feedback loop between a Worker agent and its Supervisor:
- runs every configured check after each file change (never short-circuits)
- re-feeds failures to the Worker as "retry" decisions
- counts consecutive failing cycles per file and escalates once the
  Clarification Threshold is reached, then starts a fresh streak

Requires: python>=3.10, PyYAML, jsonschema (pip install pyyaml jsonschema)
Note: check commands run via bash/sh. On Windows, run under WSL or ensure bash/sh is available.
"""

from __future__ import annotations

import argparse
import fcntl
import functools
import json
import os
import shlex
import subprocess
import sys
import tempfile
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Protocol, Sequence, Tuple, Union

import jsonschema
import yaml

# -----------------------------
# Defaults
# -----------------------------

DEFAULT_THRESHOLD = 5
DEFAULT_NAMESPACE = "grind"
DEFAULT_MAX_DIAGNOSTIC_CHARS = 8000

GRIND_DIR = ".grind"
CONFIG_FILE = "grind.yaml"
STATE_FILE = "state.json"

CONTINUE = "continue"
RETRY = "retry"
ESCALATE = "escalate"

ESCALATE_SIGNAL = "ESCALATE"

# Exit codes of `grind evaluate`, one per decision.
EXIT_CODES: Dict[str, int] = {CONTINUE: 0, RETRY: 10, ESCALATE: 20}
EXIT_USAGE = 2
EXIT_STATE = 3

# {file} in a check command is replaced by the shell-quoted changed path.
DEFAULT_CONFIG_YAML: Dict[str, Any] = {
    "threshold": DEFAULT_THRESHOLD,
    "namespace": DEFAULT_NAMESPACE,
    "match": ["src/**/*", "tests/**/*"],
    "parallel": True,
    "max_diagnostic_chars": DEFAULT_MAX_DIAGNOSTIC_CHARS,
    "checks": [
        {"name": "lint", "cmd": "npx eslint {file} --format json", "timeout_sec": 300},
        {"name": "test", "cmd": "npx vitest run --reporter=json", "timeout_sec": 900},
    ],
}

CONFIG_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "threshold": {"type": "integer", "minimum": 1},
        "namespace": {"type": "string", "minLength": 1},
        "match": {"type": "array", "items": {"type": "string", "minLength": 1}},
        "parallel": {"type": "boolean"},
        "max_diagnostic_chars": {"type": "integer", "minimum": 1},
        "checks": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "cmd": {"type": "string", "minLength": 1},
                    "timeout_sec": {"type": ["integer", "null"], "minimum": 1},
                },
                "required": ["name", "cmd"],
            },
        },
    },
}

# -----------------------------
# Errors
# -----------------------------


class GrindError(Exception):
    """Base class for every error raised by grind."""


class ConfigError(GrindError):
    """The config file is missing, unreadable, or does not match CONFIG_SCHEMA."""


class StateStoreError(GrindError):
    """The iteration counter could not be read or written; the cycle cannot be decided."""


# -----------------------------
# Data structures
# -----------------------------


@dataclass(frozen=True)
class CheckResult:
    passed: bool
    diagnostic: Optional[str] = None  # only set when passed is False

    def __post_init__(self) -> None:
        if self.passed and self.diagnostic is not None:
            raise ValueError("A passing check result carries no diagnostic")

    @classmethod
    def ok(cls) -> "CheckResult":
        return cls(passed=True)

    @classmethod
    def fail(cls, diagnostic: Optional[str]) -> "CheckResult":
        return cls(passed=False, diagnostic=diagnostic)


@dataclass(frozen=True)
class Decision:
    action: str                                   # continue|retry|escalate
    message: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None      # absent for continue
    iteration: int = 0                            # counter value that produced this decision

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"action": self.action}
        if self.message is not None:
            out["message"] = self.message
        if self.payload is not None:
            out["payload"] = dict(self.payload)
        return out


@dataclass(frozen=True)
class CheckSpec:
    name: str
    cmd: str
    timeout_sec: Optional[int] = None

    def render(self, resource_key: str) -> str:
        return self.cmd.replace("{file}", shlex.quote(resource_key))


@dataclass(frozen=True)
class GrindConfig:
    threshold: int = DEFAULT_THRESHOLD
    namespace: str = DEFAULT_NAMESPACE
    match: Tuple[str, ...] = ()
    parallel: bool = True
    max_diagnostic_chars: int = DEFAULT_MAX_DIAGNOSTIC_CHARS
    checks: Tuple[CheckSpec, ...] = field(default_factory=tuple)

    @property
    def check_names(self) -> List[str]:
        return [c.name for c in self.checks]


# -----------------------------
# Utilities
# -----------------------------


def read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8")


def write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def read_json(path: Path) -> Any:
    return json.loads(read_text(path))


def write_json(path: Path, data: Any) -> None:
    """Atomic write: unique temp file in the same directory, then rename over `path`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=path.name + ".", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps(data, indent=2, ensure_ascii=False) + "\n")
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def have_executable(name: str) -> bool:
    try:
        cp = subprocess.run([name, "--version"], stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        return cp.returncode == 0 or bool((cp.stdout or cp.stderr).strip())
    except OSError:
        return False


@functools.lru_cache(maxsize=None)
def _find_shell() -> Optional[str]:
    for name in ("bash", "sh"):
        if have_executable(name):
            return name
    return None


def run_cmd(
    cmd: List[str],
    cwd: Path,
    timeout_sec: Optional[int] = None,
) -> subprocess.CompletedProcess:
    kwargs: Dict[str, Any] = {
        "cwd": str(cwd),
        "text": True,
        "stdout": subprocess.PIPE,
        "stderr": subprocess.PIPE,
    }
    if timeout_sec is not None:
        kwargs["timeout"] = timeout_sec
    return subprocess.run(cmd, **kwargs, check=False)


def _shell_cmd(cmd: str) -> List[str]:
    shell = _find_shell()
    if shell is not None:
        return [shell, "-lc", cmd]
    raise RuntimeError("No suitable shell found (bash/sh). On Windows, run under WSL or provide a shell.")


def _as_text(data: Union[str, bytes, None]) -> str:
    # TimeoutExpired keeps raw bytes even for text-mode runs
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def tail(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return "[diagnostic truncated]\n" + text[-max_chars:]


def matches_any(path: str, patterns: Sequence[str]) -> bool:
    """
    Glob match of a repo-relative POSIX path. "**/" also matches zero directories,
    so "src/**/*" covers both src/a.ts and src/x/y/a.ts.
    """
    for pat in patterns:
        if fnmatchcase(path, pat):
            return True
        if "**/" in pat and fnmatchcase(path, pat.replace("**/", "")):
            return True
    return False


def resource_key_for(repo: Path, file_path: str) -> str:
    p = Path(file_path)
    if not p.is_absolute():
        p = repo / p
    try:
        return p.resolve().relative_to(repo.resolve()).as_posix()
    except ValueError:
        # outside the repo: keep the absolute path as the key
        return p.resolve().as_posix()


# -----------------------------
# Configuration
# -----------------------------


def parse_config(obj: Any) -> GrindConfig:
    if obj is None:
        obj = {}
    try:
        jsonschema.validate(instance=obj, schema=CONFIG_SCHEMA)
    except jsonschema.exceptions.ValidationError as exc:
        raise ConfigError(f"Config does not match schema: {exc.message}") from exc

    merged = dict(DEFAULT_CONFIG_YAML)
    merged.update(obj)

    checks: List[CheckSpec] = []
    seen = set()
    for c in merged["checks"]:
        name = str(c["name"])
        if name in seen:
            raise ConfigError(f"Duplicate check name: {name}")
        seen.add(name)
        checks.append(CheckSpec(name=name, cmd=str(c["cmd"]), timeout_sec=c.get("timeout_sec")))

    return GrindConfig(
        threshold=int(merged["threshold"]),
        namespace=str(merged["namespace"]),
        match=tuple(merged["match"]),
        parallel=bool(merged["parallel"]),
        max_diagnostic_chars=int(merged["max_diagnostic_chars"]),
        checks=tuple(checks),
    )


def load_config(path: Path) -> GrindConfig:
    try:
        obj = yaml.safe_load(read_text(path))
    except FileNotFoundError as exc:
        raise ConfigError(f"Config not found: {path} (run 'grind init')") from exc
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Could not read config {path}: {exc}") from exc
    return parse_config(obj)


def ensure_config_defaults(grind_dir: Path) -> None:
    grind_dir.mkdir(parents=True, exist_ok=True)

    config = grind_dir / CONFIG_FILE
    if not config.exists():
        write_text(config, yaml.safe_dump(DEFAULT_CONFIG_YAML, sort_keys=False))

    state = grind_dir / STATE_FILE
    if not state.exists():
        write_json(state, {})


# -----------------------------
# State stores
# -----------------------------


class StateStore(Protocol):
    def get(self, key: str) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...


class MemoryStateStore:
    """Keeps values for the lifetime of the object. One per editing session."""

    def __init__(self, initial: Optional[Mapping[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = dict(initial or {})

    def get(self, key: str) -> Any:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._data)


class JsonFileStateStore:
    """
    Whole-document JSON store. Every get/set re-reads the file so separate
    `grind evaluate` processes share counters. A sidecar `<name>.lock` file is
    flock'ed: shared for get, exclusive around the load/modify/replace of set,
    so writers of different keys never drop each other's updates.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")

    @contextmanager
    def _locked(self, mode: int) -> Iterator[None]:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(self.lock_path), os.O_CREAT | os.O_RDWR)
        except OSError as exc:
            raise StateStoreError(f"Could not open lock file {self.lock_path}: {exc}") from exc
        try:
            fcntl.flock(fd, mode)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = read_json(self.path)
        except (OSError, ValueError) as exc:
            raise StateStoreError(f"Could not read state file {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StateStoreError(f"State file {self.path} must hold a JSON object")
        return data

    def get(self, key: str) -> Any:
        with self._locked(fcntl.LOCK_SH):
            return self._load().get(key)

    def set(self, key: str, value: Any) -> None:
        with self._locked(fcntl.LOCK_EX):
            data = self._load()
            data[key] = value
            try:
                write_json(self.path, data)
            except OSError as exc:
                raise StateStoreError(f"Could not write state file {self.path}: {exc}") from exc


# -----------------------------
# Check runners
# -----------------------------


class CheckRunner(Protocol):
    def run(self, check_name: str, resource_key: str) -> CheckResult:
        ...


class ShellCheckRunner:
    """Runs configured shell commands in the repository. Exit code 0 means pass."""

    def __init__(
        self,
        checks: Sequence[CheckSpec],
        repo: Path,
        max_diagnostic_chars: int = DEFAULT_MAX_DIAGNOSTIC_CHARS,
    ) -> None:
        self.checks: Dict[str, CheckSpec] = {c.name: c for c in checks}
        self.repo = Path(repo)
        self.max_diagnostic_chars = max_diagnostic_chars

    def run(self, check_name: str, resource_key: str) -> CheckResult:
        spec = self.checks.get(check_name)
        if spec is None:
            return CheckResult.fail(f"unknown check '{check_name}'")

        try:
            cmd = _shell_cmd(spec.render(resource_key))
            cp = run_cmd(cmd, cwd=self.repo, timeout_sec=spec.timeout_sec)
        except subprocess.TimeoutExpired as te:
            partial = _as_text(te.stdout).strip() or _as_text(te.stderr).strip()
            diag = f"check '{check_name}' timed out after {spec.timeout_sec} seconds"
            if partial:
                diag += "\n" + partial
            return CheckResult.fail(tail(diag, self.max_diagnostic_chars))
        except (OSError, RuntimeError) as exc:
            return CheckResult.fail(f"check '{check_name}' could not run: {exc}")

        if cp.returncode == 0:
            return CheckResult.ok()

        stdout = (cp.stdout or "").strip()
        stderr = (cp.stderr or "").strip()
        diag = stdout or stderr or f"check '{check_name}' failed with exit code {cp.returncode}"
        return CheckResult.fail(tail(diag, self.max_diagnostic_chars))


CheckFunction = Callable[[str], Any]


class CallableCheckRunner:
    """
    In-process checks. A function gets the resource key and returns a CheckResult,
    a bool, or a (passed, diagnostic) pair. Exceptions count as failures.
    """

    def __init__(self, functions: Mapping[str, CheckFunction]) -> None:
        self.functions: Dict[str, CheckFunction] = dict(functions)

    def run(self, check_name: str, resource_key: str) -> CheckResult:
        fn = self.functions.get(check_name)
        if fn is None:
            return CheckResult.fail(f"unknown check '{check_name}'")
        try:
            out = fn(resource_key)
        except Exception as exc:
            return CheckResult.fail(f"check '{check_name}' could not run: {exc}")

        if isinstance(out, CheckResult):
            return out
        if isinstance(out, bool):
            return CheckResult.ok() if out else CheckResult.fail(f"check '{check_name}' failed")
        if isinstance(out, tuple) and len(out) == 2:
            passed, diagnostic = out
            if passed:
                return CheckResult.ok()
            return CheckResult.fail(diagnostic)
        return CheckResult.fail(f"check '{check_name}' returned unsupported value: {out!r}")


# -----------------------------
# Escalation controller
# -----------------------------


class EscalationController:
    """
    Per resource key: Idle(0) --fail--> Failing(1) ... Failing(threshold-1) --fail--> Idle(0) + escalate.
    Any passing cycle returns to Idle(0). Callers must keep at most one
    evaluate() in flight per resource key; different keys are independent.
    """

    def __init__(
        self,
        store: StateStore,
        runner: CheckRunner,
        checks: Sequence[str],
        threshold: int = DEFAULT_THRESHOLD,
        namespace: str = DEFAULT_NAMESPACE,
        parallel: bool = True,
    ) -> None:
        if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 1:
            raise ValueError(f"threshold must be a positive integer, got {threshold!r}")
        self.store = store
        self.runner = runner
        self.checks: Tuple[str, ...] = _unique_names(checks)
        self.threshold = threshold
        self.namespace = namespace
        self.parallel = parallel

    def counter_key(self, resource_key: str) -> str:
        return f"{self.namespace}:{resource_key}:iterations"

    def iteration_count(self, resource_key: str) -> int:
        return self._load_count(self.counter_key(resource_key))

    def evaluate(self, resource_key: str, checks: Optional[Sequence[str]] = None) -> Decision:
        if not resource_key:
            raise ValueError("resource_key must be non-empty")
        names = self.checks if checks is None else _unique_names(checks)
        key = self.counter_key(resource_key)

        iterations = self._load_count(key)
        results = self._run_checks(resource_key, names)

        if all(r.passed for r in results.values()):
            self._store_count(key, 0)
            return Decision(action=CONTINUE)

        next_iteration = iterations + 1
        self._store_count(key, next_iteration)
        errors = {f"{name}_errors": r.diagnostic for name, r in results.items()}

        if next_iteration >= self.threshold:
            self._store_count(key, 0)
            return Decision(
                action=ESCALATE,
                message=(
                    f"Clarification Threshold reached ({self.threshold} iterations). "
                    "Escalating to Supervisor."
                ),
                payload={"signal": ESCALATE_SIGNAL, "iteration_count": next_iteration, **errors},
                iteration=next_iteration,
            )

        return Decision(
            action=RETRY,
            message=f"Iteration {next_iteration}/{self.threshold}. Fix the following errors before proceeding.",
            payload=errors,
            iteration=next_iteration,
        )

    def _run_checks(self, resource_key: str, names: Sequence[str]) -> Dict[str, CheckResult]:
        # all checks run to completion; order of the result follows `names`
        if self.parallel and len(names) > 1:
            with ThreadPoolExecutor(max_workers=len(names)) as pool:
                futures = [pool.submit(self._run_one, n, resource_key) for n in names]
                return {n: f.result() for n, f in zip(names, futures)}
        return {n: self._run_one(n, resource_key) for n in names}

    def _run_one(self, name: str, resource_key: str) -> CheckResult:
        try:
            result = self.runner.run(name, resource_key)
        except Exception as exc:
            return CheckResult.fail(f"check '{name}' could not run: {exc}")
        if not isinstance(result, CheckResult):
            return CheckResult.fail(f"check '{name}' returned unsupported value: {result!r}")
        return result

    def _load_count(self, key: str) -> int:
        try:
            raw = self.store.get(key)
        except StateStoreError:
            raise
        except Exception as exc:
            raise StateStoreError(f"Could not read {key}: {exc}") from exc
        if raw is None:
            return 0
        if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
            raise StateStoreError(f"Stored value for {key} is not a valid iteration count: {raw!r}")
        return raw

    def _store_count(self, key: str, value: int) -> None:
        try:
            self.store.set(key, value)
        except StateStoreError:
            raise
        except Exception as exc:
            raise StateStoreError(f"Could not write {key}: {exc}") from exc


def _unique_names(names: Sequence[str]) -> Tuple[str, ...]:
    out = tuple(names)
    if not out:
        # an empty cycle would pass vacuously and wipe the streak
        raise ValueError("At least one check is required")
    if len(set(out)) != len(out):
        raise ValueError(f"Check names must be unique: {list(out)}")
    return out


def build_controller(config: GrindConfig, store: StateStore, runner: CheckRunner) -> EscalationController:
    return EscalationController(
        store=store,
        runner=runner,
        checks=config.check_names,
        threshold=config.threshold,
        namespace=config.namespace,
        parallel=config.parallel,
    )


# -----------------------------
# Main
# -----------------------------


def _paths(args: argparse.Namespace) -> Tuple[Path, Path, Path]:
    repo = Path(args.repo).resolve()
    grind_dir = repo / GRIND_DIR
    config_path = Path(args.config) if args.config else grind_dir / CONFIG_FILE
    state_path = Path(args.state) if args.state else grind_dir / STATE_FILE
    return repo, config_path, state_path


def cmd_init(args: argparse.Namespace) -> int:
    repo = Path(args.repo).resolve()
    if not repo.exists():
        print(f"Repo not found: {repo}", file=sys.stderr)
        return EXIT_USAGE
    ensure_config_defaults(repo / GRIND_DIR)
    print(f"Initialized {repo / GRIND_DIR}")
    return 0


def cmd_evaluate(args: argparse.Namespace) -> int:
    repo, config_path, state_path = _paths(args)
    if not repo.exists():
        print(f"Repo not found: {repo}", file=sys.stderr)
        return EXIT_USAGE

    try:
        config = load_config(config_path)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return EXIT_USAGE

    resource_key = resource_key_for(repo, args.file)
    if config.match and not matches_any(resource_key, config.match):
        print(f"Skipping {resource_key}: no match pattern applies.", file=sys.stderr)
        print(json.dumps(Decision(action=CONTINUE).to_dict(), indent=2))
        return EXIT_CODES[CONTINUE]

    runner = ShellCheckRunner(config.checks, repo, max_diagnostic_chars=config.max_diagnostic_chars)
    controller = build_controller(config, JsonFileStateStore(state_path), runner)

    print(f"=== {resource_key}: running {', '.join(config.check_names)} ===", file=sys.stderr)
    try:
        decision = controller.evaluate(resource_key)
    except StateStoreError as e:
        print(f"State store failure, cannot evaluate this cycle: {e}", file=sys.stderr)
        return EXIT_STATE

    if decision.message:
        print(decision.message, file=sys.stderr)
    print(json.dumps(decision.to_dict(), indent=2, ensure_ascii=False))
    return EXIT_CODES[decision.action]


def cmd_status(args: argparse.Namespace) -> int:
    repo, config_path, state_path = _paths(args)
    try:
        config = load_config(config_path)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return EXIT_USAGE

    resource_key = resource_key_for(repo, args.file)
    controller = build_controller(config, JsonFileStateStore(state_path), CallableCheckRunner({}))
    try:
        count = controller.iteration_count(resource_key)
    except StateStoreError as e:
        print(f"State store failure: {e}", file=sys.stderr)
        return EXIT_STATE

    print(json.dumps({"file": resource_key, "iterations": count, "threshold": config.threshold}))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Retry/escalation controller for automated code-fixing agents")
    sub = ap.add_subparsers(dest="command", required=True)

    def common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--repo", type=str, default=".", help="Repository root")
        p.add_argument("--config", type=str, default="", help=f"Config file (default: <repo>/{GRIND_DIR}/{CONFIG_FILE})")
        p.add_argument("--state", type=str, default="", help=f"State file (default: <repo>/{GRIND_DIR}/{STATE_FILE})")

    p_init = sub.add_parser("init", help="Write default config and state files")
    p_init.add_argument("--repo", type=str, default=".", help="Repository root")
    p_init.set_defaults(func=cmd_init)

    p_eval = sub.add_parser("evaluate", help="Run one verification cycle for a changed file")
    common(p_eval)
    p_eval.add_argument("--file", type=str, required=True, help="Path of the changed file")
    p_eval.set_defaults(func=cmd_evaluate)

    p_status = sub.add_parser("status", help="Show the consecutive-failure count for a file")
    common(p_status)
    p_status.add_argument("--file", type=str, required=True, help="Path of the file")
    p_status.set_defaults(func=cmd_status)

    args = ap.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
