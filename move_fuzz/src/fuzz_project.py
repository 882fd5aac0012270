#────────────
#
# Copyright 2025 Artificial Intelligence Cyber Challenge
#
# Permission is hereby granted, free of charge, to any person obtaining a copy of 
# this software and associated documentation files (the “Software”), to deal in the 
# Software without restriction, including without limitation the rights to use, 
# copy, modify, merge, publish, distribute, sublicense, and/or sell copies of the 
# Software, and to permit persons to whom the Software is furnished to do so, 
# subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all 
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED “AS IS”, WITHOUT WARRANTY OF ANY KIND, EXPRESS OR IMPLIED, 
# INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY, FITNESS FOR A 
# PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR COPYRIGHT 
# HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN ACTION 
# OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN CONNECTION WITH THE 
# SOFTWARE OR THE USE OR OTHER DEALINGS IN THE SOFTWARE.
#
# ────────────

"""
fuzz_project.py
───────────────

Project registry and process orchestrator.

A ``FuzzProject`` wraps one fuzz workspace:

    <fuzz>/
      Cargo.toml          harness crate manifest
      fuzz_targets/       <target>.rs harness entry points
      sources/            <target>.move scripts exercised by the harness
      corpus/<target>/    inputs kept by the engine
      artifacts/<target>/ crashing inputs
      coverage/<target>/  raw profiles + merged coverage.profdata

Each command compiles one plan (``build_plan.compile_plan``) and drives the
toolchain/engine as a subprocess. A command moves through

    Idle -> PlanCompiled -> Invoked -> Succeeded | Failed

and never reaches PlanCompiled when the configuration is rejected or the
target is unknown.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import tempfile
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from build_plan import ToolchainPlan, compile_plan, format_build_options
from fuzz_config import FuzzSettings, load_settings
from fuzz_errors import FuzzError, SubprocessFailure, UnknownTarget, WorkspaceNotFound
from fuzz_options import BuildMode, BuildOptions, Cmin, Coverage, Fmt, FuzzCommand, Run, Tmin
from move_args import decode_args, lower, to_cli_args


LOGGER = logging.getLogger(__name__)

FUZZ_TARGETS_DIR = "fuzz_targets"
MOVE_TARGETS_DIR = "sources"
CORPUS_DIR = "corpus"
ARTIFACTS_DIR = "artifacts"
COVERAGE_DIR = "coverage"
CMIN_BACKUP_DIR = ".cmin-backup"
HARNESS_MANIFEST = "Cargo.toml"
PROJECT_MANIFEST = "Move.toml"

# File suffixes that declare a target, per directory.
_TARGET_SOURCES = {
    FUZZ_TARGETS_DIR: ".rs",
    MOVE_TARGETS_DIR: ".move",
}

_ARTIFACT_RE = re.compile(r"Test unit written to (?P<path>\S+)")
_CRASH_MIN_RE = re.compile(r"CRASH_MIN: failed to minimize beyond (?P<path>\S+) \(")


# ────────────────────────────────────────────────────────────────────────────
# Utility helpers
# ────────────────────────────────────────────────────────────────────────────

ANSI_RE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])", re.MULTILINE)
def strip_ansi(s: str) -> str:
    return ANSI_RE.sub("", s)


def _tail_lines(s: str, *, max_lines: int = 80) -> str:
    s = (s or "").strip("\n")
    if not s:
        return ""
    lines = strip_ansi(s).splitlines()
    return "\n".join(lines[-max_lines:])


def hexdump(path: Path, limit_bytes: int = 512) -> str:
    data = path.read_bytes()[:limit_bytes]
    lines = []
    for off in range(0, len(data), 16):
        chunk = data[off : off + 16]
        hex_bytes = " ".join(f"{b:02x}" for b in chunk)
        ascii_ = "".join(chr(b) if 32 <= b < 127 else "." for b in chunk)
        lines.append(f"{off:08x}: {hex_bytes:<47}  {ascii_}")
    return "\n".join(lines)


def absolute_path(path: os.PathLike | str) -> Path:
    """Absolute form of a path given relative to the caller's working directory.

    Children run with the fuzz dir as cwd, so relative paths must not reach argv.
    """
    return Path(path).expanduser().resolve()


def find_artifact(output: str) -> Optional[str]:
    """Last crash input path announced by the engine, if any."""
    found = None
    for m in _ARTIFACT_RE.finditer(output or ""):
        found = m.group("path")
    return found


def find_minimized(output: str) -> Optional[str]:
    found = None
    for m in _CRASH_MIN_RE.finditer(output or ""):
        found = m.group("path")
    return found


# ────────────────────────────────────────────────────────────────────────────
# Registry
# ────────────────────────────────────────────────────────────────────────────

def find_project_root(start: Optional[Path] = None) -> Path:
    """Nearest ancestor holding a Move.toml, else ``start`` itself."""
    here = Path(start or Path.cwd()).resolve()
    for candidate in (here, *here.parents):
        if (candidate / PROJECT_MANIFEST).is_file():
            return candidate
    return here


def _looks_like_workspace(path: Path) -> bool:
    return path.is_dir() and (
        (path / HARNESS_MANIFEST).is_file()
        or (path / FUZZ_TARGETS_DIR).is_dir()
        or (path / MOVE_TARGETS_DIR).is_dir()
    )


def locate(
    explicit_override: Optional[Path] = None,
    *,
    settings: Optional[FuzzSettings] = None,
    cwd: Optional[Path] = None,
) -> Path:
    """Resolve the fuzz workspace root.

    An explicit override is taken literally; otherwise ``<project>/fuzz``
    (the directory name comes from settings) is used.
    """
    settings = settings or load_settings()
    if explicit_override is not None:
        root = Path(explicit_override).expanduser()
        if not root.is_absolute() and cwd is not None:
            root = Path(cwd) / root
        if not _looks_like_workspace(root):
            raise WorkspaceNotFound(f"{root} is not a fuzz workspace")
        return root.resolve()

    project = find_project_root(cwd)
    root = project / settings.fuzz_dir_name
    if not _looks_like_workspace(root):
        raise WorkspaceNotFound(
            f"could not find a fuzz workspace at {root}; pass --fuzz-dir to point at one"
        )
    return root


def list_targets(root: Path) -> List[str]:
    """Sorted, de-duplicated target names declared under ``root``."""
    names = set()
    for subdir, suffix in _TARGET_SOURCES.items():
        src_dir = Path(root) / subdir
        if not src_dir.is_dir():
            continue
        for p in src_dir.iterdir():
            if p.is_file() and p.suffix == suffix:
                names.add(p.stem)
    return sorted(names)


def exists(root: Path, name: str) -> bool:
    return name in list_targets(root)


# ────────────────────────────────────────────────────────────────────────────
# Orchestrator
# ────────────────────────────────────────────────────────────────────────────

class CommandState(str, Enum):
    IDLE = "idle"
    PLAN_COMPILED = "plan_compiled"
    INVOKED = "invoked"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_TRANSITIONS: Dict[CommandState, set] = {
    CommandState.IDLE: {CommandState.PLAN_COMPILED},
    CommandState.PLAN_COMPILED: {CommandState.INVOKED},
    # Coverage invokes the engine, then the profile merger.
    CommandState.INVOKED: {CommandState.INVOKED, CommandState.SUCCEEDED, CommandState.FAILED},
    CommandState.SUCCEEDED: set(),
    CommandState.FAILED: set(),
}


@dataclass
class CommandResult:
    argv: List[str]
    rc: int
    output: str

    @property
    def ok(self) -> bool:
        return self.rc == 0


class FuzzProject:
    def __init__(self, fuzz_dir: Path, *, settings: Optional[FuzzSettings] = None) -> None:
        self.fuzz_dir = absolute_path(fuzz_dir)
        self.settings = settings or load_settings()
        self.logger = logging.getLogger(__name__)
        self.state = CommandState.IDLE
        self.history: List[CommandState] = [CommandState.IDLE]

    @classmethod
    def locate(
        cls,
        explicit_override: Optional[Path] = None,
        *,
        settings: Optional[FuzzSettings] = None,
        cwd: Optional[Path] = None,
    ) -> "FuzzProject":
        settings = settings or load_settings()
        return cls(locate(explicit_override, settings=settings, cwd=cwd), settings=settings)

    # ── layout ──────────────────────────────────────────────────────────

    @property
    def manifest_path(self) -> Path:
        return self.fuzz_dir / HARNESS_MANIFEST

    def list_targets(self) -> List[str]:
        return list_targets(self.fuzz_dir)

    def exists(self, name: str) -> bool:
        return exists(self.fuzz_dir, name)

    def print_targets(self) -> None:
        for name in self.list_targets():
            print(name)

    def corpus_for(self, target: str) -> Path:
        p = self.fuzz_dir / CORPUS_DIR / target
        p.mkdir(parents=True, exist_ok=True)
        return p

    def artifacts_for(self, target: str) -> Path:
        p = self.fuzz_dir / ARTIFACTS_DIR / target
        p.mkdir(parents=True, exist_ok=True)
        return p

    def coverage_for(self, target: str) -> tuple[Path, Path]:
        """(raw profile dir, merged profdata path), created on demand."""
        base = self.fuzz_dir / COVERAGE_DIR / target
        raw = base / "raw"
        raw.mkdir(parents=True, exist_ok=True)
        return raw, base / "coverage.profdata"

    def _require_target(self, target: str) -> None:
        available = self.list_targets()
        if target not in available:
            raise UnknownTarget(target, available)

    # ── state machine ───────────────────────────────────────────────────

    def _reset(self) -> None:
        self.state = CommandState.IDLE
        self.history = [CommandState.IDLE]

    def _transition(self, new: CommandState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal command state transition {self.state.value} -> {new.value}")
        self.state = new
        self.history.append(new)

    def _compile(
        self,
        subcommand: str,
        build: BuildOptions,
        target: Optional[str],
        *,
        artifacts_dir: Optional[Path] = None,
        track_state: bool = True,
    ) -> ToolchainPlan:
        plan = compile_plan(
            subcommand,
            build,
            manifest_path=self.manifest_path,
            settings=self.settings,
            target=target,
            artifacts_dir=artifacts_dir,
        )
        if track_state:
            self._transition(CommandState.PLAN_COMPILED)
        return plan

    def _spawn(
        self,
        argv: Sequence[str],
        *,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[Path] = None,
        echo: bool = True,
        check: bool = True,
    ) -> CommandResult:
        self._transition(CommandState.INVOKED)
        result = self._run_cmd(argv, cwd=cwd or self.fuzz_dir, env=env, echo=echo)
        if check and not result.ok:
            raise self._failed(result)
        return result

    def _failed(self, result: CommandResult, detail: str = "") -> SubprocessFailure:
        self._transition(CommandState.FAILED)
        if not detail and not result.ok:
            detail = _tail_lines(result.output, max_lines=20)
        return SubprocessFailure.from_returncode(result.argv, result.rc, detail=detail)

    def _succeeded(self) -> None:
        self._transition(CommandState.SUCCEEDED)

    # Run a command, streaming its combined output while capturing it.
    def _run_cmd(
        self,
        cmd: Sequence[str],
        *,
        cwd: Path,
        env: Optional[Dict[str, str]] = None,
        echo: bool = True,
    ) -> CommandResult:
        argv = [str(c) for c in cmd]
        start_mono = time.monotonic()
        print(f"[*] ➜  {' '.join(argv)}", flush=True)
        proc = subprocess.Popen(
            argv,
            cwd=str(cwd),
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            bufsize=1,
        )
        chunks: List[str] = []
        try:
            assert proc.stdout is not None
            for line in proc.stdout:
                chunks.append(line)
                if echo:
                    print(line, end="", flush=True)
        except KeyboardInterrupt:
            # The engine shares our process group and got the same SIGINT;
            # its exit status is what gets reported.
            if proc.poll() is None:
                proc.terminate()
        finally:
            rc = proc.wait()
            if proc.stdout is not None:
                proc.stdout.close()

        elapsed = time.monotonic() - start_mono
        self.logger.debug("command rc=%s elapsed=%.1fs argv=%s", rc, elapsed, argv)
        return CommandResult(argv=argv, rc=int(rc), output="".join(chunks))

    # ── commands ────────────────────────────────────────────────────────

    def execute(self, command: FuzzCommand) -> None:
        self._reset()
        command.execute(self)

    def exec_build(self, mode: BuildMode, build: BuildOptions, target: Optional[str] = None) -> None:
        self._reset()
        if target is not None:
            self._require_target(target)
        plan = self._compile(BuildMode(mode).value, build, target)
        self._spawn(plan.argv, env=plan.env, cwd=plan.cwd)
        self._succeeded()

    def exec_fuzz(self, run: Run) -> None:
        self._reset()
        self._require_target(run.target)
        artifacts = self.artifacts_for(run.target)
        plan = self._compile("run", run.build, run.target, artifacts_dir=artifacts)

        argv = list(plan.argv) + list(run.args)
        if run.jobs != 1:
            argv.append(f"-fork={run.jobs}")
        corpora = [str(absolute_path(c)) for c in run.corpus] or [str(self.corpus_for(run.target))]
        argv += corpora

        result = self._spawn(argv, env=plan.env, cwd=plan.cwd, check=False)
        if result.ok:
            self._succeeded()
            return

        artifact = find_artifact(result.output)
        if artifact:
            self._report_crash(run.build, run.target, Path(artifact))
        raise self._failed(result, detail=f"fuzz target '{run.target}' exited with status {result.rc}")

    def _report_crash(self, build: BuildOptions, target: str, artifact: Path) -> None:
        opts = format_build_options(build, default_triple=self.settings.default_target)
        rule = "─" * 80
        print(rule)
        print(f"\nFailing input:\n\n\t{artifact}\n")
        if artifact.is_file():
            try:
                debug = self._debug_output(build, target, artifact)
            except FuzzError as e:
                self.logger.warning("could not print debug output for %s: %s", artifact, e)
                debug = ""
            if debug:
                print(f"Output of `std::fmt::Debug`:\n\n{debug}\n")
            else:
                print(f"Input bytes:\n\n{hexdump(artifact)}\n")
        prog = self.settings.frontend
        print(f"Reproduce with:\n\n\t{prog} run{opts} {target} {artifact}\n")
        print(f"Minimize test case with:\n\n\t{prog} tmin{opts} {target} {artifact}\n")
        print(rule, flush=True)

    def exec_cmin(self, cmin: Cmin) -> None:
        self._reset()
        self._require_target(cmin.target)
        corpus = absolute_path(cmin.corpus) if cmin.corpus is not None else self.fuzz_dir / CORPUS_DIR / cmin.target
        if not corpus.is_dir():
            raise FuzzError(f"corpus directory {corpus} does not exist")
        artifacts = self.artifacts_for(cmin.target)
        plan = self._compile("run", cmin.build, cmin.target, artifacts_dir=artifacts)

        tmp = Path(tempfile.mkdtemp(prefix=".cmin-", dir=str(self.fuzz_dir)))
        merged = tmp / "corpus"
        merged.mkdir()
        argv = list(plan.argv) + list(cmin.args) + ["-merge=1", str(merged), str(corpus)]
        try:
            result = self._spawn(argv, env=plan.env, cwd=plan.cwd, check=False)
            if not result.ok:
                raise self._failed(result)

            backup = corpus.parent / CMIN_BACKUP_DIR / f"{corpus.name}-{time.strftime('%Y%m%d-%H%M%S')}"
            backup.parent.mkdir(parents=True, exist_ok=True)
            corpus.rename(backup)
            merged.rename(corpus)
        finally:
            shutil.rmtree(tmp, ignore_errors=True)
        print(f"[*] Minimized corpus written to {corpus}; previous corpus kept at {backup}")
        self._succeeded()

    def exec_tmin(self, tmin: Tmin) -> None:
        self._reset()
        self._require_target(tmin.target)
        test_case = absolute_path(tmin.test_case)
        if not test_case.is_file():
            raise FuzzError(f"test case {test_case} does not exist")
        artifacts = self.artifacts_for(tmin.target)
        plan = self._compile("run", tmin.build, tmin.target, artifacts_dir=artifacts)

        argv = list(plan.argv) + ["-minimize_crash=1", f"-runs={tmin.runs}"] + list(tmin.args) + [str(test_case)]
        result = self._spawn(argv, env=plan.env, cwd=plan.cwd)

        minimized = find_minimized(result.output)
        if minimized:
            opts = format_build_options(tmin.build, default_triple=self.settings.default_target)
            print(f"\nMinimized artifact:\n\n\t{minimized}\n")
            print(f"Reproduce with:\n\n\t{self.settings.frontend} run{opts} {tmin.target} {minimized}\n")
        self._succeeded()

    def exec_coverage(self, cov: Coverage) -> None:
        self._reset()
        self._require_target(cov.target)
        build = cov.build.with_coverage()
        artifacts = self.artifacts_for(cov.target)
        plan = self._compile("run", build, cov.target, artifacts_dir=artifacts)

        corpora = [str(absolute_path(c)) for c in cov.corpus] or [str(self.corpus_for(cov.target))]
        raw_dir, profdata = self.coverage_for(cov.target)
        # Profiles from an earlier coverage run would be merged in again.
        for stale in raw_dir.glob("*.profraw"):
            stale.unlink()

        env = dict(plan.env)
        env["LLVM_PROFILE_FILE"] = str(raw_dir / "default-%m-%p.profraw")
        argv = list(plan.argv) + ["-runs=0"] + list(cov.args) + corpora
        self._spawn(argv, env=env, cwd=plan.cwd)

        profiles = sorted(raw_dir.glob("*.profraw"))
        if not profiles:
            self._transition(CommandState.FAILED)
            raise FuzzError(f"no raw coverage profiles were written to {raw_dir}")

        llvm_dir = cov.llvm_path or self.settings.llvm_path
        merge = [self._llvm_tool("llvm-profdata", llvm_dir), "merge", "-sparse"]
        merge += [str(p) for p in profiles] + ["-o", str(profdata)]
        self._spawn(merge, cwd=self.fuzz_dir)
        print(f"[*] Coverage data merged and saved in {profdata}")
        self._succeeded()

    @staticmethod
    def _llvm_tool(name: str, llvm_dir: Optional[os.PathLike | str]) -> str:
        if llvm_dir:
            return str(Path(llvm_dir) / name)
        found = shutil.which(name)
        if not found:
            raise FuzzError(f"{name} not found on PATH; pass --llvm-path")
        return found

    def debug_fmt_input(self, fmt: Fmt) -> None:
        self._reset()
        self._require_target(fmt.target)
        input_path = absolute_path(fmt.input)
        if not input_path.is_file():
            raise FuzzError(f"input test case {input_path} does not exist")

        debug = self._debug_output(fmt.build, fmt.target, input_path, track_state=True)
        print(debug)
        if fmt.arg_layout:
            args = lower(decode_args(input_path.read_bytes(), fmt.arg_layout))
            print("Move script arguments:")
            for token in to_cli_args(args):
                print(f"\t{token}")
        self._succeeded()

    def _debug_output(self, build: BuildOptions, target: str, input_path: Path, *, track_state: bool = False) -> str:
        artifacts = self.artifacts_for(target)
        plan = self._compile("run", build, target, artifacts_dir=artifacts, track_state=track_state)

        fd, debug_path = tempfile.mkstemp(prefix="move-fuzz-debug-")
        os.close(fd)
        try:
            env = dict(plan.env)
            env[self.settings.debug_path_env] = debug_path
            argv = list(plan.argv) + [str(input_path)]
            if track_state:
                result = self._spawn(argv, env=env, cwd=plan.cwd, echo=False, check=False)
                if not result.ok:
                    raise self._failed(
                        result,
                        detail=f"fuzz target '{target}' failed when printing debug output for '{input_path}'",
                    )
            else:
                result = self._run_cmd(argv, cwd=plan.cwd, env=env, echo=False)
                if not result.ok:
                    raise SubprocessFailure.from_returncode(result.argv, result.rc)
            return Path(debug_path).read_text(encoding="utf-8", errors="replace")
        finally:
            Path(debug_path).unlink(missing_ok=True)


def run_command(
    command: FuzzCommand,
    *,
    settings: Optional[FuzzSettings] = None,
    cwd: Optional[Path] = None,
) -> FuzzProject:
    """Resolve the workspace for ``command`` and execute it.

    Returns the project so callers can inspect the final command state.
    """
    project = FuzzProject.locate(command.fuzz_dir.fuzz_dir, settings=settings, cwd=cwd)
    project.execute(command)
    return project
