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
fuzz_options.py
───────────────

Configuration records handed to the orchestrator by the command surface.

``CargoBuildConfig`` and ``BuildOptions`` are frozen: they are built once per
invocation, rejected at construction when mutually exclusive settings are
combined, and read-only afterwards. The only derivation is
``BuildOptions.with_coverage()``, used by the coverage command.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, ClassVar, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from fuzz_config import default_target
from move_args import ArgKind

if TYPE_CHECKING:  # pragma: no cover
    from fuzz_project import FuzzProject


class Sanitizer(str, Enum):
    ADDRESS = "address"
    LEAK = "leak"
    MEMORY = "memory"
    THREAD = "thread"
    NONE = "none"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, text: str) -> "Sanitizer":
        for item in cls:
            if item.value == text:
                return item
        raise ValueError(f"invalid sanitizer variant: {text!r}")


class BuildMode(str, Enum):
    BUILD = "build"
    CHECK = "check"

    def __str__(self) -> str:
        return self.value


class CargoBuildConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    release: bool = False
    debug_assertions: bool = False
    all_features: bool = False
    no_default_features: bool = False
    features: Optional[str] = None
    sanitizer: Sanitizer = Sanitizer.ADDRESS
    build_std: bool = False
    # Implies build_std.
    careful_mode: bool = False
    triple: str = Field(default_factory=default_target)
    unstable_flags: List[str] = Field(default_factory=list)
    # Not exposed on the command line; forced on by the coverage command.
    coverage: bool = False
    strip_dead_code: bool = False
    no_cfg_fuzzing: bool = False
    no_trace_compares: bool = False
    cargo_home: Optional[str] = None
    cargo_target_dir: Optional[str] = None

    @field_validator("unstable_flags")
    @classmethod
    def _check_unstable_flags(cls, flags: List[str]) -> List[str]:
        # Rendered as -Z<flag>; an empty flag or a leading "=" would not parse back.
        for flag in flags:
            if not flag or flag.startswith("="):
                raise ValueError(f"invalid unstable flag: {flag!r}")
        return flags

    @model_validator(mode="after")
    def _check_feature_selection(self) -> "CargoBuildConfig":
        chosen = feature_selection_conflicts(self)
        if chosen:
            raise ValueError(f"{' and '.join(chosen)} are mutually exclusive")
        return self

    @property
    def uses_build_std(self) -> bool:
        return self.build_std or self.careful_mode


def feature_selection_conflicts(cfg: CargoBuildConfig) -> List[str]:
    """Names of the feature-selection flags set together (empty if at most one)."""
    chosen = []
    if cfg.all_features:
        chosen.append("--all-features")
    if cfg.no_default_features:
        chosen.append("--no-default-features")
    if cfg.features is not None:
        chosen.append("--features")
    return chosen if len(chosen) > 1 else []


class BuildOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Development profile, no optimizations.
    dev: bool = False
    verbose: bool = False
    cargo_options: CargoBuildConfig = Field(default_factory=CargoBuildConfig)

    @model_validator(mode="after")
    def _check_profile(self) -> "BuildOptions":
        if self.dev and self.cargo_options.release:
            raise ValueError("--cargo-dev and --release are mutually exclusive")
        return self

    def with_coverage(self) -> "BuildOptions":
        """Copy with coverage instrumentation forced on."""
        cargo = self.cargo_options.model_copy(update={"coverage": True})
        return self.model_copy(update={"cargo_options": cargo})


class FuzzDirWrapper(BaseModel):
    model_config = ConfigDict(frozen=True)

    fuzz_dir: Optional[Path] = None

    @classmethod
    def parse(cls, text: str) -> "FuzzDirWrapper":
        return cls(fuzz_dir=Path(text) if text else None)

    def to_args(self) -> List[str]:
        if self.fuzz_dir is None:
            return []
        return [f"--fuzz-dir={self.fuzz_dir}"]


# ────────────────────────────────────────────────────────────────────────────
# Commands
# ────────────────────────────────────────────────────────────────────────────

class FuzzCommand(BaseModel):
    name: ClassVar[str] = ""

    fuzz_dir: FuzzDirWrapper = Field(default_factory=FuzzDirWrapper)

    def execute(self, project: "FuzzProject") -> None:
        raise NotImplementedError


class Build(FuzzCommand):
    name: ClassVar[str] = "build"

    build: BuildOptions = Field(default_factory=BuildOptions)
    # All targets when unset.
    target: Optional[str] = None

    def execute(self, project: "FuzzProject") -> None:
        project.exec_build(BuildMode.BUILD, self.build, self.target)


class Check(FuzzCommand):
    name: ClassVar[str] = "check"

    build: BuildOptions = Field(default_factory=BuildOptions)
    target: Optional[str] = None

    def execute(self, project: "FuzzProject") -> None:
        project.exec_build(BuildMode.CHECK, self.build, self.target)


class Run(FuzzCommand):
    name: ClassVar[str] = "run"

    build: BuildOptions = Field(default_factory=BuildOptions)
    target: str
    # Custom corpus directories or artifact files.
    corpus: List[str] = Field(default_factory=list)
    jobs: int = Field(default=1, ge=1)
    # Passed through to the engine.
    args: List[str] = Field(default_factory=list)

    def execute(self, project: "FuzzProject") -> None:
        project.exec_fuzz(self)


class Cmin(FuzzCommand):
    name: ClassVar[str] = "cmin"

    build: BuildOptions = Field(default_factory=BuildOptions)
    target: str
    corpus: Optional[Path] = None
    args: List[str] = Field(default_factory=list)

    def execute(self, project: "FuzzProject") -> None:
        project.exec_cmin(self)


class Tmin(FuzzCommand):
    name: ClassVar[str] = "tmin"

    build: BuildOptions = Field(default_factory=BuildOptions)
    target: str
    test_case: Path
    runs: int = Field(default=255, ge=0)
    args: List[str] = Field(default_factory=list)

    def execute(self, project: "FuzzProject") -> None:
        project.exec_tmin(self)


class Coverage(FuzzCommand):
    name: ClassVar[str] = "coverage"

    build: BuildOptions = Field(default_factory=BuildOptions)
    target: str
    corpus: List[str] = Field(default_factory=list)
    llvm_path: Optional[Path] = None
    args: List[str] = Field(default_factory=list)

    def execute(self, project: "FuzzProject") -> None:
        project.exec_coverage(self)


class Fmt(FuzzCommand):
    name: ClassVar[str] = "fmt"

    build: BuildOptions = Field(default_factory=BuildOptions)
    target: str
    input: Path
    # When set, the input bytes are also decoded locally into Move arguments.
    arg_layout: Optional[List[ArgKind]] = None

    def execute(self, project: "FuzzProject") -> None:
        project.debug_fmt_input(self)


class ListTargets(FuzzCommand):
    name: ClassVar[str] = "list"

    def execute(self, project: "FuzzProject") -> None:
        project.print_targets()
