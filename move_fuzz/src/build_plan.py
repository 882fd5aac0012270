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
build_plan.py
─────────────

Build Plan Compiler.

Two directions over one grammar:

  * ``render_build_options`` turns a ``BuildOptions`` into the canonical,
    ordered token list (defaults elided), and
  * ``parse_build_options`` reads such tokens back through the same argparse
    definitions the CLI uses.

``parse(render(x)) == x`` must hold for every legally constructed value;
``check_round_trip`` enforces it. ``compile_plan`` turns validated options
into the concrete cargo argv + environment handed to the subprocess.
"""

from __future__ import annotations

import argparse
import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from fuzz_config import FuzzSettings, default_target
from fuzz_errors import ConfigurationConflict, MalformedRoundTrip
from fuzz_options import (
    BuildOptions,
    CargoBuildConfig,
    Sanitizer,
    feature_selection_conflicts,
)


LOGGER = logging.getLogger(__name__)

SANCOV_LEVEL = 4


# ────────────────────────────────────────────────────────────────────────────
# Grammar
# ────────────────────────────────────────────────────────────────────────────

def _sanitizer_arg(text: str) -> Sanitizer:
    try:
        return Sanitizer.parse(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def add_build_options_arguments(parser: argparse.ArgumentParser, *, default_triple: str) -> None:
    """Register the build option flags on ``parser``."""
    g = parser.add_argument_group("build options")
    g.add_argument("-D", "--cargo-dev", dest="dev", action="store_true",
                   help="Build artifacts in development mode, without optimizations")
    g.add_argument("-v", "--verbose", action="store_true", help="Verbose output from cargo")
    g.add_argument("-O", "--release", action="store_true",
                   help="Build artifacts in release mode, with optimizations")
    g.add_argument("-a", "--debug-assertions", action="store_true",
                   help="Build artifacts with debug assertions and overflow checks enabled (default if not -O)")
    g.add_argument("--all-features", action="store_true", help="Build artifacts with all Cargo features enabled")
    g.add_argument("--no-default-features", action="store_true",
                   help="Build artifacts with default Cargo features disabled")
    g.add_argument("--features", default=None, help="Build artifacts with given Cargo feature enabled")
    g.add_argument("-s", "--sanitizer", type=_sanitizer_arg, default=Sanitizer.ADDRESS,
                   help="Use a specific sanitizer (address, leak, memory, thread, none)")
    g.add_argument("--build-std", action="store_true",
                   help="Rebuild the standard library with the fuzz target's settings (-Zbuild-std)")
    g.add_argument("-c", "--careful", dest="careful_mode", action="store_true",
                   help="Enable careful mode: extra UB and init checks (implies --build-std)")
    g.add_argument("--target", dest="triple", default=default_triple, help="Target triple of the fuzz target")
    g.add_argument("-Z", dest="unstable_flags", action="append", default=None, metavar="FLAG",
                   help="Unstable (nightly-only) flags to Cargo")
    g.add_argument("--coverage", action="store_true", help=argparse.SUPPRESS)
    g.add_argument("--strip-dead-code", action="store_true", help="Do not link dead code")
    g.add_argument("--no-cfg-fuzzing", action="store_true", help="Do not set the 'cfg(fuzzing)' configuration")
    g.add_argument("--no-trace-compares", action="store_true",
                   help="Build without the sanitizer-coverage-trace-compares LLVM argument")
    g.add_argument("--cargo-home", default=None, help="CARGO_HOME for the build")
    g.add_argument("--cargo-target-dir", default=None, help="CARGO_TARGET_DIR for the build")


def options_from_namespace(ns: argparse.Namespace) -> BuildOptions:
    cargo = CargoBuildConfig(
        release=ns.release,
        debug_assertions=ns.debug_assertions,
        all_features=ns.all_features,
        no_default_features=ns.no_default_features,
        features=ns.features,
        sanitizer=ns.sanitizer,
        build_std=ns.build_std,
        careful_mode=ns.careful_mode,
        triple=ns.triple,
        unstable_flags=list(ns.unstable_flags or []),
        coverage=ns.coverage,
        strip_dead_code=ns.strip_dead_code,
        no_cfg_fuzzing=ns.no_cfg_fuzzing,
        no_trace_compares=ns.no_trace_compares,
        cargo_home=ns.cargo_home,
        cargo_target_dir=ns.cargo_target_dir,
    )
    return BuildOptions(dev=ns.dev, verbose=ns.verbose, cargo_options=cargo)


class _TokenParser(argparse.ArgumentParser):
    def error(self, message: str):  # type: ignore[override]
        raise ValueError(message)


def parse_build_options(tokens: Sequence[str], *, default_triple: Optional[str] = None) -> BuildOptions:
    """Parse rendered tokens back into ``BuildOptions``.

    Raises ValueError for unknown tokens and pydantic's ValidationError for
    combinations rejected at construction.
    """
    triple = default_triple if default_triple is not None else default_target()
    parser = _TokenParser(prog="build-options", add_help=False, allow_abbrev=False)
    add_build_options_arguments(parser, default_triple=triple)
    ns = parser.parse_args(list(tokens))
    return options_from_namespace(ns)


def render_build_options(options: BuildOptions, *, default_triple: Optional[str] = None) -> List[str]:
    triple = default_triple if default_triple is not None else default_target()
    cargo = options.cargo_options
    tokens: List[str] = []

    # Address is the implicit default.
    if cargo.sanitizer is Sanitizer.NONE:
        tokens.append("--sanitizer=none")
    elif cargo.sanitizer is not Sanitizer.ADDRESS:
        tokens.append(f"--sanitizer={cargo.sanitizer.value}")

    for flag, enabled in (
        ("-O", cargo.release),
        ("-D", options.dev),
        ("-v", options.verbose),
        ("-a", cargo.debug_assertions),
        ("--build-std", cargo.build_std),
        ("--careful", cargo.careful_mode),
        ("--coverage", cargo.coverage),
        ("--strip-dead-code", cargo.strip_dead_code),
        ("--no-cfg-fuzzing", cargo.no_cfg_fuzzing),
        ("--no-trace-compares", cargo.no_trace_compares),
    ):
        if enabled:
            tokens.append(flag)

    if cargo.no_default_features:
        tokens.append("--no-default-features")
    if cargo.all_features:
        tokens.append("--all-features")
    if cargo.features is not None:
        tokens.append(f"--features={cargo.features}")

    if cargo.triple != triple:
        tokens.append(f"--target={cargo.triple}")

    if cargo.cargo_home is not None:
        tokens.append(f"--cargo-home={cargo.cargo_home}")
    if cargo.cargo_target_dir is not None:
        tokens.append(f"--cargo-target-dir={cargo.cargo_target_dir}")

    for flag in cargo.unstable_flags:
        tokens.append(f"-Z{flag}")

    return tokens


def format_build_options(options: BuildOptions, *, default_triple: Optional[str] = None) -> str:
    """Shell-quoted rendering with a leading space, or '' when all defaults."""
    tokens = render_build_options(options, default_triple=default_triple)
    return " " + shlex.join(tokens) if tokens else ""


def check_round_trip(options: BuildOptions, *, default_triple: Optional[str] = None) -> List[str]:
    """Render ``options`` and confirm the tokens parse back to an equal value."""
    tokens = render_build_options(options, default_triple=default_triple)
    try:
        parsed = parse_build_options(tokens, default_triple=default_triple)
    except (ValueError, ValidationError) as e:
        raise MalformedRoundTrip(f"rendered options {tokens!r} failed to parse: {e}") from e
    if parsed != options:
        raise MalformedRoundTrip(f"rendered options {tokens!r} parsed to a different value: {parsed!r}")
    return tokens


# ────────────────────────────────────────────────────────────────────────────
# Validation
# ────────────────────────────────────────────────────────────────────────────

def validate_build_options(options: BuildOptions) -> None:
    """Reject conflicting settings before anything is spawned.

    Checks again what construction already checks, since ``model_copy``
    bypasses validators.
    """
    cargo = options.cargo_options
    if options.dev and cargo.release:
        raise ConfigurationConflict("--cargo-dev and --release are mutually exclusive")
    chosen = feature_selection_conflicts(cargo)
    if chosen:
        raise ConfigurationConflict(f"{' and '.join(chosen)} are mutually exclusive")
    if cargo.coverage and cargo.uses_build_std:
        which = "--careful (implies --build-std)" if cargo.careful_mode and not cargo.build_std else "--build-std"
        raise ConfigurationConflict(
            f"{which} is currently incompatible with coverage instrumentation (-Cinstrument-coverage)"
        )


# ────────────────────────────────────────────────────────────────────────────
# Toolchain plan
# ────────────────────────────────────────────────────────────────────────────

@dataclass
class ToolchainPlan:
    argv: List[str]
    env: Dict[str, str]
    cwd: Path
    # Canonical option tokens, used for reproduce hints.
    rendered: List[str] = field(default_factory=list)


def rustflags_for(cargo: CargoBuildConfig, *, inherited: str = "") -> str:
    flags = [
        "-Cpasses=sancov-module",
        f"-Cllvm-args=-sanitizer-coverage-level={SANCOV_LEVEL}",
        "-Cllvm-args=-sanitizer-coverage-inline-8bit-counters",
        "-Cllvm-args=-sanitizer-coverage-pc-table",
    ]
    if not cargo.no_trace_compares:
        flags.append("-Cllvm-args=-sanitizer-coverage-trace-compares")
    if not cargo.no_cfg_fuzzing:
        flags.append("--cfg fuzzing")
    if not cargo.strip_dead_code:
        flags.append("-Clink-dead-code")
    if cargo.coverage:
        flags.append("-Cinstrument-coverage")

    if cargo.sanitizer is Sanitizer.MEMORY:
        flags.append("-Zsanitizer=memory -Zsanitizer-memory-track-origins")
    elif cargo.sanitizer is not Sanitizer.NONE:
        flags.append(f"-Zsanitizer={cargo.sanitizer.value}")

    if "-linux-" in cargo.triple:
        flags.append("-Cllvm-args=-sanitizer-coverage-stack-depth")
    if not cargo.release or cargo.debug_assertions or cargo.careful_mode:
        flags.append("-Cdebug-assertions")
    if cargo.careful_mode:
        flags.append("-Zextra-const-ub-checks -Zstrict-init-checks --cfg careful")

    inherited = (inherited or "").strip()
    if inherited:
        flags.append(inherited)
    return " ".join(flags)


def compile_plan(
    subcommand: str,
    options: BuildOptions,
    *,
    manifest_path: Path,
    settings: FuzzSettings,
    target: Optional[str] = None,
    artifacts_dir: Optional[Path] = None,
    base_env: Optional[Mapping[str, str]] = None,
) -> ToolchainPlan:
    """Compile ``options`` into a cargo invocation.

    ``subcommand`` is ``build``, ``check`` or ``run``. Raises
    ConfigurationConflict before producing anything if the options conflict.
    """
    validate_build_options(options)
    cargo = options.cargo_options

    argv: List[str] = [
        settings.cargo,
        subcommand,
        "--manifest-path",
        str(manifest_path),
        "--target",
        cargo.triple,
    ]
    if not options.dev:
        argv.append("--release")
    if cargo.uses_build_std:
        argv.append("-Zbuild-std")
    if cargo.no_default_features:
        argv.append("--no-default-features")
    if cargo.all_features:
        argv.append("--all-features")
    if cargo.features is not None:
        argv += ["--features", cargo.features]
    for flag in cargo.unstable_flags:
        argv += ["-Z", flag]
    if options.verbose:
        argv.append("--verbose")

    if target:
        argv += ["--bin", target]
    elif subcommand != "run":
        argv.append("--bins")

    env = dict(os.environ if base_env is None else base_env)
    env["RUSTFLAGS"] = rustflags_for(cargo, inherited=env.get("RUSTFLAGS", ""))
    if cargo.cargo_home is not None:
        env["CARGO_HOME"] = cargo.cargo_home
    if cargo.cargo_target_dir is not None:
        env["CARGO_TARGET_DIR"] = cargo.cargo_target_dir

    if subcommand == "run":
        if artifacts_dir is None:
            raise ValueError("a run plan needs an artifacts directory")
        # Everything after -- goes to the engine binary.
        argv += ["--", f"-artifact_prefix={artifacts_dir}{os.sep}"]

    rendered = render_build_options(options, default_triple=settings.default_target)
    LOGGER.debug("compiled %s plan: argv=%s RUSTFLAGS=%s", subcommand, argv, env["RUSTFLAGS"])
    return ToolchainPlan(argv=argv, env=env, cwd=Path(manifest_path).parent, rendered=rendered)
