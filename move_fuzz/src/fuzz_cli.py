#!/usr/bin/env python3

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
fuzz_cli.py
───────────

Command-line surface for move-fuzz:

    move-fuzz build|check [target]
    move-fuzz run <target> [corpus ...] [-j N] [-- <engine args>]
    move-fuzz cmin <target> [corpus] [-- <engine args>]
    move-fuzz tmin <target> <test_case> [-r N] [-- <engine args>]
    move-fuzz coverage <target> [corpus ...] [--llvm-path DIR] [-- <engine args>]
    move-fuzz fmt <target> <input> [--arg-layout u8,u64,...]
    move-fuzz list

Everything after a bare ``--`` is handed to the engine untouched.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from pydantic import ValidationError

from build_plan import add_build_options_arguments, options_from_namespace
from fuzz_config import FuzzSettings, load_settings
from fuzz_errors import FuzzError, SubprocessFailure
from fuzz_options import (
    Build,
    Check,
    Cmin,
    Coverage,
    Fmt,
    FuzzCommand,
    FuzzDirWrapper,
    ListTargets,
    Run,
    Tmin,
)
from fuzz_project import run_command
from move_args import parse_layout


LOGGER = logging.getLogger(__name__)


def _layout_arg(text: str):
    try:
        return parse_layout(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser(settings: FuzzSettings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=settings.frontend,
        description="Build, run and minimize fuzz targets for Move scripts.",
        allow_abbrev=False,
    )
    parser.add_argument("--env-file", type=Path, default=None, help="Load MOVE_FUZZ_* settings from a .env file")
    sub = parser.add_subparsers(dest="command", required=True)

    def _add(name: str, help_text: str, *, build: bool = True) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help_text, allow_abbrev=False)
        p.add_argument("--fuzz-dir", default="", help="The path to the fuzz project directory")
        if build:
            add_build_options_arguments(p, default_triple=settings.default_target)
        return p

    p = _add("build", "Build fuzz targets")
    p.add_argument("target", nargs="?", default=None, help="Fuzz target to build (all when omitted)")

    p = _add("check", "Type-check the fuzz targets")
    p.add_argument("target", nargs="?", default=None, help="Fuzz target to check (all when omitted)")

    p = _add("run", "Run a fuzz target")
    p.add_argument("target", help="Name of the fuzz target")
    p.add_argument("corpus", nargs="*", help="Custom corpus directories or artifact files")
    p.add_argument("-j", "--jobs", type=int, default=1, help="Number of concurrent jobs to run")

    p = _add("cmin", "Minify a corpus")
    p.add_argument("target", help="Name of the fuzz target")
    p.add_argument("corpus", nargs="?", type=Path, default=None, help="The corpus directory to minify into")

    p = _add("tmin", "Minify a test case")
    p.add_argument("target", help="Name of the fuzz target")
    p.add_argument("test_case", type=Path, help="Path to the failing test case to be minimized")
    p.add_argument("-r", "--runs", type=int, default=255, help="Number of minimization attempts to perform")

    p = _add("coverage", "Run the target on its corpus and generate coverage information")
    p.add_argument("target", help="Name of the fuzz target")
    p.add_argument("corpus", nargs="*", help="Custom corpus directories or artifact files")
    p.add_argument("--llvm-path", type=Path, default=None, help="Directory containing llvm-profdata")

    p = _add("fmt", "Print the debug output for an input")
    p.add_argument("target", help="Name of the fuzz target")
    p.add_argument("input", type=Path, help="Path to the input test case to debug print")
    p.add_argument("--arg-layout", type=_layout_arg, default=None,
                   help="Comma-separated Move argument kinds to decode the input as (e.g. u8,u64,vector<u8>)")

    _add("list", "List all the existing fuzz targets", build=False)
    return parser


def split_engine_args(argv: Sequence[str]) -> Tuple[List[str], List[str]]:
    argv = list(argv)
    if "--" in argv:
        idx = argv.index("--")
        return argv[:idx], argv[idx + 1 :]
    return argv, []


def command_from_namespace(ns: argparse.Namespace, engine_args: Sequence[str]) -> FuzzCommand:
    fuzz_dir = FuzzDirWrapper.parse(ns.fuzz_dir)
    if ns.command == "list":
        return ListTargets(fuzz_dir=fuzz_dir)

    build = options_from_namespace(ns)
    extra = list(engine_args)
    if ns.command == "build":
        return Build(fuzz_dir=fuzz_dir, build=build, target=ns.target)
    if ns.command == "check":
        return Check(fuzz_dir=fuzz_dir, build=build, target=ns.target)
    if ns.command == "run":
        return Run(fuzz_dir=fuzz_dir, build=build, target=ns.target, corpus=ns.corpus, jobs=ns.jobs, args=extra)
    if ns.command == "cmin":
        return Cmin(fuzz_dir=fuzz_dir, build=build, target=ns.target, corpus=ns.corpus, args=extra)
    if ns.command == "tmin":
        return Tmin(fuzz_dir=fuzz_dir, build=build, target=ns.target, test_case=ns.test_case, runs=ns.runs, args=extra)
    if ns.command == "coverage":
        return Coverage(
            fuzz_dir=fuzz_dir, build=build, target=ns.target, corpus=ns.corpus, llvm_path=ns.llvm_path, args=extra
        )
    if ns.command == "fmt":
        return Fmt(fuzz_dir=fuzz_dir, build=build, target=ns.target, input=ns.input, arg_layout=ns.arg_layout)
    raise ValueError(f"unknown command: {ns.command}")


def _exit_code_for(err: FuzzError) -> int:
    if isinstance(err, SubprocessFailure):
        if err.exit_code:
            return err.exit_code
        if err.signal:
            return 128 + err.signal
    return 1


def main(argv: Optional[Sequence[str]] = None) -> None:
    raw = list(sys.argv[1:] if argv is None else argv)
    ours, engine_args = split_engine_args(raw)

    # --env-file must be applied before settings (and parser defaults) are built.
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--env-file", type=Path, default=None)
    known, _ = pre.parse_known_args(ours)
    settings = load_settings(known.env_file)

    args = build_parser(settings).parse_args(ours)
    logging.basicConfig(
        level=logging.DEBUG if getattr(args, "verbose", False) else logging.INFO,
        format="[%(levelname)s] %(message)s",
    )
    LOGGER.debug("settings: %s", settings)

    try:
        command = command_from_namespace(args, engine_args)
    except ValidationError as e:
        print(f"[{settings.frontend}] ERROR: invalid options: {e}", file=sys.stderr)
        sys.exit(2)

    try:
        run_command(command, settings=settings)
    except FuzzError as e:
        print(f"[{settings.frontend}] ERROR: {e}", file=sys.stderr)
        sys.exit(_exit_code_for(e))


if __name__ == "__main__":
    main()
