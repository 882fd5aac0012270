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
fuzz_config.py
──────────────

Runtime settings for move-fuzz.

Settings are read from ``MOVE_FUZZ_*`` environment variables at call time (not
import time) so a caller can adjust the environment, or preload a ``.env``
file, right before building a ``FuzzSettings``.
"""

from __future__ import annotations

import os
import platform
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


_ARCH_ALIASES: dict[str, str] = {
    "amd64": "x86_64",
    "x86_64": "x86_64",
    "x64": "x86_64",
    "arm64": "aarch64",
    "aarch64": "aarch64",
    "i386": "i686",
    "i686": "i686",
}


def host_triple(machine: Optional[str] = None, system: Optional[str] = None) -> str:
    """Best-effort rustc host triple for the given (or current) platform."""
    raw_machine = (machine if machine is not None else platform.machine()).strip().lower()
    arch = _ARCH_ALIASES.get(raw_machine, raw_machine or "x86_64")
    sysname = (system if system is not None else platform.system()).strip().lower()
    if sysname == "linux":
        return f"{arch}-unknown-linux-gnu"
    if sysname == "darwin":
        return f"{arch}-apple-darwin"
    if sysname == "windows":
        return f"{arch}-pc-windows-msvc"
    if sysname == "freebsd":
        return f"{arch}-unknown-freebsd"
    return f"{arch}-unknown-{sysname or 'linux-gnu'}"


def default_target() -> str:
    """Default target triple for fuzz builds (``MOVE_FUZZ_DEFAULT_TARGET`` wins)."""
    override = (os.environ.get("MOVE_FUZZ_DEFAULT_TARGET") or "").strip()
    return override or host_triple()


def _env_str(name: str, default: str) -> str:
    raw = (os.environ.get(name) or "").strip()
    return raw or default


def _env_optional(name: str) -> Optional[str]:
    raw = (os.environ.get(name) or "").strip()
    return raw or None


class FuzzSettings(BaseModel):
    # Toolchain
    cargo: str = "cargo"
    default_target: str = Field(default_factory=default_target)
    # Directory holding llvm-profdata; PATH lookup when unset.
    llvm_path: Optional[str] = None

    # Workspace conventions
    fuzz_dir_name: str = "fuzz"

    # Engine contract: the harness writes its Debug rendering of an input here.
    debug_path_env: str = "RUST_LIBFUZZER_DEBUG_PATH"

    # Program name used in reproduce/minimize hints.
    frontend: str = "move-fuzz"


def load_settings(env_file: Optional[Path] = None) -> FuzzSettings:
    if env_file is not None:
        path = Path(env_file).expanduser()
        if path.is_file():
            load_dotenv(path, override=False)
    return FuzzSettings(
        cargo=_env_str("MOVE_FUZZ_CARGO", "cargo"),
        default_target=default_target(),
        llvm_path=_env_optional("MOVE_FUZZ_LLVM_PATH"),
        fuzz_dir_name=_env_str("MOVE_FUZZ_DIR_NAME", "fuzz"),
        debug_path_env=_env_str("MOVE_FUZZ_DEBUG_PATH_ENV", "RUST_LIBFUZZER_DEBUG_PATH"),
        frontend=_env_str("MOVE_FUZZ_FRONTEND", "move-fuzz"),
    )
