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
fuzz_errors.py
──────────────

Error taxonomy for the move-fuzz orchestration core.

Every failure raised by the core derives from ``FuzzError`` so the CLI can
catch a single type at the command boundary. Nothing here is retried.
"""

from __future__ import annotations

import signal as _signal
from typing import Optional, Sequence


class FuzzError(RuntimeError):
    pass


class ConfigurationConflict(FuzzError):
    """Mutually exclusive build settings were requested together."""


class WorkspaceNotFound(FuzzError):
    pass


class UnknownTarget(FuzzError):
    def __init__(self, target: str, available: Sequence[str] = ()) -> None:
        self.target = target
        self.available = list(available)
        msg = f"no fuzz target named '{target}'"
        if self.available:
            msg += f" (available: {', '.join(self.available)})"
        super().__init__(msg)


class SubprocessFailure(FuzzError):
    """The toolchain or engine exited non-zero or was killed by a signal.

    ``exit_code`` and ``signal`` are kept exactly as reported by the OS;
    at most one of them is set.
    """

    def __init__(
        self,
        argv: Sequence[str],
        *,
        exit_code: Optional[int] = None,
        signal: Optional[int] = None,
        detail: str = "",
    ) -> None:
        self.argv = [str(a) for a in argv]
        self.exit_code = exit_code
        self.signal = signal
        self.detail = detail
        super().__init__(self._describe())

    @classmethod
    def from_returncode(cls, argv: Sequence[str], returncode: int, *, detail: str = "") -> "SubprocessFailure":
        # Popen reports death-by-signal as a negative return code.
        if returncode < 0:
            return cls(argv, signal=-returncode, detail=detail)
        return cls(argv, exit_code=returncode, detail=detail)

    def _describe(self) -> str:
        prog = self.argv[0] if self.argv else "<command>"
        if self.signal is not None:
            try:
                name = _signal.Signals(self.signal).name
            except ValueError:
                name = str(self.signal)
            head = f"{prog} was terminated by signal {name}"
        else:
            head = f"{prog} exited with status {self.exit_code}"
        return f"{head}: {self.detail}" if self.detail else head


class MalformedRoundTrip(FuzzError):
    """Rendered build options did not parse back to the same value."""
