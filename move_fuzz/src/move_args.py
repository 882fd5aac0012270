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
move_args.py
────────────

Lowers fuzzer-produced values into the tagged transaction arguments accepted
by a Move script entry point.

The set of argument kinds is closed: one value class per primitive kind
(u8 … u256, bool, vector<u8>) plus ``ArgList`` for ordered nesting. Lowering
is total over that set and preserves input order, so

    lower(a + b) == lower(a) + lower(b)

for any two argument lists. Supporting a new kind means adding a class here.

``decode_args`` turns raw engine bytes into values for a declared layout and
never fails; missing bytes read as zero.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Dict, Iterable, List, Sequence, Tuple, Type, Union


class ArgKind(str, Enum):
    U8 = "u8"
    U16 = "u16"
    U32 = "u32"
    U64 = "u64"
    U128 = "u128"
    U256 = "u256"
    BOOL = "bool"
    U8_VECTOR = "vector<u8>"

    def __str__(self) -> str:
        return self.value

    @property
    def byte_width(self) -> int:
        """Fixed encoded width in bytes; 0 for the variable-length vector."""
        return _BYTE_WIDTHS[self]

    @classmethod
    def parse(cls, text: str) -> "ArgKind":
        key = (text or "").strip().lower().replace(" ", "")
        for kind in cls:
            if kind.value == key:
                return kind
        raise ValueError(f"unsupported Move argument kind: {text!r}")


_BYTE_WIDTHS: Dict[ArgKind, int] = {
    ArgKind.U8: 1,
    ArgKind.U16: 2,
    ArgKind.U32: 4,
    ArgKind.U64: 8,
    ArgKind.U128: 16,
    ArgKind.U256: 32,
    ArgKind.BOOL: 1,
    ArgKind.U8_VECTOR: 0,
}


@dataclass(frozen=True)
class TransactionArgument:
    kind: ArgKind
    value: Union[int, bool, bytes]

    def to_cli_token(self) -> str:
        """Render the way the Move CLI expects ``--args`` values."""
        if self.kind is ArgKind.BOOL:
            return "true" if self.value else "false"
        if self.kind is ArgKind.U8_VECTOR:
            return f'x"{bytes(self.value).hex()}"'
        return f"{int(self.value)}{self.kind.value}"


# ────────────────────────────────────────────────────────────────────────────
# Argument values
# ────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class _Unsigned:
    value: int

    KIND: ClassVar[ArgKind]

    def __post_init__(self) -> None:
        if isinstance(self.value, bool) or not isinstance(self.value, int):
            raise TypeError(f"{type(self).__name__} expects an int, got {type(self.value).__name__}")
        bits = self.KIND.byte_width * 8
        if not 0 <= self.value < (1 << bits):
            raise ValueError(f"{self.value} does not fit in {self.KIND.value}")

    def lower(self) -> List[TransactionArgument]:
        return [TransactionArgument(self.KIND, self.value)]


class U8(_Unsigned):
    KIND = ArgKind.U8


class U16(_Unsigned):
    KIND = ArgKind.U16


class U32(_Unsigned):
    KIND = ArgKind.U32


class U64(_Unsigned):
    KIND = ArgKind.U64


class U128(_Unsigned):
    KIND = ArgKind.U128


class U256(_Unsigned):
    KIND = ArgKind.U256


@dataclass(frozen=True)
class Bool:
    value: bool

    KIND: ClassVar[ArgKind] = ArgKind.BOOL

    def __post_init__(self) -> None:
        if not isinstance(self.value, bool):
            raise TypeError(f"Bool expects a bool, got {type(self.value).__name__}")

    def lower(self) -> List[TransactionArgument]:
        return [TransactionArgument(ArgKind.BOOL, self.value)]


@dataclass(frozen=True)
class ByteVector:
    value: bytes

    KIND: ClassVar[ArgKind] = ArgKind.U8_VECTOR

    def __post_init__(self) -> None:
        if isinstance(self.value, (bytearray, memoryview)):
            object.__setattr__(self, "value", bytes(self.value))
        elif not isinstance(self.value, bytes):
            raise TypeError(f"ByteVector expects bytes, got {type(self.value).__name__}")

    def lower(self) -> List[TransactionArgument]:
        return [TransactionArgument(ArgKind.U8_VECTOR, self.value)]


MoveValue = Union[U8, U16, U32, U64, U128, U256, Bool, ByteVector]

_VALUE_TYPES: Dict[ArgKind, Type] = {
    ArgKind.U8: U8,
    ArgKind.U16: U16,
    ArgKind.U32: U32,
    ArgKind.U64: U64,
    ArgKind.U128: U128,
    ArgKind.U256: U256,
    ArgKind.BOOL: Bool,
    ArgKind.U8_VECTOR: ByteVector,
}
_SCALARS: Tuple[Type, ...] = tuple(_VALUE_TYPES.values())


@dataclass(frozen=True, init=False)
class ArgList:
    items: Tuple["MoveArgItem", ...] = ()

    def __init__(self, items: Iterable["MoveArgItem"] = ()) -> None:
        object.__setattr__(self, "items", tuple(items))

    def lower(self) -> List[TransactionArgument]:
        out: List[TransactionArgument] = []
        for item in self.items:
            out.extend(lower(item))
        return out


MoveArgItem = Union[MoveValue, ArgList]
MoveArg = Sequence[MoveArgItem]


def make_value(kind: ArgKind, raw: Union[int, bool, bytes]) -> MoveValue:
    return _VALUE_TYPES[ArgKind(kind)](raw)


def lower(value: Union[MoveArgItem, MoveArg]) -> List[TransactionArgument]:
    """Lower one value, or an ordered list of values, to wire arguments."""
    if isinstance(value, (list, tuple)):
        return ArgList(value).lower()
    if isinstance(value, _SCALARS) or isinstance(value, ArgList):
        return value.lower()
    # Plain ints/bytes carry no width; callers must pick a kind explicitly.
    raise TypeError(f"cannot lower {type(value).__name__} into a transaction argument")


def to_cli_args(args: Iterable[TransactionArgument]) -> List[str]:
    return [a.to_cli_token() for a in args]


# ────────────────────────────────────────────────────────────────────────────
# Raw input decoding
# ────────────────────────────────────────────────────────────────────────────

def parse_layout(text: str) -> List[ArgKind]:
    """Parse ``"u8,u64,vector<u8>"`` into argument kinds."""
    parts = [p for p in (text or "").split(",") if p.strip()]
    return [ArgKind.parse(p) for p in parts]


class _ByteCursor:
    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)
        self._pos = 0

    def take(self, n: int) -> bytes:
        chunk = self._data[self._pos : self._pos + n]
        self._pos += len(chunk)
        return chunk

    def take_padded(self, n: int) -> bytes:
        return self.take(n).ljust(n, b"\x00")


def decode_args(data: bytes, layout: Sequence[ArgKind]) -> List[MoveValue]:
    """Consume ``data`` little-endian, one value per entry in ``layout``.

    bool takes the low bit of one byte; vector<u8> is a u16 length prefix
    followed by up to that many bytes.
    """
    cur = _ByteCursor(data)
    values: List[MoveValue] = []
    for kind in layout:
        kind = ArgKind(kind)
        if kind is ArgKind.BOOL:
            values.append(Bool(bool(cur.take_padded(1)[0] & 1)))
        elif kind is ArgKind.U8_VECTOR:
            length = int.from_bytes(cur.take_padded(2), "little")
            values.append(ByteVector(cur.take(length)))
        else:
            raw = int.from_bytes(cur.take_padded(kind.byte_width), "little")
            values.append(make_value(kind, raw))
    return values
