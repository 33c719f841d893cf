#!/usr/bin/env python3
# forthembed_state.py
#
# État machine de l'interpréteur embarqué :
# - pile de données bornée (entiers machine)
# - pile de retour bornée, à frames typées (ReturnAddress / LoopFrame / BranchTarget)
# - dictionnaire append-only (premier nom trouvé = gagnant)
# - mémoire linéaire d'entiers + pointeur haut (high-water)
# - table des fonctions natives du host
# Toutes les capacités sont fixées à la création.

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterator, List, Optional, TextIO, Type, TypeVar, Union

from forthembed_errors import (
    ForthError,
    MemoryOutOfBounds,
    ReturnStackMismatch,
    StackOverflow,
    StackUnderflow,
)
from forthembed_lexer import to_cell

if TYPE_CHECKING:
    from forthembed_lexer import Program

logger = logging.getLogger(__name__)

NativeFunction = Callable[["MachineState"], None]


@dataclass(frozen=True)
class Capacities:
    data: int = 50
    memory: int = 1000
    rstack: int = 40
    dictionary: int = 10
    natives: int = 10


DEFAULT_CAPACITIES = Capacities()


# ------------------------------------------------------------------
# Data stack
# ------------------------------------------------------------------

class DataStack:
    def __init__(self, capacity: int) -> None:
        if capacity < 0:
            raise ValueError("data stack capacity must be >= 0")
        self.capacity = capacity
        self._items: List[int] = []

    def push(self, value: int) -> None:
        if len(self._items) >= self.capacity:
            raise StackOverflow(f"data stack overflow (capacity {self.capacity})")
        self._items.append(to_cell(value))

    def pop(self) -> int:
        if not self._items:
            raise StackUnderflow("data stack underflow")
        return self._items.pop()

    def peek(self, depth: int = 0) -> int:
        self.need(depth + 1)
        return self._items[-1 - depth]

    def need(self, n: int) -> None:
        if len(self._items) < n:
            raise StackUnderflow(f"data stack underflow: need {n}, have {len(self._items)}")

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[int]:
        return iter(self._items)

    def items(self) -> List[int]:
        """Bottom-to-top copy."""
        return list(self._items)


# ------------------------------------------------------------------
# Return stack (frames typées)
# ------------------------------------------------------------------

@dataclass(frozen=True)
class ReturnAddress:
    position: int

    def __str__(self) -> str:
        return f"ret:{self.position}"


@dataclass(frozen=True)
class BranchTarget:
    position: int

    def __str__(self) -> str:
        return f"br:{self.position}"


@dataclass(frozen=True)
class LoopFrame:
    body: int
    end: int
    index: int

    def advanced(self) -> "LoopFrame":
        return LoopFrame(self.body, self.end, self.index + 1)

    def __str__(self) -> str:
        return f"loop:{self.index}<{self.end}@{self.body}"


Frame = Union[ReturnAddress, BranchTarget, LoopFrame]
F = TypeVar("F", ReturnAddress, BranchTarget, LoopFrame)


class ReturnStack:
    def __init__(self, capacity: int) -> None:
        if capacity < 0:
            raise ValueError("return stack capacity must be >= 0")
        self.capacity = capacity
        self._frames: List[Frame] = []

    def push(self, frame: Frame) -> None:
        if len(self._frames) >= self.capacity:
            raise StackOverflow(f"return stack overflow (capacity {self.capacity})")
        self._frames.append(frame)

    def pop(self, expected: Type[F]) -> F:
        """Pop the top frame, which must be of type `expected`."""
        if not self._frames:
            raise StackUnderflow(f"return stack underflow (expected {expected.__name__})")
        top = self._frames[-1]
        if not isinstance(top, expected):
            raise ReturnStackMismatch(f"return stack holds {type(top).__name__}, expected {expected.__name__}")
        return self._frames.pop()  # type: ignore[return-value]

    def innermost_loop(self) -> LoopFrame:
        for frame in reversed(self._frames):
            if isinstance(frame, LoopFrame):
                return frame
        raise ReturnStackMismatch("'i' outside a do ... loop")

    def truncate(self, depth: int) -> None:
        del self._frames[depth:]

    def clear(self) -> None:
        self._frames.clear()

    def __len__(self) -> int:
        return len(self._frames)

    def __iter__(self) -> Iterator[Frame]:
        return iter(self._frames)


# ------------------------------------------------------------------
# Dictionary
# ------------------------------------------------------------------

class BindingKind(Enum):
    CONSTANT = "constant"
    VARIABLE = "variable"
    FUNCTION = "function"
    NATIVE   = "native"


@dataclass(frozen=True)
class Binding:
    name: str
    kind: BindingKind
    payload: int
    # programme qui contient le corps (FUNCTION uniquement)
    program: Optional["Program"] = None

    def describe(self) -> str:
        if self.kind is BindingKind.CONSTANT:
            return f"constant {self.name} (={self.payload})"
        if self.kind is BindingKind.VARIABLE:
            return f"variable {self.name} (cell {self.payload})"
        if self.kind is BindingKind.NATIVE:
            return f"native {self.name} (slot {self.payload})"
        return f"function {self.name} (body at {self.payload})"


class Dictionary:
    """Append-only symbol table. Lookup returns the first binding with the name."""

    def __init__(self, capacity: int) -> None:
        if capacity < 0:
            raise ValueError("dictionary capacity must be >= 0")
        self.capacity = capacity
        self._entries: List[Binding] = []

    def ensure_room(self, name: str) -> None:
        if len(self._entries) >= self.capacity:
            raise MemoryOutOfBounds(f"dictionary full (capacity {self.capacity}) defining {name!r}")

    def define(self, name: str, kind: BindingKind, payload: int, program: Optional["Program"] = None) -> Binding:
        self.ensure_room(name)
        b = Binding(str(name), kind, payload, program)
        self._entries.append(b)
        logger.debug("define %s", b.describe())
        return b

    def find(self, name: str) -> Optional[Binding]:
        for b in self._entries:
            if b.name == name:
                return b
        return None

    def names(self) -> List[str]:
        return [b.name for b in self._entries]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Binding]:
        return iter(self._entries)


# ------------------------------------------------------------------
# Linear memory
# ------------------------------------------------------------------

class Memory:
    def __init__(self, capacity: int) -> None:
        if capacity < 0:
            raise ValueError("memory capacity must be >= 0")
        self.capacity = capacity
        self.cells: List[int] = [0] * capacity
        self.top: int = 0

    def allot(self, n: int) -> int:
        """Move the high-water mark by n cells; returns the old mark."""
        here = self.top
        new_top = here + n
        if not 0 <= new_top <= self.capacity:
            raise MemoryOutOfBounds(f"allot {n}: high-water {new_top} outside 0..{self.capacity}")
        self.top = new_top
        return here

    def _check(self, addr: int) -> None:
        if not 0 <= addr < self.top:
            raise MemoryOutOfBounds(f"address {addr} outside allocated memory 0..{self.top - 1}")

    def fetch(self, addr: int) -> int:
        self._check(addr)
        return self.cells[addr]

    def store(self, addr: int, value: int) -> None:
        self._check(addr)
        self.cells[addr] = to_cell(value)

    def clear(self) -> None:
        self.cells = []
        self.capacity = 0
        self.top = 0


# ------------------------------------------------------------------
# Native functions
# ------------------------------------------------------------------

class NativeTable:
    def __init__(self, capacity: int) -> None:
        if capacity < 0:
            raise ValueError("native table capacity must be >= 0")
        self.capacity = capacity
        self._funcs: List[NativeFunction] = []

    def register(self, func: NativeFunction) -> int:
        if not callable(func):
            raise TypeError("native function must be callable")
        if len(self._funcs) >= self.capacity:
            raise MemoryOutOfBounds(f"native table full (capacity {self.capacity})")
        self._funcs.append(func)
        return len(self._funcs) - 1

    def __getitem__(self, index: int) -> NativeFunction:
        if not 0 <= index < len(self._funcs):
            raise MemoryOutOfBounds(f"native slot {index} not registered")
        return self._funcs[index]

    def clear(self) -> None:
        self._funcs.clear()

    def __len__(self) -> int:
        return len(self._funcs)


# ------------------------------------------------------------------
# MachineState
# ------------------------------------------------------------------

class MachineState:
    """
    Runtime of one interpreter instance. Not thread-safe: one state must be
    driven by one thread at a time.
    """

    def __init__(self, capacities: Capacities = DEFAULT_CAPACITIES, *, out: Optional[TextIO] = None) -> None:
        self.capacities = capacities
        self.data = DataStack(capacities.data)
        self.rstack = ReturnStack(capacities.rstack)
        self.dictionary = Dictionary(capacities.dictionary)
        self.memory = Memory(capacities.memory)
        self.natives = NativeTable(capacities.natives)
        # None -> sys.stdout au moment de l'écriture
        self.out: Optional[TextIO] = out
        self.released = False

    # ----------------- IO -----------------

    def emit(self, text: str) -> None:
        """Point central de sortie texte."""
        out = self.out if self.out is not None else sys.stdout
        out.write(text)

    # ----------------- stack helpers for native callbacks -----------------

    def push(self, value: Any) -> None:
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"only integers can be pushed, got {type(value).__name__}")
        self.data.push(value)

    def pop(self) -> int:
        return self.data.pop()

    def check_alive(self) -> None:
        if self.released:
            raise ForthError("machine state has been released")

    def release(self) -> None:
        self.data.clear()
        self.rstack.clear()
        self.dictionary.clear()
        self.memory.clear()
        self.natives.clear()
        self.released = True

    def __repr__(self) -> str:
        if self.released:
            return "<MachineState released>"
        return (f"<MachineState data={len(self.data)}/{self.data.capacity} "
                f"rstack={len(self.rstack)}/{self.rstack.capacity} "
                f"dict={len(self.dictionary)}/{self.dictionary.capacity} "
                f"here={self.memory.top}/{self.memory.capacity}>")
