#!/usr/bin/env python3
# forthembed_errors.py
#
# Taxonomie des erreurs de l'interpréteur embarqué :
# - erreurs de compilation (mot invalide, structure non fermée)
# - erreurs d'exécution (pile, mémoire, dictionnaire, arithmétique)
# Toutes dérivent de ForthError pour que le host puisse les attraper en bloc.

from __future__ import annotations

from typing import Optional


class ForthError(RuntimeError): ...


# ------------------------------------------------------------------
# Compilation
# ------------------------------------------------------------------

class LexicalError(ForthError):
    """A word that no classifier accepts."""

    def __init__(self, word: str, index: int, line: int) -> None:
        super().__init__(f"invalid word {word!r} (word #{index}, line {line})")
        self.word = word
        self.index = index
        self.line = line


class CompileError(ForthError):
    def __init__(self, message: str, position: Optional[int] = None) -> None:
        if position is not None:
            message = f"{message} (at token {position})"
        super().__init__(message)
        self.position = position


class UnmatchedControlFlow(CompileError): ...


# ------------------------------------------------------------------
# Exécution
# ------------------------------------------------------------------

class ForthRuntimeError(ForthError):
    """Base of errors raised while evaluating; `position` is the failing token."""

    position: Optional[int] = None

    def at(self, position: int) -> "ForthRuntimeError":
        if self.position is None:
            self.position = position
        return self

    def __str__(self) -> str:
        msg = super().__str__()
        if self.position is None:
            return msg
        return f"{msg} (at token {self.position})"


class NameResolutionError(ForthRuntimeError): ...
class StackUnderflow(ForthRuntimeError): ...
class StackOverflow(ForthRuntimeError): ...
class MemoryOutOfBounds(ForthRuntimeError): ...
class ReturnStackMismatch(ForthRuntimeError): ...
class NativeFunctionError(ForthRuntimeError): ...
class ProgramReleased(ForthRuntimeError): ...


class ForthArithmeticError(ForthRuntimeError, ArithmeticError): ...
