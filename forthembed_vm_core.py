#!/usr/bin/env python3
# forthembed_vm_core.py
#
# Noyau d'exécution de l'interpréteur embarqué :
# - scan : résolution des structures de contrôle par balayage du flux
#   (if -> else/then, do -> loop, : -> ;), avec compteur d'imbrication
# - Evaluator : boucle de dispatch sur une tranche [start, end) du flux,
#   contre un MachineState
#
# Chaque handler renvoie la prochaine position à exécuter : les sauts sont
# des valeurs de retour, jamais une modification du compteur en cours de route.

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

from forthembed_errors import (
    ForthArithmeticError,
    ForthError,
    ForthRuntimeError,
    NameResolutionError,
    NativeFunctionError,
    ProgramReleased,
    ReturnStackMismatch,
    StackOverflow,
    UnmatchedControlFlow,
)
from forthembed_lexer import Program, Token, TokenKind
from forthembed_state import (
    Binding,
    BindingKind,
    BranchTarget,
    LoopFrame,
    MachineState,
    ReturnAddress,
)

logger = logging.getLogger(__name__)

TRUE = -1
FALSE = 0


def flag(cond: bool) -> int:
    return TRUE if cond else FALSE


def scan(program: Program, from_position: int, nest: Optional[TokenKind], target: TokenKind,
         *, unnest: Optional[TokenKind] = None) -> Optional[int]:
    """
    Find the structural token matching the one at `from_position`.

    Scans forward from the next position. `nest` opens an inner level; the
    inner level is closed by `unnest` (the target itself by default). The
    target is returned only at level zero. Returns None when a `;` (end of
    the enclosing definition) or the end of the stream is reached first.
    """
    if unnest is None:
        unnest = target
    depth = 0
    for pos in range(from_position + 1, len(program)):
        kind = program[pos].kind
        if kind is target and depth == 0:
            return pos
        if nest is not None and kind is nest:
            depth += 1
        elif kind is unnest and depth > 0:
            depth -= 1
        elif kind is TokenKind.SEMICOLON:
            return None
    return None


def _trunc_div(a: int, b: int) -> int:
    if b == 0:
        raise ForthArithmeticError("division by zero")
    q = abs(a) // abs(b)
    return q if (a < 0) == (b < 0) else -q


class Evaluator:
    """
    Executes one slice of a program's token stream against a MachineState.

    Function calls inside the same program push a ReturnAddress and jump;
    the loop keeps running past `end` while such a call is pending. A `;`
    reached with no pending call ends the evaluation.
    """

    def __init__(self, state: MachineState, program: Program) -> None:
        self.state = state
        self.program = program
        self._pending_calls = 0
        self._dispatch: Dict[TokenKind, Callable[[int, Token], int]] = {
            TokenKind.DUP: self._op_dup,
            TokenKind.DROP: self._op_drop,
            TokenKind.SWAP: self._op_swap,
            TokenKind.OVER: self._op_over,
            TokenKind.ROT: self._op_rot,
            TokenKind.DOT: self._op_dot,
            TokenKind.DOTSTRING: self._op_dotstring,
            TokenKind.EMIT: self._op_emit,
            TokenKind.CR: self._op_cr,
            TokenKind.EQUAL: self._binary(lambda a, b: flag(a == b)),
            TokenKind.LESS: self._binary(lambda a, b: flag(a < b)),
            TokenKind.GREATER: self._binary(lambda a, b: flag(a > b)),
            TokenKind.INVERT: self._op_invert,
            TokenKind.AND: self._binary(lambda a, b: flag(a == TRUE and b == TRUE)),
            TokenKind.OR: self._binary(lambda a, b: flag(a == TRUE or b == TRUE)),
            TokenKind.PLUS: self._binary(lambda a, b: a + b),
            TokenKind.MINUS: self._binary(lambda a, b: a - b),
            TokenKind.MUL: self._binary(lambda a, b: a * b),
            TokenKind.DIV: self._binary(_trunc_div),
            TokenKind.IF: self._op_if,
            TokenKind.ELSE: self._op_else,
            TokenKind.THEN: self._op_nop,
            TokenKind.DO: self._op_do,
            TokenKind.INDEX: self._op_index,
            TokenKind.LOOP: self._op_loop,
            TokenKind.BEGIN: self._op_begin,
            TokenKind.UNTIL: self._op_until,
            TokenKind.ALLOT: self._op_allot,
            TokenKind.CELLS: self._op_nop,
            TokenKind.CONSTANT: self._op_constant,
            TokenKind.VARIABLE: self._op_variable,
            TokenKind.FETCH: self._op_fetch,
            TokenKind.STORE: self._op_store,
            TokenKind.COLON: self._op_colon,
            TokenKind.SEMICOLON: self._op_return,
            TokenKind.VALUE: self._op_value,
            TokenKind.STRING: self._op_nop,
            TokenKind.IDENT: self._op_ident,
        }

    # --- Main loop ------------------------------------------------

    def run(self, start: int = 0, end: Optional[int] = None) -> None:
        state = self.state
        state.check_alive()
        if self.program.released:
            raise ProgramReleased("program has been released")
        if end is None:
            end = len(self.program)
        base = len(state.rstack)
        pc = start
        try:
            while pc < end or self._pending_calls:
                if pc >= len(self.program):
                    raise ReturnStackMismatch("ran past the end of the program inside a call")
                tok = self.program[pc]
                if tok.kind is TokenKind.SEMICOLON and not self._pending_calls:
                    break
                pc = self._dispatch[tok.kind](pc, tok)
        except ForthRuntimeError as e:
            # pile de retour remise à l'état d'entrée, pile de données laissée telle quelle
            state.rstack.truncate(base)
            e.at(pc)
            raise
        except ForthError:
            state.rstack.truncate(base)
            raise

    def run_body(self, start: int) -> None:
        """Run the function body starting at `start`, up to its `;`."""
        end = scan(self.program, start - 1, None, TokenKind.SEMICOLON)
        if end is None:
            raise UnmatchedControlFlow("function body has no ';'", start)
        self.run(start, end)

    # --- Stack -------------------------------------------------------

    def _op_dup(self, pc: int, tok: Token) -> int:
        d = self.state.data
        d.push(d.peek())
        return pc + 1

    def _op_drop(self, pc: int, tok: Token) -> int:
        self.state.data.pop()
        return pc + 1

    def _op_swap(self, pc: int, tok: Token) -> int:
        d = self.state.data
        d.need(2)
        b = d.pop(); a = d.pop()
        d.push(b); d.push(a)
        return pc + 1

    def _op_over(self, pc: int, tok: Token) -> int:
        d = self.state.data
        d.push(d.peek(1))
        return pc + 1

    def _op_rot(self, pc: int, tok: Token) -> int:
        d = self.state.data
        d.need(3)
        c = d.pop(); b = d.pop(); a = d.pop()
        d.push(b); d.push(c); d.push(a)
        return pc + 1

    # --- Arithmetic / logic ------------------------------------------

    def _binary(self, fn: Callable[[int, int], int]) -> Callable[[int, Token], int]:
        def op(pc: int, tok: Token) -> int:
            d = self.state.data
            d.need(2)
            b = d.pop(); a = d.pop()
            d.push(fn(a, b))
            return pc + 1
        return op

    def _op_invert(self, pc: int, tok: Token) -> int:
        d = self.state.data
        d.push(~d.pop())
        return pc + 1

    def _op_value(self, pc: int, tok: Token) -> int:
        self.state.data.push(tok.value)  # type: ignore[arg-type]
        return pc + 1

    # --- I/O ---------------------------------------------------------

    def _op_dot(self, pc: int, tok: Token) -> int:
        self.state.emit(f"{self.state.data.pop()} ")
        return pc + 1

    def _op_dotstring(self, pc: int, tok: Token) -> int:
        self.state.emit(self.program[pc + 1].text)
        return pc + 2

    def _op_emit(self, pc: int, tok: Token) -> int:
        self.state.emit(chr(self.state.data.pop() & 0xFF))
        return pc + 1

    def _op_cr(self, pc: int, tok: Token) -> int:
        self.state.emit("\n")
        return pc + 1

    def _op_nop(self, pc: int, tok: Token) -> int:
        return pc + 1

    # --- Control flow ------------------------------------------------

    def _op_if(self, pc: int, tok: Token) -> int:
        then_pos = scan(self.program, pc, TokenKind.IF, TokenKind.THEN)
        if then_pos is None:
            raise UnmatchedControlFlow("'if' without 'then'", pc)
        else_pos = scan(self.program, pc, TokenKind.IF, TokenKind.ELSE, unnest=TokenKind.THEN)
        if else_pos is not None and else_pos > then_pos:
            else_pos = None
        cond = self.state.data.pop()
        if cond == TRUE:
            # seul 'else' consomme la cible : sans else, rien à empiler
            if else_pos is not None:
                self.state.rstack.push(BranchTarget(then_pos + 1))
            return pc + 1
        return (then_pos if else_pos is None else else_pos) + 1

    def _op_else(self, pc: int, tok: Token) -> int:
        return self.state.rstack.pop(BranchTarget).position

    def _op_do(self, pc: int, tok: Token) -> int:
        d = self.state.data
        d.need(2)
        top = d.pop()
        below = d.pop()
        # bornes dans n'importe quel ordre : `5 0 do` == `0 5 do`.
        # seul start == end saute le corps (start > end ne saute pas).
        start, end = min(top, below), max(top, below)
        if start < end:
            self.state.rstack.push(LoopFrame(pc + 1, end, start))
            return pc + 1
        loop_pos = scan(self.program, pc, TokenKind.DO, TokenKind.LOOP)
        if loop_pos is None:
            raise UnmatchedControlFlow("'do' without 'loop'", pc)
        return loop_pos + 1

    def _op_loop(self, pc: int, tok: Token) -> int:
        frame = self.state.rstack.pop(LoopFrame).advanced()
        if frame.index < frame.end:
            self.state.rstack.push(frame)
            return frame.body
        return pc + 1

    def _op_index(self, pc: int, tok: Token) -> int:
        self.state.data.push(self.state.rstack.innermost_loop().index)
        return pc + 1

    def _op_begin(self, pc: int, tok: Token) -> int:
        self.state.rstack.push(BranchTarget(pc))
        return pc + 1

    def _op_until(self, pc: int, tok: Token) -> int:
        cond = self.state.data.pop()
        target = self.state.rstack.pop(BranchTarget)
        if cond == TRUE:
            return target.position
        return pc + 1

    # --- Definitions & memory ----------------------------------------

    def _name_after(self, pc: int) -> str:
        return self.program[pc + 1].name

    def _op_constant(self, pc: int, tok: Token) -> int:
        name = self._name_after(pc)
        value = self.state.data.pop()
        self.state.dictionary.define(name, BindingKind.CONSTANT, value)
        return pc + 2

    def _op_variable(self, pc: int, tok: Token) -> int:
        name = self._name_after(pc)
        self.state.dictionary.ensure_room(name)
        addr = self.state.memory.allot(1)
        self.state.dictionary.define(name, BindingKind.VARIABLE, addr)
        return pc + 2

    def _op_allot(self, pc: int, tok: Token) -> int:
        self.state.memory.allot(self.state.data.pop())
        return pc + 1

    def _op_fetch(self, pc: int, tok: Token) -> int:
        d = self.state.data
        d.push(self.state.memory.fetch(d.pop()))
        return pc + 1

    def _op_store(self, pc: int, tok: Token) -> int:
        d = self.state.data
        d.need(2)
        addr = d.pop()
        value = d.pop()
        self.state.memory.store(addr, value)
        return pc + 1

    def _op_colon(self, pc: int, tok: Token) -> int:
        name = self._name_after(pc)
        end = scan(self.program, pc, None, TokenKind.SEMICOLON)
        if end is None:
            raise UnmatchedControlFlow(f"definition of {name!r} has no ';'", pc)
        self.state.dictionary.define(name, BindingKind.FUNCTION, pc + 2, self.program)
        return end + 1

    # --- Calls ---------------------------------------------------------

    def _op_return(self, pc: int, tok: Token) -> int:
        ret = self.state.rstack.pop(ReturnAddress)
        self._pending_calls -= 1
        return ret.position

    def _op_ident(self, pc: int, tok: Token) -> int:
        name = tok.name
        b = self.state.dictionary.find(name)
        if b is None:
            raise NameResolutionError(f"unknown word {name!r}")
        if b.kind in (BindingKind.CONSTANT, BindingKind.VARIABLE):
            self.state.data.push(b.payload)
            return pc + 1
        if b.kind is BindingKind.FUNCTION:
            if b.program is None or b.program is self.program:
                self.state.rstack.push(ReturnAddress(pc + 1))
                self._pending_calls += 1
                return b.payload
            # appel inter-programmes : même cadre de retour, même capacité
            rstack = self.state.rstack
            depth = len(rstack)
            rstack.push(ReturnAddress(pc + 1))
            try:
                call_function(self.state, b)
            except RecursionError as exc:
                raise StackOverflow(f"call nesting too deep in {name!r}") from exc
            finally:
                rstack.truncate(depth)
            return pc + 1
        call_native(self.state, b)
        return pc + 1


def call_native(state: MachineState, binding: Binding) -> None:
    """Invoke a host callback; non-Forth exceptions become NativeFunctionError."""
    func = state.natives[binding.payload]
    try:
        func(state)
    except ForthError:
        raise
    except Exception as exc:
        raise NativeFunctionError(f"native {binding.name!r} failed: {exc}") from exc


def call_function(state: MachineState, binding: Binding) -> None:
    """Run a function binding's body in its own program (re-entrant)."""
    if binding.program is None:
        raise ForthError(f"{binding.name!r} has no program attached")
    if binding.program.released:
        raise ProgramReleased(f"program defining {binding.name!r} has been released")
    Evaluator(state, binding.program).run_body(binding.payload)
