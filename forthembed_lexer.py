#!/usr/bin/env python3
# forthembed_lexer.py
#
# Compilateur (tokenizer) de l'interpréteur embarqué :
# - vocabulaire fixe (mots-clés / opérateurs)
# - classifieur lexical : un mot -> un Token, par ordre de priorité
# - compile_source : texte -> Program (flux d'instructions immuable)
# - vérification de structure (: ; if else then do loop begin until)

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Union

from forthembed_errors import CompileError, LexicalError, UnmatchedControlFlow

logger = logging.getLogger(__name__)


class TokenKind(Enum):
    DUP       = "dup"
    DROP      = "drop"
    SWAP      = "swap"
    OVER      = "over"
    ROT       = "rot"
    DOT       = "."
    DOTSTRING = '."'
    EMIT      = "emit"
    CR        = "cr"

    EQUAL     = "="
    LESS      = "<"
    GREATER   = ">"
    INVERT    = "invert"
    AND       = "and"
    OR        = "or"

    PLUS      = "+"
    MINUS     = "-"
    MUL       = "*"
    DIV       = "/"

    IF        = "if"
    ELSE      = "else"
    THEN      = "then"
    DO        = "do"
    INDEX     = "i"
    LOOP      = "loop"
    BEGIN     = "begin"
    UNTIL     = "until"

    ALLOT     = "allot"
    CELLS     = "cells"
    CONSTANT  = "constant"
    VARIABLE  = "variable"
    FETCH     = "@"
    STORE     = "!"
    COLON     = ":"
    SEMICOLON = ";"

    # must stay last: not part of the keyword vocabulary
    VALUE     = "<value>"
    STRING    = "<string>"
    IDENT     = "<ident>"

    def is_keyword(self) -> bool:
        return self not in (TokenKind.VALUE, TokenKind.STRING, TokenKind.IDENT)


# Vocabulaire dans l'ordre de la table : c'est aussi l'ordre de priorité.
VOCABULARY: Dict[str, TokenKind] = {k.value: k for k in TokenKind if k.is_keyword()}

CELL_BITS = 32
_CELL_MASK = (1 << CELL_BITS) - 1
_CELL_SIGN = 1 << (CELL_BITS - 1)


def to_cell(value: int) -> int:
    """Wrap a Python int to a signed machine cell."""
    value &= _CELL_MASK
    return value - (1 << CELL_BITS) if value & _CELL_SIGN else value


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    value: Union[int, str, None] = None

    @property
    def name(self) -> str:
        if self.kind is not TokenKind.IDENT:
            raise TypeError(f"{self.kind} has no name")
        return self.value  # type: ignore[return-value]

    @property
    def text(self) -> str:
        if self.kind is not TokenKind.STRING:
            raise TypeError(f"{self.kind} has no text")
        return self.value  # type: ignore[return-value]

    def owns_text(self) -> bool:
        return self.kind in (TokenKind.IDENT, TokenKind.STRING)

    def __str__(self) -> str:
        if self.kind is TokenKind.VALUE:
            return str(self.value)
        if self.kind is TokenKind.STRING:
            return f'{self.value}"'
        if self.kind is TokenKind.IDENT:
            return str(self.value)
        return self.kind.value


# ---- Classifieurs (ordre fixe) ----

_INTEGER_RE = re.compile(r"[+-]?[0-9]+")


def _classify_keyword(word: str) -> Optional[Token]:
    kind = VOCABULARY.get(word)
    return None if kind is None else Token(kind)


def _classify_integer(word: str) -> Optional[Token]:
    if not _INTEGER_RE.fullmatch(word):
        return None
    return Token(TokenKind.VALUE, to_cell(int(word, 10)))


def _classify_string(word: str) -> Optional[Token]:
    if not word.endswith('"'):
        return None
    return Token(TokenKind.STRING, word[:-1])


def _classify_identifier(word: str) -> Optional[Token]:
    if '"' in word or "\\" in word:
        return None
    return Token(TokenKind.IDENT, word)


CLASSIFIERS: List[Callable[[str], Optional[Token]]] = [
    _classify_keyword,
    _classify_integer,
    _classify_string,
    _classify_identifier,
]


def classify_word(word: str) -> Optional[Token]:
    """Return the token for one whitespace-free word, or None if it is invalid."""
    for classify in CLASSIFIERS:
        tok = classify(word)
        if tok is not None:
            return tok
    return None


# ---- Découpage ----

_SPLIT_RE = re.compile(r"[^ \t\n\r]+")


def iter_words(source: str) -> Iterator[Tuple[str, int]]:
    """Yield (word, line) pairs in encounter order."""
    for lineno, line in enumerate(source.split("\n"), start=1):
        for m in _SPLIT_RE.finditer(line):
            yield m.group(0), lineno


# ---- Program ----

class Program:
    """
    Compiled program: an immutable, fixed-length stream of tokens.

    The program owns the text of its identifier and string tokens;
    `release()` drops them. Indexing outside the stream is a programming
    error and raises IndexError.
    """

    def __init__(self, tokens: List[Token], source: str = "") -> None:
        self._tokens: Tuple[Token, ...] = tuple(tokens)
        self.source = source
        self.released = False

    def __len__(self) -> int:
        return len(self._tokens)

    def __getitem__(self, position: int) -> Token:
        if not 0 <= position < len(self._tokens):
            raise IndexError(f"token position {position} out of range 0..{len(self._tokens) - 1}")
        return self._tokens[position]

    def __iter__(self) -> Iterator[Token]:
        return iter(self._tokens)

    @property
    def tokens(self) -> Tuple[Token, ...]:
        return self._tokens

    def release(self) -> int:
        """Drop the token stream. Returns how many owned texts were released."""
        if self.released:
            return 0
        owned = sum(1 for t in self._tokens if t.owns_text())
        self._tokens = ()
        self.source = ""
        self.released = True
        return owned

    def __repr__(self) -> str:
        state = "released" if self.released else f"{len(self._tokens)} tokens"
        return f"<Program {state}>"


# ---- Compilation ----

_CONTROL_OPEN = {TokenKind.IF: "if", TokenKind.DO: "do", TokenKind.BEGIN: "begin"}
_CONTROL_CLOSE = {TokenKind.THEN: ("if", "else"), TokenKind.LOOP: ("do",), TokenKind.UNTIL: ("begin",)}


def check_structure(tokens: List[Token]) -> None:
    """
    Reject malformed definitions and unbalanced control flow before anything runs.
    Control-flow words are only accepted inside a `:` definition.
    """
    in_def: Optional[int] = None
    ctrl: List[Tuple[str, int]] = []
    n = len(tokens)

    def following(pos: int, kind: TokenKind) -> bool:
        return pos + 1 < n and tokens[pos + 1].kind is kind

    for pos, tok in enumerate(tokens):
        k = tok.kind
        if k is TokenKind.COLON:
            if in_def is not None:
                raise UnmatchedControlFlow(f"':' inside the definition opened at {in_def}", pos)
            if not following(pos, TokenKind.IDENT):
                raise CompileError("':' must be followed by a name", pos)
            in_def = pos
        elif k is TokenKind.SEMICOLON:
            if in_def is None:
                raise UnmatchedControlFlow("';' without ':'", pos)
            if ctrl:
                word, opened = ctrl[-1]
                raise UnmatchedControlFlow(f"'{word}' opened at {opened} is not closed", pos)
            in_def = None
        elif k in (TokenKind.CONSTANT, TokenKind.VARIABLE):
            if not following(pos, TokenKind.IDENT):
                raise CompileError(f"'{k.value}' must be followed by a name", pos)
        elif k is TokenKind.DOTSTRING:
            if not following(pos, TokenKind.STRING):
                raise CompileError("'.\"' must be followed by a string literal", pos)
        elif k in _CONTROL_OPEN or k in _CONTROL_CLOSE or k is TokenKind.ELSE:
            if in_def is None:
                raise UnmatchedControlFlow(f"'{k.value}' outside a ':' definition", pos)
            if k in _CONTROL_OPEN:
                ctrl.append((_CONTROL_OPEN[k], pos))
            elif k is TokenKind.ELSE:
                if not ctrl or ctrl[-1][0] != "if":
                    raise UnmatchedControlFlow("'else' without 'if'", pos)
                ctrl[-1] = ("else", pos)
            else:
                if not ctrl or ctrl[-1][0] not in _CONTROL_CLOSE[k]:
                    raise UnmatchedControlFlow(f"'{k.value}' without '{_CONTROL_CLOSE[k][0]}'", pos)
                ctrl.pop()

    if in_def is not None:
        raise UnmatchedControlFlow(f"definition opened at {in_def} has no ';'", n)


def compile_source(source: str) -> Program:
    """Tokenize `source` and check its structure. Raises LexicalError / CompileError."""
    tokens: List[Token] = []
    for index, (word, line) in enumerate(iter_words(source)):
        tok = classify_word(word)
        if tok is None:
            raise LexicalError(word, index, line)
        tokens.append(tok)
    check_structure(tokens)
    logger.debug("compiled %d tokens", len(tokens))
    return Program(tokens, source)
