from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Union


class BFError(Exception):
    """Base class for interpreter errors."""

    kind = "BFError"

    def __init__(
        self,
        message: str,
        *,
        location: Any = None,  # SourceLocation | None
        rewrite_rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rewrite_rule = rewrite_rule

    def __str__(self) -> str:
        if self.location is None:
            return self.message
        return f"{self.message} at {self.location}"


class BFParseError(BFError):
    """Raised when validation fails."""

    kind = "ParseError"


@dataclass(frozen=True)
class Token:
    type: str
    value: str
    line: int
    column: int


COMMANDS: Dict[str, str] = {
    ">": "INC_PTR",
    "<": "DEC_PTR",
    "+": "INC_CELL",
    "-": "DEC_CELL",
    ".": "OUTPUT",
    ",": "INPUT",
    "[": "LOOP_START",
    "]": "LOOP_END",
}

EXTENSION_COMMAND = "EXT"


def decode_source(source: Union[str, bytes, bytearray]) -> str:
    if isinstance(source, (bytes, bytearray)):
        # Undecodable bytes survive as surrogates; they can only be comments.
        return bytes(source).decode("utf-8", errors="surrogateescape")
    return source


class Lexer:
    def __init__(
        self,
        text: Union[str, bytes, bytearray],
        filename: str,
        *,
        extra_commands: Optional[Iterable[str]] = None,
    ) -> None:
        self.text = decode_source(text)
        self.filename = filename
        self.extra_commands = frozenset(extra_commands or ())
        for ch in self.extra_commands:
            if len(ch) != 1:
                raise BFParseError(f"Extension command must be a single character, got {ch!r}")
            if ch in COMMANDS:
                raise BFParseError(f"Extension command {ch!r} shadows a core command")
        self.index = 0
        self.line = 1
        self.column = 1

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        _advance = self._advance
        commands = COMMANDS
        extra = self.extra_commands
        text = self.text
        n = len(text)

        while self.index < n:
            ch: str = text[self.index]
            kind = commands.get(ch)
            if kind is not None:
                tokens_append(Token(kind, ch, self.line, self.column))
            elif ch in extra:
                tokens_append(Token(EXTENSION_COMMAND, ch, self.line, self.column))
            # Anything else is commentary, but it still moves the position.
            _advance()
        return tokens

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1
