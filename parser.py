from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Union

from lexer import BFParseError, Lexer, Token


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str = field(default="", compare=False)

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.column}"


@dataclass(frozen=True)
class Command:
    kind: str
    char: str
    location: SourceLocation


@dataclass(frozen=True)
class Program:
    location: SourceLocation
    commands: List[Command]
    # LOOP_START index <-> LOOP_END index, both directions.
    jumps: Dict[int, int]


class UnmatchedOpenBracket(BFParseError):
    """A '[' with no matching ']'."""

    kind = "UnmatchedOpenBracket"
    side = "open"

    def __init__(self, location: SourceLocation) -> None:
        super().__init__("Unmatched '[' (no closing ']')", location=location, rewrite_rule="LOOP_START")


class UnmatchedCloseBracket(BFParseError):
    """A ']' with no matching '['."""

    kind = "UnmatchedCloseBracket"
    side = "close"

    def __init__(self, location: SourceLocation) -> None:
        super().__init__("Unmatched ']' (no opening '[')", location=location, rewrite_rule="LOOP_END")


class Parser:
    def __init__(self, tokens: List[Token], filename: str, source_lines: List[str]):
        self.tokens = tokens
        self.filename = filename
        self.source_lines = source_lines

    def parse(self) -> Program:
        commands: List[Command] = []
        jumps: Dict[int, int] = {}
        # Indices into `commands`, not into the raw source.
        pending: List[int] = []

        for token in self.tokens:
            index = len(commands)
            command = Command(kind=token.type, char=token.value, location=self._location_from_token(token))
            if token.type == "LOOP_START":
                pending.append(index)
            elif token.type == "LOOP_END":
                if not pending:
                    raise UnmatchedCloseBracket(command.location)
                start = pending.pop()
                jumps[start] = index
                jumps[index] = start
            commands.append(command)

        if pending:
            # Report the outermost offender, which is the earliest in the source.
            raise UnmatchedOpenBracket(commands[pending[0]].location)

        return Program(location=self._location(1, 1), commands=commands, jumps=jumps)

    def _location_from_token(self, token: Token) -> SourceLocation:
        return self._location(token.line, token.column)

    def _location(self, line: int, column: int) -> SourceLocation:
        statement = ""
        if 0 < line <= len(self.source_lines):
            statement = self.source_lines[line - 1].rstrip("\r")
        return SourceLocation(file=self.filename, line=line, column=column, statement=statement)


def source_lines_of(text: str) -> List[str]:
    # Only "\n" starts a new line; str.splitlines() would also split on "\r", "\f" and friends.
    return text.split("\n")


def validate(
    source: Union[str, bytes, bytearray],
    filename: str = "<string>",
    *,
    extra_commands: Optional[Iterable[str]] = None,
) -> Program:
    lexer = Lexer(source, filename, extra_commands=extra_commands)
    tokens = lexer.tokenize()
    parser = Parser(tokens, filename, source_lines_of(lexer.text))
    return parser.parse()
