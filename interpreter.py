from __future__ import annotations
import json
import os
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Optional, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from lexer import BFError, BFParseError, Lexer
from extensions import RuntimeServices, StepContext, build_default_services
from parser import Command, Parser, Program, SourceLocation, source_lines_of


InputData = Union[None, str, bytes, bytearray, Iterable[int]]

TAPE_WINDOW_RADIUS = 8


class BFRuntimeError(BFError):
    """Raised for runtime faults."""

    kind = "RuntimeError"

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rewrite_rule: Optional[str] = None,
    ) -> None:
        super().__init__(message, location=location, rewrite_rule=rewrite_rule)
        self.step_index: Optional[int] = None


class PointerUnderflow(BFRuntimeError):
    kind = "PointerUnderflow"

    def __init__(self, location: SourceLocation) -> None:
        super().__init__("Data pointer moved left of cell 0", location=location, rewrite_rule="DEC_PTR")


class InputExhausted(BFRuntimeError):
    kind = "InputExhausted"

    def __init__(self, location: SourceLocation) -> None:
        super().__init__("Input requested but no input bytes remain", location=location, rewrite_rule="INPUT")


class OutputNotUtf8(BFRuntimeError):
    kind = "OutputNotUtf8"

    def __init__(self, location: SourceLocation, offset: int, reason: str) -> None:
        super().__init__(
            f"Output is not valid UTF-8 (byte {offset}: {reason})",
            location=location,
            rewrite_rule="OUTPUT",
        )
        self.offset = offset


class Tape:
    """Byte cells that grow one at a time to the right, never ahead of use."""

    def __init__(self) -> None:
        self.cells = bytearray(1)

    def __len__(self) -> int:
        return len(self.cells)

    def __getitem__(self, index: int) -> int:
        return self.cells[index]

    def snapshot(self) -> NDArray[np.uint8]:
        return np.frombuffer(bytes(self.cells), dtype=np.uint8)

    def window(self, pointer: int, radius: int = TAPE_WINDOW_RADIUS) -> Tuple[int, NDArray[np.uint8]]:
        start = max(0, pointer - radius)
        return start, self.snapshot()[start:pointer + radius + 1]


def normalize_input(data: InputData) -> bytes:
    if data is None:
        return b""
    if isinstance(data, str):
        return data.encode("utf-8")
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    try:
        return bytes(list(data))
    except (TypeError, ValueError) as exc:
        raise BFRuntimeError(f"Input must be bytes in range 0..255: {exc}", rewrite_rule="INPUT") from exc


@dataclass
class ExecutionContext:
    input_data: bytes = b""
    tape: Tape = field(default_factory=Tape)
    pointer: int = 0
    ip: int = 0
    input_cursor: int = 0
    output: bytearray = field(default_factory=bytearray)
    # Command index that produced each output byte, for OutputNotUtf8 locations.
    output_origins: List[int] = field(default_factory=list)
    steps: int = 0

    @property
    def cell(self) -> int:
        return self.tape.cells[self.pointer]

    def read_byte(self) -> Optional[int]:
        if self.input_cursor >= len(self.input_data):
            return None
        value = self.input_data[self.input_cursor]
        self.input_cursor += 1
        return value

    def write(self, data: bytes, origin: int) -> None:
        self.output.extend(data)
        self.output_origins.extend([origin] * len(data))

    def rewind(self) -> None:
        """Prepare for another program while keeping tape, pointer and input.

        Step numbering starts again from zero for each program.
        """
        self.ip = 0
        self.steps = 0
        self.output = bytearray()
        self.output_origins = []


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    source_location: Optional[SourceLocation]
    command: Optional[str]
    pointer: int
    cell: int


class StateLogger:
    def __init__(self, verbose: bool, limit: int = 64) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=limit)

    def record(
        self,
        *,
        step_index: int,
        location: Optional[SourceLocation],
        command: Optional[str],
        pointer: int,
        cell: int,
    ) -> StateEntry:
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            source_location=location,
            command=command,
            pointer=pointer,
            cell=cell,
        )
        self.entries.append(entry)
        return entry

    def last(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None


class Interpreter:
    def __init__(
        self,
        *,
        source: Union[str, bytes, bytearray],
        filename: str = "<string>",
        verbose: bool = False,
        services: Optional[RuntimeServices] = None,
        trace_limit: int = 64,
    ) -> None:
        self.source = source
        self.filename = filename if filename.startswith("<") else os.path.abspath(filename)
        self.verbose = verbose
        self.services = services or build_default_services()
        self.hook_registry = self.services.hook_registry
        self.logger = StateLogger(verbose=verbose, limit=trace_limit)
        self.program: Optional[Program] = None
        self.context: Optional[ExecutionContext] = None

    def parse(self) -> Program:
        lexer = Lexer(self.source, self.filename, extra_commands=self.services.command_chars())
        tokens = lexer.tokenize()
        parser = Parser(tokens, self.filename, source_lines_of(lexer.text))
        self.program = parser.parse()
        return self.program

    def new_context(self, input_data: InputData = None) -> ExecutionContext:
        return ExecutionContext(input_data=normalize_input(input_data))

    def run(self, input_data: InputData = None) -> str:
        program = self.parse()
        return self.execute_program(program, self.new_context(input_data))

    def execute_program(self, program: Program, context: ExecutionContext) -> str:
        self.program = program
        self.context = context
        self._emit_event("program_start", self, program, context)
        try:
            self._execute(program, context)
            text = self._decode_output(program, context)
        except BFRuntimeError as error:
            if error.step_index is None:
                error.step_index = context.steps
            self._emit_event("on_error", self, error)
            raise
        except Exception as exc:
            self._emit_event("on_error", self, exc)
            # Unexpected Python-level failures still get a location for the traceback.
            loc = None
            if context.ip < len(program.commands):
                loc = program.commands[context.ip].location
            wrapped = BFRuntimeError(f"Internal interpreter error: {exc}", location=loc, rewrite_rule="internal")
            wrapped.step_index = context.steps
            raise wrapped from exc
        self._emit_event("program_end", self, context)
        return text

    def _execute(self, program: Program, ctx: ExecutionContext) -> None:
        commands: List[Command] = program.commands
        jumps: Dict[int, int] = program.jumps
        cells = ctx.tape.cells
        n = len(commands)
        ext_commands = self.services.commands
        step_rules = self.hook_registry.has_step_rules
        verbose = self.verbose

        while ctx.ip < n:
            ip = ctx.ip
            command = commands[ip]
            kind = command.kind
            next_ip = ip + 1

            if kind == "INC_CELL":
                cells[ctx.pointer] = (cells[ctx.pointer] + 1) & 0xFF
            elif kind == "DEC_CELL":
                cells[ctx.pointer] = (cells[ctx.pointer] - 1) & 0xFF
            elif kind == "INC_PTR":
                ctx.pointer += 1
                if ctx.pointer == len(cells):
                    cells.append(0)
            elif kind == "DEC_PTR":
                if ctx.pointer == 0:
                    raise PointerUnderflow(command.location)
                ctx.pointer -= 1
            elif kind == "LOOP_START":
                if cells[ctx.pointer] == 0:
                    next_ip = jumps[ip] + 1
            elif kind == "LOOP_END":
                if cells[ctx.pointer] != 0:
                    next_ip = jumps[ip] + 1
            elif kind == "OUTPUT":
                ctx.output.append(cells[ctx.pointer])
                ctx.output_origins.append(ip)
            elif kind == "INPUT":
                value = ctx.read_byte()
                if value is None:
                    raise InputExhausted(command.location)
                cells[ctx.pointer] = value
            else:
                self._run_extension_command(ext_commands[command.char], ctx, command)
                # Extensions may move the pointer; keep the tape in step with it.
                while ctx.pointer >= len(cells):
                    cells.append(0)

            ctx.ip = next_ip
            ctx.steps += 1
            if verbose:
                self.logger.record(
                    step_index=ctx.steps,
                    location=command.location,
                    command=command.char,
                    pointer=ctx.pointer,
                    cell=cells[ctx.pointer],
                )
            if step_rules:
                self._after_step(ctx, ip, command)

    def _run_extension_command(self, spec: Any, ctx: ExecutionContext, command: Command) -> None:
        try:
            spec.impl(self, ctx, command)
        except BFRuntimeError:
            raise
        except Exception as exc:
            raise BFRuntimeError(
                f"Extension command {command.char!r} failed: {exc}",
                location=command.location,
                rewrite_rule="EXT",
            ) from exc
        if ctx.pointer < 0:
            raise PointerUnderflow(command.location)

    def _after_step(self, ctx: ExecutionContext, ip: int, command: Command) -> None:
        try:
            self.hook_registry.after_step(
                self,
                StepContext(
                    step_index=ctx.steps,
                    rule=command.kind,
                    location=command.location,
                    extra={"ip": ip, "pointer": ctx.pointer},
                ),
            )
        except BFRuntimeError:
            raise
        except Exception as exc:
            raise BFRuntimeError(
                f"Extension step rule failed: {exc}",
                location=command.location,
                rewrite_rule="EXT",
            ) from exc

    def _decode_output(self, program: Program, ctx: ExecutionContext) -> str:
        try:
            return ctx.output.decode("utf-8")
        except UnicodeDecodeError as exc:
            origin = ctx.output_origins[exc.start]
            raise OutputNotUtf8(program.commands[origin].location, exc.start, exc.reason)

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except BFRuntimeError:
            raise
        except Exception as exc:
            loc = None
            last = self.logger.last()
            if last is not None:
                loc = last.source_location
            raise BFRuntimeError(
                f"Extension hook '{event}' failed: {exc}",
                location=loc,
                rewrite_rule="EXT",
            ) from exc


def execute(
    source: Union[str, bytes, bytearray],
    input_data: InputData = None,
    *,
    filename: str = "<string>",
    services: Optional[RuntimeServices] = None,
    verbose: bool = False,
) -> str:
    """Validate and run ``source``, returning everything it printed.

    Raises a BFParseError subclass for structural defects and a
    BFRuntimeError subclass for the first runtime fault. A failed run never
    returns partial output.
    """
    interpreter = Interpreter(source=source, filename=filename, verbose=verbose, services=services)
    return interpreter.run(input_data)


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def format_text(self, error: BFError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        location = error.location
        if location is not None:
            lines.append(f"  File \"{location.file}\", line {location.line}, column {location.column}")
            if location.statement:
                lines.append(f"    {location.statement}")
                lines.append(f"    {_caret_prefix(location.statement, location.column)}^")
        else:
            lines.append("  <unknown location>")
        step_index = getattr(error, "step_index", None)
        if step_index is not None:
            lines.append(f"    Step: {step_index}  State id: s_{step_index:06d}")
        context = self.interpreter.context
        if verbose and isinstance(error, BFRuntimeError):
            entries = list(self.interpreter.logger.entries)
            if entries:
                lines.append("    Recent steps:")
                for entry in entries[-8:]:
                    where = str(entry.source_location) if entry.source_location else "?"
                    lines.append(
                        f"      {entry.state_id} {entry.command} at {where}  ptr={entry.pointer} cell={entry.cell}"
                    )
            if context is not None:
                start, cells = context.tape.window(context.pointer)
                rendered = " ".join(
                    f"[{int(v)}]" if start + i == context.pointer else str(int(v)) for i, v in enumerate(cells)
                )
                lines.append(f"    Tape from cell {start} (pointer {context.pointer}, {len(context.tape)} cells): {rendered}")
        rule = error.rewrite_rule or ("parse" if isinstance(error, BFParseError) else "runtime")
        lines.append(f"{error.kind}: {error.message} (rewrite: {rule})")
        return "\n".join(lines)

    def to_json(self, error: BFError) -> str:
        data: Dict[str, Any] = {
            "error": {
                "type": error.__class__.__name__,
                "kind": error.kind,
                "message": error.message,
                "rewrite_rule": error.rewrite_rule,
                "failing_step_index": getattr(error, "step_index", None),
            },
        }
        location = error.location
        if location is not None:
            data["error"]["source_location"] = {
                "file": location.file,
                "line": location.line,
                "column": location.column,
                "statement": location.statement,
            }
        trace: List[Dict[str, Any]] = []
        for entry in self.interpreter.logger.entries:
            item: Dict[str, Any] = {
                "state_id": entry.state_id,
                "step_index": entry.step_index,
                "command": entry.command,
                "pointer": entry.pointer,
                "cell": entry.cell,
            }
            if entry.source_location is not None:
                item["line"] = entry.source_location.line
                item["column"] = entry.source_location.column
            trace.append(item)
        data["trace"] = trace
        context = self.interpreter.context
        if context is not None and isinstance(error, BFRuntimeError):
            start, cells = context.tape.window(context.pointer)
            data["tape"] = {
                "length": len(context.tape),
                "pointer": context.pointer,
                "window_start": start,
                "window": cells.tolist(),
            }
        return json.dumps(data, indent=2)


def _caret_prefix(statement: str, column: int) -> str:
    return "".join("\t" if ch == "\t" else " " for ch in statement[: column - 1])
