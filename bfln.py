"""BF-Lang entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
import threading
from typing import List, Optional

from extensions import (
    BFExtensionError,
    CancellationToken,
    RuntimeServices,
    install_cancellation,
    install_step_budget,
    install_tape_limit,
    load_runtime_services,
)
from interpreter import BFRuntimeError, ExecutionContext, Interpreter, TracebackFormatter
from lexer import BFParseError
from parser import validate


def _run_entry(interpreter: Interpreter, context: ExecutionContext, source_text: str) -> str:
    interpreter.source = source_text
    program = interpreter.parse()
    context.rewind()
    interpreter.logger.entries.clear()
    return interpreter.execute_program(program, context)


def _arm_timeout(token: Optional[CancellationToken], timeout: Optional[float]) -> Optional[threading.Timer]:
    if token is None or timeout is None:
        return None
    token.reset()
    timer = threading.Timer(timeout, token.cancel, kwargs={"reason": f"timed out after {timeout}s"})
    timer.daemon = True
    timer.start()
    return timer


def run_repl(
    verbose: bool,
    services: RuntimeServices,
    input_data: bytes = b"",
    timeout: Optional[float] = None,
) -> int:
    print("\x1b[38;2;153;221;255mBF-Lang\033[0m REPL. Enter commands, blank line to run buffer.") # "BF-Lang" in light blue
    interpreter = Interpreter(source="", filename="<string>", verbose=verbose, services=services)
    # One context for the whole session so the tape survives between entries.
    context = interpreter.new_context(input_data)
    extra = services.command_chars()
    token: Optional[CancellationToken] = None
    if timeout is not None:
        # One cancellation rule for the session; each entry re-arms the token.
        token = CancellationToken()
        install_cancellation(services, token)
    buffer: List[str] = []
    had_output = False

    def _run(source_text: str) -> None:
        nonlocal had_output
        timer = _arm_timeout(token, timeout)
        try:
            text = _run_entry(interpreter, context, source_text)
        except BFParseError as error:
            print(f"ParseError: {error}", file=sys.stderr)
            return
        except BFRuntimeError as error:
            formatter = TracebackFormatter(interpreter)
            print(formatter.format_text(error, verbose=interpreter.verbose), file=sys.stderr)
            return
        finally:
            if timer is not None:
                timer.cancel()
        if text:
            had_output = True
            print(text, end="")

    while True:
        prompt = "\x1b[38;2;153;221;255m>>>\033[0m " if not buffer else "\x1b[38;2;153;221;255m..>\033[0m " # light blue
        if had_output:
            # Ensure prompt starts on a fresh line if the program printed anything
            print()
            had_output = False
        try:
            line = input(prompt)
        except EOFError:
            print()
            break

        stripped = line.strip()

        if not buffer and stripped != "":
            try:
                validate(line, "<string>", extra_commands=extra)
            except BFParseError:
                # An open loop on a single line starts a multi-line entry
                buffer.append(line)
                continue
            _run(line)
            continue

        if stripped == "" and buffer:
            source_text = "\n".join(buffer)
            buffer.clear()
            _run(source_text)
            continue

        if stripped != "":
            buffer.append(line)

    return 0


def _read_input(args: argparse.Namespace) -> Optional[bytes]:
    if args.input_file is not None:
        with open(args.input_file, "rb") as handle:
            return handle.read()
    if args.input_text is not None:
        return args.input_text.encode("utf-8")
    return None


def _build_services(args: argparse.Namespace) -> RuntimeServices:
    services = load_runtime_services(args.ext or [])
    if args.max_steps is not None:
        install_step_budget(services, args.max_steps)
    if args.max_cells is not None:
        install_tape_limit(services, args.max_cells)
    return services


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="BF-Lang reference interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-input", "--input", dest="input_text", default=None, help="Input bytes for ',' given as UTF-8 text")
    parser.add_argument("--input-file", dest="input_file", default=None, help="Read input bytes for ',' from a file")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit recent steps and tape window in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--ext", action="append", default=[], help="Extension file or .bfx pointer file (repeatable)")
    parser.add_argument("--max-steps", type=int, default=None, help="Stop after this many executed commands")
    parser.add_argument("--max-cells", type=int, default=None, help="Stop when the tape grows past this many cells")
    parser.add_argument("--timeout", type=float, default=None, help="Cancel execution after this many seconds")
    args = parser.parse_args(argv)

    try:
        services = _build_services(args)
        input_data = _read_input(args)
    except BFExtensionError as exc:
        print(f"ExtensionError: {exc}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"Failed to read input: {exc}", file=sys.stderr)
        return 1

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(
            verbose=args.verbose,
            services=services,
            input_data=input_data or b"",
            timeout=args.timeout,
        )

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8", errors="surrogateescape") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    token: Optional[CancellationToken] = None
    if args.timeout is not None:
        token = CancellationToken()
        install_cancellation(services, token)
    timer = _arm_timeout(token, args.timeout)

    interpreter = Interpreter(source=source_text, filename=filename, verbose=args.verbose, services=services)
    try:
        output = interpreter.run(input_data)
    except (BFParseError, BFRuntimeError) as error:
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    finally:
        if timer is not None:
            timer.cancel()
    sys.stdout.write(output)
    sys.stdout.flush()
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
