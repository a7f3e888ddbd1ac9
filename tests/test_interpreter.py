import json
import unittest
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from extensions import build_default_services
from interpreter import (
    BFRuntimeError,
    InputExhausted,
    Interpreter,
    OutputNotUtf8,
    PointerUnderflow,
    Tape,
    TracebackFormatter,
    execute,
    normalize_input,
)
from parser import UnmatchedOpenBracket, validate


HELLO = "++++++++[>+++++++++++++>++++<<-]>.---.+++++++..+++.>.<++++++++.--------.+++.------.--------."

# http://brainfuck.org/tests.b by Daniel B Cristofani
OBSCURE = '[]++++++++++[>>+>+>++++++[<<+<+++>>>-]<<<<-]"A*$";@![#>>+<<]>[>>]<<<<[>++<[-]]>.>.'


def _run(source, input_data=None, **kwargs):
    interpreter = Interpreter(source=source, **kwargs)
    return interpreter, interpreter.run(input_data)


class EndToEndTests(unittest.TestCase):
    def test_letter_a(self):
        self.assertEqual(execute("++++++++[>++++++++<-]>+."), "A")

    def test_multiplication_loop(self):
        # 8 * 10 + 7
        self.assertEqual(execute("++++++++[>++++++++++<-]>+++++++."), "W")

    def test_echo_input(self):
        self.assertEqual(execute(",.", [88]), "X")
        self.assertEqual(execute(",.", b"X"), "X")
        self.assertEqual(execute(",.", "X"), "X")

    def test_empty_input_is_exhausted(self):
        with self.assertRaises(InputExhausted) as cm:
            execute(",.")
        self.assertEqual((cm.exception.location.line, cm.exception.location.column), (1, 1))
        self.assertEqual(cm.exception.kind, "InputExhausted")

    def test_lone_open_bracket(self):
        with self.assertRaises(UnmatchedOpenBracket) as cm:
            execute("[")
        self.assertEqual((cm.exception.location.line, cm.exception.location.column), (1, 1))

    def test_lone_decrement_pointer(self):
        with self.assertRaises(PointerUnderflow) as cm:
            execute("<")
        self.assertEqual((cm.exception.location.line, cm.exception.location.column), (1, 1))
        self.assertEqual(cm.exception.step_index, 0)

    def test_hello_world(self):
        self.assertEqual(execute(HELLO), "hello world")

    def test_obscure_problems(self):
        self.assertEqual(execute(OBSCURE), "H\n")

    def test_empty_program(self):
        self.assertEqual(execute(""), "")
        self.assertEqual(execute("no commands here"), "")


class ExecutorTests(unittest.TestCase):
    def test_underflow_regardless_of_tape_contents(self):
        with self.assertRaises(PointerUnderflow) as cm:
            execute("+++>+++<<")
        self.assertEqual(cm.exception.location.column, 9)

    def test_underflow_on_later_line(self):
        with self.assertRaises(PointerUnderflow) as cm:
            execute(">\n\n  <<")
        location = cm.exception.location
        self.assertEqual((location.line, location.column), (3, 4))
        self.assertEqual(location.statement, "  <<")

    def test_cell_wraps_upward(self):
        interpreter, _ = _run("+" * 256)
        self.assertEqual(interpreter.context.tape[0], 0)
        interpreter, _ = _run("+" * 255)
        self.assertEqual(interpreter.context.tape[0], 255)

    def test_cell_wraps_downward(self):
        interpreter, _ = _run("-")
        self.assertEqual(interpreter.context.tape[0], 255)
        interpreter, _ = _run("-+")
        self.assertEqual(interpreter.context.tape[0], 0)

    def test_tape_grows_lazily(self):
        for n in (0, 1, 5, 100):
            with self.subTest(n=n):
                interpreter, _ = _run(">" * n)
                self.assertEqual(len(interpreter.context.tape), n + 1)

    def test_tape_does_not_grow_when_revisiting(self):
        interpreter, _ = _run("><><>")
        self.assertEqual(len(interpreter.context.tape), 2)
        self.assertEqual(interpreter.context.pointer, 1)

    def test_zero_cell_skips_loop(self):
        # Body would underflow if entered.
        self.assertEqual(execute("[<]"), "")

    def test_input_overwrites_cell(self):
        interpreter, _ = _run("+++++,", b"\x07")
        self.assertEqual(interpreter.context.tape[0], 7)
        self.assertEqual(interpreter.context.input_cursor, 1)

    def test_input_runs_out_midway(self):
        source = ">,>+++++++++,>+++++++++++[<++++++<++++++<+>>>-]<<.>.<<-.>.>.<<."
        with self.assertRaises(InputExhausted) as cm:
            execute(source, "\n")
        self.assertEqual(cm.exception.location.column, 13)

    def test_utf8_output(self):
        self.assertEqual(execute(",.,.,.", "€"), "€")

    def test_output_not_utf8(self):
        with self.assertRaises(OutputNotUtf8) as cm:
            execute("++++++++[>++++++++<-]>+.>-.")
        self.assertEqual(cm.exception.location.column, 27)
        self.assertEqual(cm.exception.offset, 1)
        self.assertEqual(cm.exception.kind, "OutputNotUtf8")

    def test_truncated_multibyte_output(self):
        with self.assertRaises(OutputNotUtf8) as cm:
            execute(",.", b"\xe2")
        self.assertEqual(cm.exception.location.column, 2)

    def test_programs_can_be_rerun(self):
        program = validate(HELLO)
        interpreter = Interpreter(source=HELLO)
        first = interpreter.execute_program(program, interpreter.new_context())
        second = interpreter.execute_program(program, interpreter.new_context())
        self.assertEqual(first, second)

    def test_context_rewind_keeps_tape(self):
        interpreter = Interpreter(source="+++")
        context = interpreter.new_context()
        interpreter.execute_program(interpreter.parse(), context)
        context.rewind()
        interpreter.source = "++."
        self.assertEqual(interpreter.execute_program(interpreter.parse(), context), "\x05")

    def test_independent_runs_in_threads(self):
        sources = [HELLO, "++++++++[>++++++++<-]>+.", OBSCURE] * 4
        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(execute, sources))
        self.assertEqual(results, ["hello world", "A", "H\n"] * 4)

    def test_events(self):
        services = build_default_services()
        seen = []
        services.hook_registry.on_event("program_start", lambda *a: seen.append("start"), priority=0, ext_name="t")
        services.hook_registry.on_event("program_end", lambda *a: seen.append("end"), priority=0, ext_name="t")
        services.hook_registry.on_event("on_error", lambda *a: seen.append("error"), priority=0, ext_name="t")
        execute("+", services=services)
        with self.assertRaises(PointerUnderflow):
            execute("<", services=services)
        self.assertEqual(seen, ["start", "end", "start", "error"])

    def test_failing_hook_is_reported(self):
        services = build_default_services()

        def _boom(*_args):
            raise ValueError("boom")

        services.hook_registry.on_event("program_start", _boom, priority=0, ext_name="t")
        with self.assertRaises(BFRuntimeError) as cm:
            execute("+", services=services)
        self.assertEqual(cm.exception.rewrite_rule, "EXT")
        self.assertIsInstance(cm.exception.__cause__, ValueError)


class TapeTests(unittest.TestCase):
    def test_new_tape_has_one_zero_cell(self):
        tape = Tape()
        self.assertEqual(len(tape), 1)
        self.assertEqual(tape[0], 0)

    def test_snapshot_is_uint8(self):
        tape = Tape()
        tape.cells.extend(b"\x01\xff")
        snap = tape.snapshot()
        self.assertEqual(snap.dtype, np.uint8)
        self.assertEqual(snap.tolist(), [0, 1, 255])

    def test_window(self):
        tape = Tape()
        tape.cells.extend(bytes(range(1, 30)))
        start, cells = tape.window(20, radius=2)
        self.assertEqual(start, 18)
        self.assertEqual(cells.tolist(), [18, 19, 20, 21, 22])
        start, cells = tape.window(0, radius=2)
        self.assertEqual(start, 0)
        self.assertEqual(cells.tolist(), [0, 1, 2])

    def test_normalize_input(self):
        self.assertEqual(normalize_input(None), b"")
        self.assertEqual(normalize_input("é"), b"\xc3\xa9")
        self.assertEqual(normalize_input(bytearray(b"ab")), b"ab")
        self.assertEqual(normalize_input(iter([1, 2])), b"\x01\x02")

    def test_out_of_range_input_is_a_runtime_error(self):
        with self.assertRaises(BFRuntimeError) as cm:
            execute(",.", [65, 300])
        self.assertEqual(cm.exception.rewrite_rule, "INPUT")
        self.assertIsInstance(cm.exception.__cause__, ValueError)
        with self.assertRaises(BFRuntimeError):
            normalize_input([1, "x"])


class TracebackTests(unittest.TestCase):
    def _fail(self, source, verbose=False):
        interpreter = Interpreter(source=source, verbose=verbose)
        with self.assertRaises(BFRuntimeError) as cm:
            interpreter.run()
        return interpreter, cm.exception

    def test_text_points_at_column(self):
        interpreter, error = self._fail(">\n  <<")
        text = TracebackFormatter(interpreter).format_text(error, verbose=False)
        lines = text.splitlines()
        self.assertEqual(lines[0], "Traceback (most recent call last):")
        self.assertIn('  File "<string>", line 2, column 4', lines)
        self.assertIn("      <<", lines)
        self.assertIn("       ^", lines)
        self.assertEqual(lines[-1], "PointerUnderflow: Data pointer moved left of cell 0 (rewrite: DEC_PTR)")

    def test_verbose_text_shows_tape(self):
        interpreter, error = self._fail("+++>++<<", verbose=True)
        text = TracebackFormatter(interpreter).format_text(error, verbose=True)
        self.assertIn("Recent steps:", text)
        self.assertIn("Tape from cell 0 (pointer 0, 2 cells): [3] 2", text)

    def test_parse_error_text(self):
        interpreter = Interpreter(source="+]")
        with self.assertRaises(Exception) as cm:
            interpreter.run()
        text = TracebackFormatter(interpreter).format_text(cm.exception, verbose=True)
        self.assertTrue(text.endswith("UnmatchedCloseBracket: Unmatched ']' (no opening '[') (rewrite: LOOP_END)"))

    def test_json(self):
        interpreter, error = self._fail(",", verbose=True)
        data = json.loads(TracebackFormatter(interpreter).to_json(error))
        self.assertEqual(data["error"]["kind"], "InputExhausted")
        self.assertEqual(data["error"]["source_location"]["column"], 1)
        self.assertEqual(data["error"]["failing_step_index"], 0)
        self.assertEqual(data["tape"], {"length": 1, "pointer": 0, "window_start": 0, "window": [0]})


if __name__ == "__main__":
    unittest.main()
