"""BF-Lang extension: per-instruction execution profile.

Counts how often each command runs and, when the program ends (or fails),
prints the hottest source positions to stderr. The most recent report is
kept on the interpreter as ``interpreter.profile_report``, beside the raw
tallies in ``interpreter.profile_counts``.
"""

from __future__ import annotations

import sys
from typing import Any, List, Optional, Tuple

import numpy as np

from extensions import ExtensionAPI, StepContext


BF_LANG_EXTENSION_NAME = "profile"
BF_LANG_EXTENSION_API_VERSION = 1

TOP_N = 10


def _hotspots(program: Any, counts: np.ndarray, top_n: int) -> List[Tuple[Any, str, int]]:
    if counts.size == 0:
        return []
    order = np.argsort(counts, kind="stable")[::-1][:top_n]
    out: List[Tuple[Any, str, int]] = []
    for index in order:
        hits = int(counts[index])
        if hits == 0:
            break
        command = program.commands[int(index)]
        out.append((command.location, command.char, hits))
    return out


def bf_lang_register(ext: ExtensionAPI) -> None:
    ext.metadata(name="profile", version="0.1.0")

    @ext.on_event("program_start")
    def _start(interpreter: Any, program: Any, _context: Any) -> None:
        # One tally array per interpreter; services may be shared across threads.
        interpreter.profile_counts = np.zeros(len(program.commands), dtype=np.int64)
        interpreter.profile_report = []

    @ext.every_n_steps(1, name="profile_tally")
    def _tally(interpreter: Any, ctx: StepContext) -> None:
        counts: Optional[np.ndarray] = getattr(interpreter, "profile_counts", None)
        if counts is not None and ctx.extra is not None:
            counts[ctx.extra["ip"]] += 1

    def _report(interpreter: Any, *_args: Any) -> None:
        counts = getattr(interpreter, "profile_counts", None)
        if counts is None or interpreter.program is None:
            return
        report = _hotspots(interpreter.program, counts, TOP_N)
        interpreter.profile_report = report
        total = int(counts.sum())
        print(f"profile: {total} steps over {counts.size} commands", file=sys.stderr)
        for location, char, hits in report:
            print(f"  {location} {char!r} x{hits}", file=sys.stderr)

    ext.on_event("program_end", _report)
    ext.on_event("on_error", _report)
