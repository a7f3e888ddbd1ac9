"""BF-Lang extension: the ``?`` debug command.

Each ``?`` appends ``(pointer:cell)`` to the program output, e.g. ``?+?>?``
prints ``(0:0)(0:1)(1:0)``. The tape and pointer are left untouched.
"""

from __future__ import annotations

from typing import Any

from extensions import ExtensionAPI


BF_LANG_EXTENSION_NAME = "debug"
BF_LANG_EXTENSION_API_VERSION = 1


def _debug_char(_interpreter: Any, ctx: Any, _command: Any) -> None:
    text = f"({ctx.pointer}:{ctx.cell})"
    ctx.write(text.encode("ascii"), ctx.ip)


def bf_lang_register(ext: ExtensionAPI) -> None:
    ext.metadata(name="debug", version="0.1.0")
    ext.register_command("?", _debug_char)
