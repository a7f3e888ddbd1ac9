from __future__ import annotations

import contextlib
import hashlib
import importlib.util
import os
import sys
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple


EXTENSION_API_VERSION = 1


class BFExtensionError(Exception):
    pass


class StepBudgetExceeded(BFExtensionError):
    def __init__(self, limit: int) -> None:
        super().__init__(f"step budget of {limit} exceeded")
        self.limit = limit


class TapeLimitExceeded(BFExtensionError):
    def __init__(self, limit: int) -> None:
        super().__init__(f"tape limit of {limit} cells exceeded")
        self.limit = limit


class ExecutionCancelled(BFExtensionError):
    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(f"execution {reason}")
        self.reason = reason


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class StepContext:
    step_index: int
    rule: str
    location: Any  # SourceLocation | None
    extra: Optional[Dict[str, Any]]


# ---- Commands ----

# impl(interpreter, context, command) -> None
CommandImpl = Callable[[Any, Any, Any], None]


@dataclass(frozen=True)
class CommandSpec:
    char: str
    impl: CommandImpl
    ext_name: str


@dataclass
class HookRegistry:
    # event -> list[(priority, handler, ext_name)]
    _events: Dict[str, List[Tuple[int, Callable[..., None], str]]] = field(default_factory=dict)
    # list[(every_n, handler, ext_name, name)]
    _step_rules: List[Tuple[int, Callable[[Any, StepContext], None], str, str]] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int, ext_name: str) -> None:
        self._events.setdefault(event, []).append((priority, handler, ext_name))
        self._events[event].sort(key=lambda t: t[0], reverse=True)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for _priority, handler, _ext in self._events.get(event, []):
            handler(*args, **kwargs)

    def add_step_rule(self, *, name: str, every_n: int, handler: Callable[[Any, StepContext], None], ext_name: str) -> None:
        if every_n <= 0:
            raise BFExtensionError("every_n_steps must be >= 1")
        self._step_rules.append((every_n, handler, ext_name, name))

    @property
    def has_step_rules(self) -> bool:
        return bool(self._step_rules)

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for every_n, handler, _ext, _name in self._step_rules:
            if ctx.step_index % every_n == 0:
                handler(interpreter, ctx)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)
    commands: Dict[str, CommandSpec] = field(default_factory=dict)

    def command_chars(self) -> List[str]:
        return sorted(self.commands)


class ExtensionAPI:
    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name

    # ---- metadata ----
    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        if requires_api > EXTENSION_API_VERSION:
            raise BFExtensionError(
                f"Extension '{name}' requires API {requires_api}, host supports {EXTENSION_API_VERSION}"
            )
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    # ---- commands ----
    def register_command(self, char: str, impl: CommandImpl) -> None:
        from lexer import COMMANDS

        if not isinstance(char, str) or len(char) != 1:
            raise BFExtensionError("Command must be a single character")
        if char in COMMANDS:
            raise BFExtensionError(f"Command {char!r} is a core command and cannot be redefined")
        existing = self._services.commands.get(char)
        if existing is not None:
            raise BFExtensionError(f"Command {char!r} is already defined by extension '{existing.ext_name}'")
        self._services.commands[char] = CommandSpec(char=char, impl=impl, ext_name=self._ext_name)

    def command(self, char: str):
        def deco(fn: CommandImpl) -> CommandImpl:
            self.register_command(char, fn)
            return fn

        return deco

    # ---- hooks ----
    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        if handler is None:
            def deco(fn: Callable[..., None]) -> Callable[..., None]:
                self._services.hook_registry.on_event(event, fn, priority=priority, ext_name=self._ext_name)
                return fn
            return deco
        self._services.hook_registry.on_event(event, handler, priority=priority, ext_name=self._ext_name)
        return handler

    def every_n_steps(self, every_n: int, handler: Optional[Callable[[Any, StepContext], None]] = None, *, name: str = ""):
        if handler is None:
            def deco(fn: Callable[[Any, StepContext], None]) -> Callable[[Any, StepContext], None]:
                self._services.hook_registry.add_step_rule(name=name or fn.__name__, every_n=every_n, handler=fn, ext_name=self._ext_name)
                return fn
            return deco
        self._services.hook_registry.add_step_rule(name=name or handler.__name__, every_n=every_n, handler=handler, ext_name=self._ext_name)
        return handler


# ---- Execution bounds ----


class CancellationToken:
    """Thread-safe flag a caller flips to stop a running program."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = "cancelled"

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    def reset(self) -> None:
        self.reason = "cancelled"
        self._event.clear()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def install_step_budget(services: RuntimeServices, max_steps: int) -> None:
    if max_steps <= 0:
        raise BFExtensionError("max_steps must be >= 1")

    def _check(_interpreter: Any, ctx: StepContext) -> None:
        if ctx.step_index > max_steps:
            raise StepBudgetExceeded(max_steps)

    services.hook_registry.add_step_rule(name="step_budget", every_n=1, handler=_check, ext_name="limits")


def install_tape_limit(services: RuntimeServices, max_cells: int) -> None:
    if max_cells <= 0:
        raise BFExtensionError("max_cells must be >= 1")

    def _check(interpreter: Any, _ctx: StepContext) -> None:
        if len(interpreter.context.tape) > max_cells:
            raise TapeLimitExceeded(max_cells)

    services.hook_registry.add_step_rule(name="tape_limit", every_n=1, handler=_check, ext_name="limits")


def install_cancellation(services: RuntimeServices, token: CancellationToken, *, every_n: int = 1024) -> None:
    def _check(_interpreter: Any, _ctx: StepContext) -> None:
        if token.cancelled:
            raise ExecutionCancelled(token.reason)

    services.hook_registry.add_step_rule(name="cancellation", every_n=every_n, handler=_check, ext_name="limits")


# ---- Loading ----

EXTENSION_SUFFIX = ".py"
POINTER_SUFFIX = ".bfx"


def _module_name_for(path: str) -> str:
    # Unique per absolute path.
    stem = os.path.splitext(os.path.basename(path))[0]
    digest = hashlib.sha256(path.encode("utf-8")).hexdigest()[:12]
    return "bfl_ext_" + "".join(ch if ch.isalnum() else "_" for ch in stem) + "_" + digest


@contextlib.contextmanager
def _sibling_imports(directory: str) -> Iterator[None]:
    sys.path.insert(0, directory)
    try:
        yield
    finally:
        if directory in sys.path:
            sys.path.remove(directory)


def load_extension_module(path: str) -> Any:
    path = os.path.abspath(path)
    if not os.path.isfile(path):
        raise BFExtensionError(f"Extension not found: {path}")
    if not path.endswith(EXTENSION_SUFFIX):
        raise BFExtensionError(f"Extension must be a {EXTENSION_SUFFIX} file or a {POINTER_SUFFIX} list: {path}")
    spec = importlib.util.spec_from_file_location(_module_name_for(path), path)
    if spec is None or spec.loader is None:
        raise BFExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)
    with _sibling_imports(os.path.dirname(path)):
        spec.loader.exec_module(module)
    return module


def read_bfx(pointer_file: str) -> List[str]:
    """Return the entries of a ``.bfx`` list, one path per line.

    ``#`` starts a comment anywhere on a line. Relative entries are resolved
    against the directory holding the list, not the working directory.
    """
    if not os.path.isfile(pointer_file):
        raise BFExtensionError(f".bfx file not found: {pointer_file}")
    base_dir = os.path.dirname(os.path.abspath(pointer_file))
    with open(pointer_file, "r", encoding="utf-8") as handle:
        entries = [raw.partition("#")[0].strip() for raw in handle]
    return [os.path.normpath(os.path.join(base_dir, entry)) for entry in entries if entry]


def gather_extension_paths(paths: Sequence[str]) -> List[str]:
    """Flatten extension paths and ``.bfx`` lists into load order.

    Lists may name other lists. Each extension appears once, at its first
    mention, since loading one twice would redefine its commands.
    """
    ordered: List[str] = []
    seen: set = set()

    def _visit(path: str, open_lists: Tuple[str, ...]) -> None:
        path = os.path.abspath(path)
        if not path.lower().endswith(POINTER_SUFFIX):
            if path not in seen:
                seen.add(path)
                ordered.append(path)
            return
        if path in open_lists:
            raise BFExtensionError(f".bfx file includes itself: {path}")
        for entry in read_bfx(path):
            _visit(entry, open_lists + (path,))

    for path in paths:
        _visit(path, ())
    return ordered


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def register_extension(services: RuntimeServices, module: Any, *, path: str = "<module>") -> None:
    api_version = getattr(module, "BF_LANG_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
    if api_version != EXTENSION_API_VERSION:
        raise BFExtensionError(
            f"Extension {path} requires API {api_version}, host supports {EXTENSION_API_VERSION}"
        )
    register = getattr(module, "bf_lang_register", None)
    if register is None or not callable(register):
        raise BFExtensionError(f"Extension {path} must define callable bf_lang_register(ext)")
    ext_name = getattr(module, "BF_LANG_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0])
    ext = ExtensionAPI(services=services, ext_name=str(ext_name))
    register(ext)


def load_runtime_services(paths: Sequence[str], services: Optional[RuntimeServices] = None) -> RuntimeServices:
    services = services or build_default_services()
    for path in gather_extension_paths(paths):
        register_extension(services, load_extension_module(path), path=path)
    return services
