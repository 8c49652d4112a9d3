"""
Restricted-interpreter sandbox for untrusted plugin code.

Plugin source is compiled after an AST screen that rejects private and
frame-walking attribute access, then executed against a namespace whose
builtins are a curated allow-list. String formatting is rewritten onto a
formatter that refuses private field lookups. Module loading goes through a
restricted ``__import__`` that is the capability boundary: only the safe
module set plus permission-gated groups can be imported, and imported
modules are handed out as facades without private attributes, nested
modules or members that resolve names from strings.

This is a language-level boundary inside the host process. It is not an
OS sandbox and does not filter system calls.
"""

from __future__ import annotations

import ast
import asyncio
import builtins
import functools
import importlib
import inspect
import itertools
import logging
import os
import platform
import re
import string
import sys
import time
import types
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Coroutine,
    Dict,
    Iterable,
    List,
    Optional,
    Set,
)

from .exceptions import SandboxError

logger = logging.getLogger(__name__)
plugin_console_logger = logging.getLogger("conductor.plugins.sandbox")

DEFAULT_TIMEOUT_MS = 5000
MAX_TIMERS = 100
MAX_TIMER_DELAY = 60.0
MIN_INTERVAL = 0.1

SAFE_MODULES = frozenset(
    {
        "base64",
        "binascii",
        "bisect",
        "collections",
        "copy",
        "dataclasses",
        "datetime",
        "decimal",
        "difflib",
        "enum",
        "fractions",
        "functools",
        "hashlib",
        "heapq",
        "hmac",
        "html",
        "itertools",
        "json",
        "math",
        "random",
        "re",
        "statistics",
        "textwrap",
        "typing",
        "unicodedata",
        "urllib.parse",
        "uuid",
        "zlib",
    }
)

PERMISSION_MODULES: Dict[str, tuple] = {
    "filesystem": ("pathlib", "io", "glob", "fnmatch"),
    "network": ("http.client", "urllib.request", "socket", "ssl"),
    "process": ("subprocess", "shlex"),
}

SAFE_BUILTIN_NAMES = (
    "abs",
    "all",
    "any",
    "ascii",
    "bin",
    "bool",
    "bytearray",
    "bytes",
    "callable",
    "chr",
    "classmethod",
    "complex",
    "dict",
    "divmod",
    "enumerate",
    "filter",
    "float",
    "format",
    "frozenset",
    "hash",
    "hex",
    "int",
    "isinstance",
    "issubclass",
    "iter",
    "len",
    "list",
    "map",
    "max",
    "min",
    "next",
    "object",
    "oct",
    "ord",
    "pow",
    "property",
    "range",
    "repr",
    "reversed",
    "round",
    "set",
    "slice",
    "sorted",
    "staticmethod",
    "str",
    "sum",
    "super",
    "tuple",
    "zip",
    "ArithmeticError",
    "AssertionError",
    "AttributeError",
    "Exception",
    "ImportError",
    "IndexError",
    "KeyError",
    "LookupError",
    "NameError",
    "NotImplementedError",
    "RuntimeError",
    "StopAsyncIteration",
    "StopIteration",
    "TimeoutError",
    "TypeError",
    "ValueError",
    "ZeroDivisionError",
)

ALLOWED_DUNDERS = frozenset({"__init__", "__name__", "__doc__", "__all__"})

# Frame, code and traceback links lead back into host frames and globals.
BLOCKED_ATTRIBUTES = frozenset(
    {
        "ag_await",
        "ag_code",
        "ag_frame",
        "co_code",
        "cr_await",
        "cr_code",
        "cr_frame",
        "cr_origin",
        "f_back",
        "f_builtins",
        "f_code",
        "f_globals",
        "f_locals",
        "f_trace",
        "gi_code",
        "gi_frame",
        "gi_yieldfrom",
        "tb_frame",
        "tb_next",
    }
)

# Members of safe modules that look up attributes by string or evaluate
# source text outside the screen.
BLOCKED_MEMBERS: Dict[str, frozenset] = {
    "functools": frozenset(
        {"singledispatch", "singledispatchmethod", "update_wrapper", "wraps"}
    ),
    "typing": frozenset({"ForwardRef", "evaluate_forward_ref", "get_type_hints"}),
}

_PRIVATE_FIELD = re.compile(r"[.\[]_")


@dataclass
class SandboxOptions:
    """Per-context sandbox settings.

    ``timeout`` is in milliseconds and ``memory`` in megabytes. ``permissions``
    names the permission groups the plugin asked for; ``None`` means every
    group the host allows.
    """

    timeout: Optional[int] = None
    memory: Optional[int] = None
    allowed_modules: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    permissions: Optional[List[str]] = None


def _is_blocked_dunder(name: str) -> bool:
    return name.startswith("__") and name.endswith("__") and name not in ALLOWED_DUNDERS


def _is_blocked_attribute(name: str) -> bool:
    if name in ALLOWED_DUNDERS:
        return False
    return name.startswith("_") or name in BLOCKED_ATTRIBUTES


class _GuardedFormatter(string.Formatter):
    """``str.format`` without attribute or index lookups on private names."""

    def get_field(self, field_name, args, kwargs):
        if _PRIVATE_FIELD.search(field_name):
            raise SandboxError(f"Format field '{field_name}' is not allowed")
        return super().get_field(field_name, args, kwargs)


_FORMATTER = _GuardedFormatter()


def _str_format(template: str, *args: Any, **kwargs: Any) -> str:
    return _FORMATTER.vformat(template, args, kwargs)


def _str_format_map(template: str, mapping: Any) -> str:
    return _FORMATTER.vformat(template, (), mapping)


_FORMAT_METHODS: Dict[str, Callable[..., str]] = {
    "format": _str_format,
    "format_map": _str_format_map,
}
_FORMAT_ATTR = "_sandbox_format_attr"


def _format_attr(obj: Any, name: str) -> Any:
    """Resolve ``obj.format``/``obj.format_map`` to the guarded formatter for strings."""
    method = _FORMAT_METHODS[name]
    if isinstance(obj, str):
        return functools.partial(method, obj)
    if isinstance(obj, type) and issubclass(obj, str):
        return method
    return getattr(obj, name)


class _SourceScreen(ast.NodeVisitor):
    """Rejects constructs that reach outside the restricted namespace."""

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if _is_blocked_attribute(node.attr):
            raise SandboxError(f"Access to private attribute '{node.attr}' is not allowed")
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if _is_blocked_dunder(node.id) or node.id == _FORMAT_ATTR:
            raise SandboxError(f"Access to private name '{node.id}' is not allowed")

    def visit_Global(self, node: ast.Global) -> None:
        raise SandboxError("Blocked operation: global")

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
        if node.type is None:
            raise SandboxError("Blocked operation: bare except")
        self.generic_visit(node)


class _FormatRewriter(ast.NodeTransformer):
    """Routes ``x.format`` and ``x.format_map`` reads through ``_format_attr``."""

    def visit_Attribute(self, node: ast.Attribute) -> ast.AST:
        self.generic_visit(node)
        if node.attr not in _FORMAT_METHODS or not isinstance(node.ctx, ast.Load):
            return node
        call = ast.Call(
            func=ast.Name(id=_FORMAT_ATTR, ctx=ast.Load()),
            args=[node.value, ast.Constant(node.attr)],
            keywords=[],
        )
        return ast.copy_location(call, node)


class ExecutionTimeout(BaseException):
    """Raised into plugin frames when the wall-clock limit passes.

    Not an ``Exception`` subclass: ``except Exception`` in plugin code
    does not catch it.
    """


class _Deadline:
    """Line-level trace hook that aborts execution after a wall-clock limit."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self.expires = time.monotonic() + seconds

    def __call__(self, frame, event, arg):
        self._check()
        return self._local

    def _local(self, frame, event, arg):
        self._check()
        return self._local

    def _check(self) -> None:
        if time.monotonic() > self.expires:
            raise ExecutionTimeout(f"Script execution timed out after {self.seconds:g}s")


def _with_deadline(timeout_ms: Optional[int], func: Callable[[], Any]) -> Any:
    seconds = (timeout_ms or DEFAULT_TIMEOUT_MS) / 1000.0
    previous_trace = sys.gettrace()
    sys.settrace(_Deadline(seconds))
    try:
        return func()
    finally:
        sys.settrace(previous_trace)


class SandboxConsole:
    """Id-prefixed logging facade exposed to plugin code as ``console``."""

    def __init__(self, plugin_id: str):
        self._prefix = f"[Plugin:{plugin_id}]"

    def _emit(self, level: int, args: Iterable[Any]) -> None:
        message = " ".join(str(a) for a in args)
        plugin_console_logger.log(level, "%s %s", self._prefix, message)

    def log(self, *args: Any) -> None:
        self._emit(logging.INFO, args)

    info = log

    def debug(self, *args: Any) -> None:
        self._emit(logging.DEBUG, args)

    def warn(self, *args: Any) -> None:
        self._emit(logging.WARNING, args)

    warning = warn

    def error(self, *args: Any) -> None:
        self._emit(logging.ERROR, args)


class SandboxTimers:
    """Bounded timer facility running on the host's asyncio loop.

    Callbacks go through ``runner``, which applies the sandbox time limit
    and returns a coroutine to schedule when the callback was async.
    """

    def __init__(
        self,
        plugin_id: str,
        runner: Callable[[Callable, tuple], Optional[Awaitable[Any]]],
        max_timers: int = MAX_TIMERS,
    ):
        self.plugin_id = plugin_id
        self.max_timers = max_timers
        self._runner = runner
        self._handles: Dict[int, asyncio.Handle] = {}
        self._tasks: Set[asyncio.Future] = set()
        self._ids = itertools.count(1)

    @property
    def pending(self) -> int:
        return len(self._handles)

    def _loop(self) -> asyncio.AbstractEventLoop:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            raise SandboxError("Timers require a running event loop", self.plugin_id)

    def _check_limit(self) -> None:
        if len(self._handles) >= self.max_timers:
            raise SandboxError(
                f"Timer limit exceeded (max: {self.max_timers})", self.plugin_id
            )

    def _run(self, callback: Callable, args: tuple) -> None:
        try:
            pending = self._runner(callback, args)
        except Exception as e:
            logger.error(f"Timer callback failed for plugin {self.plugin_id}: {e}")
            return
        if pending is not None:
            task = asyncio.ensure_future(pending)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Timer callback failed for plugin {self.plugin_id}: {task.exception()}"
            )

    def set_timeout(self, callback: Callable, delay: float = 0, *args: Any) -> int:
        loop = self._loop()
        self._check_limit()
        timer_id = next(self._ids)

        def fire() -> None:
            self._handles.pop(timer_id, None)
            self._run(callback, args)

        delay = min(max(float(delay), 0.0), MAX_TIMER_DELAY)
        self._handles[timer_id] = loop.call_later(delay, fire)
        return timer_id

    def set_interval(self, callback: Callable, interval: float, *args: Any) -> int:
        loop = self._loop()
        self._check_limit()
        timer_id = next(self._ids)
        period = max(MIN_INTERVAL, min(float(interval), MAX_TIMER_DELAY))

        def fire() -> None:
            if timer_id not in self._handles:
                return
            self._handles[timer_id] = loop.call_later(period, fire)
            self._run(callback, args)

        self._handles[timer_id] = loop.call_later(period, fire)
        return timer_id

    def set_immediate(self, callback: Callable, *args: Any) -> int:
        loop = self._loop()
        self._check_limit()
        timer_id = next(self._ids)

        def fire() -> None:
            self._handles.pop(timer_id, None)
            self._run(callback, args)

        self._handles[timer_id] = loop.call_soon(fire)
        return timer_id

    def clear(self, timer_id: int) -> None:
        handle = self._handles.pop(timer_id, None)
        if handle is not None:
            handle.cancel()

    clear_timeout = clear_interval = clear_immediate = clear

    def cancel_all(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        for task in list(self._tasks):
            task.cancel()


@dataclass
class SandboxContext:
    plugin_id: str
    options: SandboxOptions
    namespace: Dict[str, Any]
    timers: SandboxTimers
    allowed_modules: Set[str]
    module_cache: Dict[str, Any] = field(default_factory=dict)


class PluginSandbox:
    """Builds isolated execution contexts keyed by plugin id."""

    def __init__(self, allowed_permissions: Optional[Iterable[str]] = None):
        self.allowed_permissions = set(allowed_permissions or [])
        self.contexts: Dict[str, SandboxContext] = {}

    def allowed_modules_for(self, options: SandboxOptions) -> Set[str]:
        requested = (
            self.allowed_permissions
            if options.permissions is None
            else set(options.permissions) & self.allowed_permissions
        )
        modules = set(SAFE_MODULES)
        for group in requested:
            modules.update(PERMISSION_MODULES.get(group, ()))
        modules.update(options.allowed_modules or [])
        return modules

    def create_context(
        self, plugin_id: str, options: Optional[SandboxOptions] = None
    ) -> SandboxContext:
        """Create (or replace) the sandbox context for a plugin."""
        options = options or SandboxOptions()
        allowed = self.allowed_modules_for(options)
        timers = SandboxTimers(
            plugin_id, functools.partial(self._run_timer_callback, plugin_id)
        )
        console = SandboxConsole(plugin_id)
        context = SandboxContext(
            plugin_id=plugin_id,
            options=options,
            namespace={},
            timers=timers,
            allowed_modules=allowed,
        )

        safe_builtins: Dict[str, Any] = {
            name: getattr(builtins, name) for name in SAFE_BUILTIN_NAMES
        }
        safe_builtins.update(
            {
                "__build_class__": builtins.__build_class__,
                "__import__": self._create_safe_import(context),
                "print": lambda *args, **_kwargs: console.log(*args),
                "getattr": _safe_getattr,
                "hasattr": _safe_hasattr,
                "setattr": _safe_setattr,
                _FORMAT_ATTR: _format_attr,
            }
        )

        context.namespace.update(
            {
                "__builtins__": safe_builtins,
                "__name__": f"sandbox_{plugin_id.replace('-', '_')}",
                "console": console,
                "set_timeout": timers.set_timeout,
                "clear_timeout": timers.clear_timeout,
                "set_interval": timers.set_interval,
                "clear_interval": timers.clear_interval,
                "set_immediate": timers.set_immediate,
                "clear_immediate": timers.clear_immediate,
                "runtime": types.SimpleNamespace(
                    env=types.MappingProxyType(dict(options.env or {})),
                    version=platform.python_version(),
                    platform=sys.platform,
                ),
            }
        )

        previous = self.contexts.get(plugin_id)
        if previous is not None:
            previous.timers.cancel_all()
        self.contexts[plugin_id] = context
        return context

    def destroy_context(self, plugin_id: str) -> None:
        context = self.contexts.pop(plugin_id, None)
        if context is None:
            return
        context.timers.cancel_all()
        context.module_cache.clear()
        context.namespace.clear()

    def execute(
        self,
        plugin_id: str,
        code: str,
        options: Optional[SandboxOptions] = None,
        filename: str = "<plugin>",
    ) -> Dict[str, Any]:
        """
        Run code in the plugin's context under a wall-clock timeout.

        Returns:
            The context namespace after execution

        Raises:
            SandboxError: on screening failure, timeout or any raised fault
        """
        context = self.contexts.get(plugin_id) or self.create_context(plugin_id, options)
        timeout_ms = (options and options.timeout) or context.options.timeout

        def run() -> None:
            exec(self._compile(code, filename), context.namespace)

        self._guarded(plugin_id, timeout_ms, run)
        return context.namespace

    def call(
        self,
        plugin_id: str,
        func: Callable[..., Any],
        *args: Any,
        timeout: Optional[int] = None,
    ) -> Any:
        """Invoke a sandbox-defined callable under the context's time limit."""
        context = self.contexts.get(plugin_id) or self.create_context(plugin_id)
        return self._guarded(
            plugin_id, timeout or context.options.timeout, lambda: func(*args)
        )

    def bind(
        self,
        plugin_id: str,
        func: Callable[..., Any],
        timeout: Optional[int] = None,
    ) -> Callable[..., Awaitable[Any]]:
        """Wrap a sandbox callable so host code runs it under the time limit."""

        async def invoke(*args: Any) -> Any:
            result = self.call(plugin_id, func, *args, timeout=timeout)
            if inspect.iscoroutine(result):
                return await self.run_coroutine(plugin_id, result, timeout)
            return result

        return invoke

    async def run_coroutine(
        self,
        plugin_id: str,
        coro: Coroutine[Any, Any, Any],
        timeout: Optional[int] = None,
    ) -> Any:
        """
        Drive a sandbox coroutine on the running loop.

        Every synchronous stretch between two awaits runs under the context's
        time limit, so a plugin cannot hold the event loop past it.

        Raises:
            SandboxError: on timeout or any fault raised by the coroutine
        """
        context = self.contexts.get(plugin_id)
        timeout_ms = timeout or (context.options.timeout if context else None)
        value: Any = None
        error: Optional[BaseException] = None

        while True:
            step = (
                functools.partial(coro.send, value)
                if error is None
                else functools.partial(coro.throw, error)
            )
            try:
                yielded = _with_deadline(timeout_ms, step)
            except StopIteration as stop:
                return stop.value
            except (Exception, SystemExit, ExecutionTimeout) as e:
                logger.warning(f"Sandbox execution failed for plugin {plugin_id}: {e}")
                raise SandboxError(f"Sandbox execution error: {e}", plugin_id) from e

            value, error = None, None
            if yielded is None:
                await asyncio.sleep(0)
                continue
            if not asyncio.isfuture(yielded):
                error = RuntimeError(
                    f"Sandbox coroutine yielded unsupported value {yielded!r}"
                )
                continue
            try:
                value = await yielded
            except (Exception, asyncio.CancelledError) as e:
                error = e

    def _guarded(
        self, plugin_id: str, timeout_ms: Optional[int], func: Callable[[], Any]
    ) -> Any:
        try:
            return _with_deadline(timeout_ms, func)
        except (Exception, SystemExit, ExecutionTimeout) as e:
            logger.warning(f"Sandbox execution failed for plugin {plugin_id}: {e}")
            raise SandboxError(f"Sandbox execution error: {e}", plugin_id) from e

    def _run_timer_callback(
        self, plugin_id: str, callback: Callable, args: tuple
    ) -> Optional[Awaitable[Any]]:
        context = self.contexts.get(plugin_id)
        timeout_ms = context.options.timeout if context else None
        result = self._guarded(plugin_id, timeout_ms, lambda: callback(*args))
        if inspect.iscoroutine(result):
            return self.run_coroutine(plugin_id, result, timeout_ms)
        return None

    def _compile(self, code: str, filename: str) -> types.CodeType:
        tree = ast.parse(code, filename=filename, mode="exec")
        _SourceScreen().visit(tree)
        tree = ast.fix_missing_locations(_FormatRewriter().visit(tree))
        return compile(tree, filename, "exec")

    def _create_safe_import(self, context: SandboxContext) -> Callable:
        allowed = context.allowed_modules
        cache = context.module_cache

        def load(name: str) -> Any:
            if name not in cache:
                try:
                    module = importlib.import_module(name)
                except ImportError as e:
                    raise SandboxError(f"Failed to load module '{name}': {e}", context.plugin_id)
                cache[name] = _module_facade(module)
            return cache[name]

        def safe_import(name, globals=None, locals=None, fromlist=(), level=0):
            if level:
                raise SandboxError(f"Relative import of '{name}' is not allowed in sandbox")
            if ".." in name or name.startswith(("/", "\\")) or os.path.isabs(name):
                raise SandboxError(f"Invalid module path: {name}")
            if name not in allowed:
                raise SandboxError(f"Module '{name}' is not allowed in sandbox")
            module = load(name)
            if fromlist or "." not in name:
                return module
            # ``import a.b`` binds ``a``; the parent has to be allowed too.
            top = name.split(".", 1)[0]
            if top not in allowed:
                raise SandboxError(
                    f"Module '{name}' must be imported with 'from {name} import ...'"
                )
            return load(top)

        return safe_import

    def get_resource_usage(self, plugin_id: str) -> Optional[Dict[str, Any]]:
        context = self.contexts.get(plugin_id)
        if context is None:
            return None
        return {
            "contexts_count": len(self.contexts),
            "pending_timers": context.timers.pending,
            "cached_modules": sorted(context.module_cache),
            "memory_limit_mb": context.options.memory,
        }


def _module_facade(module: types.ModuleType) -> types.SimpleNamespace:
    blocked = BLOCKED_MEMBERS.get(module.__name__, frozenset())
    public = {
        name: value
        for name, value in vars(module).items()
        if not name.startswith("_")
        and name not in blocked
        and not isinstance(value, types.ModuleType)
    }
    return types.SimpleNamespace(**public)


def _safe_getattr(obj: Any, name: str, *default: Any) -> Any:
    if not isinstance(name, str) or _is_blocked_attribute(name):
        raise SandboxError(f"Access to private attribute '{name}' is not allowed")
    if name in _FORMAT_METHODS:
        try:
            return _format_attr(obj, name)
        except AttributeError:
            if default:
                return default[0]
            raise
    return getattr(obj, name, *default)


def _safe_hasattr(obj: Any, name: str) -> bool:
    if not isinstance(name, str) or _is_blocked_attribute(name):
        return False
    return hasattr(obj, name)


def _safe_setattr(obj: Any, name: str, value: Any) -> None:
    if not isinstance(name, str) or _is_blocked_attribute(name):
        raise SandboxError(f"Access to private attribute '{name}' is not allowed")
    setattr(obj, name, value)
