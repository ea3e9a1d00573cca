"""Child-process entry point for ``user_code`` handlers.

Run as ``python -I sandbox_worker.py``. Reads one JSON job from stdin and
writes one JSON line to stdout::

    {"ok": true, "value": ..., "logs": [...]}
    {"ok": false, "error": {"type": ..., "message": ...}, "logs": [...]}

This file is executed outside the package and only imports the standard
library.
"""
from __future__ import annotations

import ast
import asyncio
import builtins
import datetime
import importlib
import json
import math
import sys
import textwrap
import types
from collections.abc import Mapping

_ENTRY = "_user_entry"
_MAX_LOG_ENTRIES = 200
_MAX_LOG_CHARS = 2000

_BLOCKED_ATTRIBUTES = frozenset(
    {
        "format",
        "format_map",
        "gi_frame",
        "gi_code",
        "f_globals",
        "f_locals",
        "f_back",
        "f_builtins",
        "tb_frame",
        "cr_frame",
        "cr_code",
        "ag_frame",
        "ag_code",
        "mro",
    }
)

_SAFE_BUILTINS = (
    "abs",
    "all",
    "any",
    "bool",
    "bytes",
    "chr",
    "dict",
    "divmod",
    "enumerate",
    "filter",
    "float",
    "frozenset",
    "hash",
    "int",
    "isinstance",
    "iter",
    "len",
    "list",
    "map",
    "max",
    "min",
    "next",
    "ord",
    "pow",
    "range",
    "repr",
    "reversed",
    "round",
    "set",
    "slice",
    "sorted",
    "str",
    "sum",
    "tuple",
    "zip",
    "ArithmeticError",
    "AssertionError",
    "Exception",
    "IndexError",
    "KeyError",
    "LookupError",
    "NotImplementedError",
    "RuntimeError",
    "StopIteration",
    "TypeError",
    "ValueError",
    "ZeroDivisionError",
)


class SandboxViolation(Exception):
    """User code uses a construct the sandbox does not permit."""


class ReadOnlyView(Mapping):
    """Immutable mapping with attribute access; missing keys read as None.

    Mapping methods (get, items, keys, values) win over payload keys of the
    same name; reach such keys with item access, e.g. ``request.body["items"]``.
    """

    __slots__ = ("_data",)

    def __init__(self, data):
        object.__setattr__(self, "_data", data)

    def __getitem__(self, key):
        return freeze(self._data[key])

    def __iter__(self):
        return iter(self._data)

    def __len__(self):
        return len(self._data)

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return freeze(self._data.get(name))

    def __setattr__(self, name, value):
        raise TypeError("request is read-only")

    def __repr__(self):
        return f"ReadOnlyView({self._data!r})"


class ModuleView:
    """Module proxy that hides private names and nested modules."""

    __slots__ = ("_module",)

    def __init__(self, module):
        object.__setattr__(self, "_module", module)

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        value = getattr(self._module, name)
        if isinstance(value, types.ModuleType):
            raise AttributeError(f"submodule '{name}' is not exposed")
        return value

    def __setattr__(self, name, value):
        raise TypeError("modules are read-only")

    def __repr__(self):
        return f"<module {self._module.__name__}>"


def freeze(value):
    if isinstance(value, dict):
        return ReadOnlyView(value)
    if isinstance(value, list):
        return tuple(freeze(item) for item in value)
    return value


class Console:
    def __init__(self, sink):
        self._sink = sink

    def _emit(self, level, args):
        if len(self._sink) >= _MAX_LOG_ENTRIES:
            return
        message = " ".join(str(arg) for arg in args)[:_MAX_LOG_CHARS]
        self._sink.append({"level": level, "message": message})

    def log(self, *args):
        self._emit("info", args)

    def warn(self, *args):
        self._emit("warning", args)

    def error(self, *args):
        self._emit("error", args)


def apply_limits(limits):
    try:
        import resource
    except ImportError:  # non-POSIX host
        return
    memory = int(limits.get("memoryMb") or 0) * 1024 * 1024
    cpu = int(limits.get("cpuSeconds") or 0)
    fsize = int(limits.get("fileSizeBytes") or 0)
    for name, value in (
        ("RLIMIT_AS", memory),
        ("RLIMIT_CPU", cpu),
        ("RLIMIT_FSIZE", fsize),
        ("RLIMIT_CORE", 0),
    ):
        rlimit = getattr(resource, name, None)
        if rlimit is None or (value <= 0 and name != "RLIMIT_CORE"):
            continue
        try:
            resource.setrlimit(rlimit, (value, value))
        except (ValueError, OSError):
            pass


def check_tree(tree, allowed_modules):
    entry = tree.body[0]
    for node in ast.walk(entry):
        if node is entry:
            continue
        if isinstance(node, ast.Import):
            for alias in node.names:
                _check_module(alias.name, allowed_modules)
        elif isinstance(node, ast.ImportFrom):
            if node.level:
                raise SandboxViolation("relative imports are not permitted")
            _check_module(node.module or "", allowed_modules)
            for alias in node.names:
                if alias.name == "*" or alias.name.startswith("_"):
                    raise SandboxViolation(f"cannot import '{alias.name}'")
        elif isinstance(node, ast.Name) and node.id.startswith("__"):
            raise SandboxViolation(f"name '{node.id}' is not permitted")
        elif isinstance(node, ast.Attribute) and (
            node.attr.startswith("_") or node.attr in _BLOCKED_ATTRIBUTES
        ):
            raise SandboxViolation(f"attribute '{node.attr}' is not permitted")
        elif isinstance(node, (ast.Global, ast.Nonlocal)):
            raise SandboxViolation("global and nonlocal are not permitted")


def _check_module(name, allowed_modules):
    root = name.split(".")[0]
    if root not in allowed_modules:
        raise SandboxViolation(f"module '{name}' is not in allowedModules")


def build_builtins(allowed_modules, console):
    table = {name: getattr(builtins, name) for name in _SAFE_BUILTINS}

    def guarded_import(name, globals=None, locals=None, fromlist=(), level=0):
        if level or name.split(".")[0] not in allowed_modules:
            raise ImportError(f"module '{name}' is not in allowedModules")
        target = name if fromlist else name.split(".")[0]
        return ModuleView(importlib.import_module(target))

    table["__import__"] = guarded_import
    table["print"] = console.log
    table["None"] = None
    table["True"] = True
    table["False"] = False
    return table


def _encode(value):
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, (set, frozenset)):
        return list(value)
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    return str(value)


def run_job(job, logs):
    allowed = set(job.get("allowedModules") or ())
    code = job.get("code") or ""
    source = f"async def {_ENTRY}():\n" + (textwrap.indent(code, "    ") or "    pass")
    if not code.strip():
        source = f"async def {_ENTRY}():\n    return None"
    tree = ast.parse(source, filename="<user_code>", mode="exec")
    check_tree(tree, allowed)

    console = Console(logs)
    namespace = {
        "__builtins__": build_builtins(allowed, console),
        "request": freeze(job.get("request") or {}),
        "context": dict(job.get("context") or {}),
        "console": console,
        "json": ModuleView(json),
        "math": ModuleView(math),
        "datetime": ModuleView(datetime),
    }
    for module in allowed:
        namespace[module] = ModuleView(importlib.import_module(module))
    exec(compile(tree, "<user_code>", "exec"), namespace)
    return asyncio.run(namespace[_ENTRY]())


def main():
    job = json.loads(sys.stdin.read() or "{}")
    apply_limits(job.get("limits") or {})
    protocol_out = sys.stdout
    # stray writes from user code must not corrupt the result line
    sys.stdout = sys.stderr
    logs = []
    try:
        value = run_job(job, logs)
        line = json.dumps({"ok": True, "value": value, "logs": logs}, default=_encode)
    except SyntaxError as exc:
        line = json.dumps(
            {
                "ok": False,
                "error": {"type": "SyntaxError", "message": f"{exc.msg} (line {max(1, (exc.lineno or 1) - 1)})"},
                "logs": logs,
            }
        )
    except SandboxViolation as exc:
        line = json.dumps(
            {"ok": False, "error": {"type": "SandboxViolation", "message": str(exc)}, "logs": logs}
        )
    except BaseException as exc:
        line = json.dumps(
            {
                "ok": False,
                "error": {"type": type(exc).__name__, "message": str(exc)},
                "logs": logs,
            },
            default=_encode,
        )
    protocol_out.write(line + "\n")
    protocol_out.flush()


if __name__ == "__main__":
    main()
