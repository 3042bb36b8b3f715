"""CommonJS wrapper applied to code files before they are stored remotely.

User code is stored inside a `_main` function registered through
`__defineModule__`. Module options (for example `{"loadNow": true}`) travel as
a JSON second argument of that call, so they are part of the stored bytes.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any

from loguru import logger

from scriptflow.models import FileKind


SPECIAL_MODULES = {"appsscript", "CommonJS", "__mcp_gas_run"}
WRAPPER_HEADER = (
    "function _main(\n"
    "  module = globalThis.__getCurrentModule(),\n"
    "  exports = module.exports,\n"
    "  require = globalThis.require\n"
    ") {"
)

_MAIN_FUNCTION = re.compile(r"^\s*function\s+_main\s*\(", re.MULTILINE)
_DEFINE_CALL = re.compile(r"__defineModule__\(\s*_main\s*(?:,\s*(?P<options>.*?))?\s*\)\s*;?\s*$", re.DOTALL)


@dataclass(frozen=True, slots=True)
class UnwrapResult:
    inner_content: str
    options: dict[str, Any] = field(default_factory=dict)
    was_wrapped: bool = False


def module_name_for(filename: str) -> str:
    path = PurePosixPath(filename)
    if path.suffix in {".js", ".gs"}:
        return path.with_suffix("").as_posix()
    return path.as_posix()


def should_wrap(kind: FileKind, filename: str) -> bool:
    if kind is not FileKind.CODE:
        return False
    base = PurePosixPath(filename).name.split(".")[0]
    return base not in SPECIAL_MODULES


def is_wrapped(content: str) -> bool:
    return bool(_MAIN_FUNCTION.search(content)) and "__defineModule__(" in content


def _define_call(options: dict[str, Any] | None) -> str:
    if not options:
        return "__defineModule__(_main);"
    return f"__defineModule__(_main, {json.dumps(options, sort_keys=True)});"


def wrap(content: str, module_name: str, options: dict[str, Any] | None = None) -> str:
    trimmed = content.strip()
    if is_wrapped(trimmed):
        unwrapped = unwrap(trimmed)
        trimmed = unwrapped.inner_content
        if options is None:
            options = unwrapped.options

    logger.debug(f"wrapping module {module_name}")
    if not trimmed:
        body = "  // empty module"
    else:
        body = "\n".join(f"  {line}" if line else "" for line in trimmed.split("\n"))
    return f"{WRAPPER_HEADER}\n{body}\n}}\n\n{_define_call(options)}"


def _parse_options(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"ignoring unparseable module options: {raw[:80]}")
        return {}
    if not isinstance(value, dict):
        return {}
    return value


def unwrap(content: str) -> UnwrapResult:
    lines = content.split("\n")

    start = next(
        (index for index, line in enumerate(lines) if line.strip().startswith("function _main")),
        None,
    )
    if start is None:
        return UnwrapResult(inner_content=content)

    open_line = next((index for index in range(start, len(lines)) if ") {" in lines[index]), None)
    if open_line is None:
        return UnwrapResult(inner_content=content)

    depth = 0
    seen_open = False
    end = None
    for index in range(open_line, len(lines)):
        for char in lines[index]:
            if char == "{":
                depth += 1
                seen_open = True
            elif char == "}":
                depth -= 1
                if seen_open and depth == 0:
                    end = index
                    break
        if end is not None:
            break
    if end is None:
        return UnwrapResult(inner_content=content)

    inner = [line[2:] if line.startswith("  ") else line for line in lines[open_line + 1 : end]]
    inner_text = "\n".join(inner).strip()
    if inner_text == "// empty module":
        inner_text = ""

    tail = "\n".join(lines[end + 1 :]).strip()
    match = _DEFINE_CALL.search(tail)
    options = _parse_options(match.group("options")) if match else {}
    return UnwrapResult(inner_content=inner_text, options=options, was_wrapped=True)


def to_wire(kind: FileKind, filename: str, content: str, options: dict[str, Any] | None = None) -> str:
    """Render local content the way the remote store holds it.

    Unwrapped content is wrapped with `options`, normally those of the remote copy.
    """
    if should_wrap(kind, filename) and not is_wrapped(content):
        return wrap(content, module_name_for(filename), options)
    return content


def to_display(kind: FileKind, filename: str, content: str) -> str:
    if should_wrap(kind, filename):
        return unwrap(content).inner_content
    return content
