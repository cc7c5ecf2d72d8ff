"""A text template engine with the action syntax and common helper functions of Go templates."""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

_MISSING = object()


class TemplateError(Exception):
    """Raised when a template cannot be parsed or executed."""


def format_go_time(value: datetime) -> str:
    """Format a datetime the way Go prints a time.Time value."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d} "
        f"{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset() or timedelta(0)
    total = int(offset.total_seconds()) // 60
    sign = "-" if total < 0 else "+"
    hours, minutes = divmod(abs(total), 60)
    numeric = f"{sign}{hours:02d}{minutes:02d}"
    name = value.tzname()
    if total == 0 and (name is None or name.startswith("UTC")):
        name = "UTC"
    elif not name or not name.isalpha():
        name = numeric
    return f"{text} {numeric} {name}"


def _stringify(value: Any) -> str:
    if value is None or value is _MISSING:
        return "<no value>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return format_go_time(value)
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_stringify(item) for item in value) + "]"
    if isinstance(value, Mapping):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        return "map[" + " ".join(f"{_stringify(k)}:{_stringify(v)}" for k, v in items) + "]"
    return str(value)


def _truthy(value: Any) -> bool:
    if value is _MISSING:
        return False
    if isinstance(value, datetime):
        return True
    return bool(value)


# helper functions


def _and(*args: Any) -> Any:
    for arg in args:
        if not _truthy(arg):
            return arg
    return args[-1]


def _or(*args: Any) -> Any:
    for arg in args:
        if _truthy(arg):
            return arg
    return args[-1]


def _print(*args: Any) -> str:
    out = []
    for index, arg in enumerate(args):
        if index and not isinstance(arg, str) and not isinstance(args[index - 1], str):
            out.append(" ")
        out.append(_stringify(arg))
    return "".join(out)


_VERB = re.compile(r"%([-+ 0#]*\d*(?:\.\d+)?)([vsdqtfx%])")


def _printf(fmt: str, *args: Any) -> str:
    remaining = iter(args)

    def convert(match: re.Match[str]) -> str:
        flags, verb = match.groups()
        if verb == "%":
            return "%"
        arg = next(remaining, _MISSING)
        if arg is _MISSING:
            return f"%!{verb}(MISSING)"
        if verb in "vs":
            return _stringify(arg)
        if verb == "d":
            return str(int(arg))
        if verb == "q":
            return json.dumps(_stringify(arg))
        if verb == "t":
            return _stringify(bool(arg))
        if verb == "f":
            return format(float(arg), f"{flags}f")
        if isinstance(arg, int):
            return format(arg, "x")
        return _stringify(arg).encode().hex()

    return _VERB.sub(convert, fmt)


def _cat(*args: Any) -> str:
    return " ".join(_stringify(arg) for arg in args if arg is not None)


def _default(default: Any, given: Any = None) -> Any:
    return given if _truthy(given) else default


def _substr(start: int, end: int, text: str) -> str:
    if start < 0:
        return text[:end]
    if end < 0 or end > len(text):
        return text[start:]
    return text[start:end]


def _trim_prefix(prefix: str, text: str) -> str:
    return text[len(prefix):] if prefix and text.startswith(prefix) else text


def _trim_suffix(suffix: str, text: str) -> str:
    return text[: -len(suffix)] if suffix and text.endswith(suffix) else text


FUNCTIONS: dict[str, Callable[..., Any]] = {
    "and": _and,
    "or": _or,
    "not": lambda value: not _truthy(value),
    "eq": lambda first, *others: any(first == other for other in others),
    "ne": lambda first, second: first != second,
    "lt": lambda first, second: first < second,
    "le": lambda first, second: first <= second,
    "gt": lambda first, second: first > second,
    "ge": lambda first, second: first >= second,
    "len": len,
    "print": _print,
    "printf": _printf,
    "println": lambda *args: " ".join(_stringify(arg) for arg in args) + "\n",
    "lower": lambda text: _stringify(text).lower(),
    "upper": lambda text: _stringify(text).upper(),
    "title": lambda text: _stringify(text).title(),
    "trim": lambda text: _stringify(text).strip(),
    "trimAll": lambda cutset, text: _stringify(text).strip(cutset),
    "trimPrefix": lambda prefix, text: _trim_prefix(prefix, _stringify(text)),
    "trimSuffix": lambda suffix, text: _trim_suffix(suffix, _stringify(text)),
    "replace": lambda old, new, text: _stringify(text).replace(old, new),
    "contains": lambda sub, text: sub in _stringify(text),
    "hasPrefix": lambda prefix, text: _stringify(text).startswith(prefix),
    "hasSuffix": lambda suffix, text: _stringify(text).endswith(suffix),
    "repeat": lambda count, text: _stringify(text) * int(count),
    "substr": _substr,
    "nospace": lambda text: "".join(_stringify(text).split()),
    "quote": lambda *args: " ".join(json.dumps(_stringify(arg)) for arg in args if arg is not None),
    "squote": lambda *args: " ".join(f"'{_stringify(arg)}'" for arg in args if arg is not None),
    "cat": _cat,
    "join": lambda sep, items: sep.join(_stringify(item) for item in items),
    "default": _default,
    "empty": lambda value: not _truthy(value),
    "toString": _stringify,
    "toJson": lambda value: json.dumps(value, default=_stringify, separators=(",", ":")),
}


# lexing and parsing

_LEXEME_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<pipe>\|)
    |(?P<lparen>\()
    |(?P<rparen>\))
    |(?P<string>"(?:[^"\\]|\\.)*")
    |(?P<raw>`[^`]*`)
    |(?P<number>-?\d+(?:\.\d+)?)
    |(?P<field>\.(?:[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*)?)
    |(?P<ident>[A-Za-z_]\w*)
    """,
    re.VERBOSE,
)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", '"': '"', "'": "'", "0": "\0"}


def _unquote(literal: str) -> str:
    out = []
    chars = iter(literal[1:-1])
    for char in chars:
        if char != "\\":
            out.append(char)
            continue
        escaped = next(chars, "")
        if escaped not in _ESCAPES:
            raise TemplateError(f"invalid escape sequence \\{escaped} in {literal}")
        out.append(_ESCAPES[escaped])
    return "".join(out)


def _lex(body: str) -> list[tuple[str, str]]:
    lexemes = []
    pos = 0
    while pos < len(body):
        match = _LEXEME_PATTERN.match(body, pos)
        if match is None:
            raise TemplateError(f"unexpected {body[pos]!r} in command")
        pos = match.end()
        kind = match.lastgroup or ""
        if kind != "ws":
            lexemes.append((kind, match.group()))
    return lexemes


Operand = tuple[str, Any]
Command = list[Operand]
Pipeline = list[Command]


def _operand(kind: str, value: str) -> Operand:
    if kind == "string":
        return ("lit", _unquote(value))
    if kind == "raw":
        return ("lit", value[1:-1])
    if kind == "number":
        return ("lit", float(value) if "." in value else int(value))
    if kind == "field":
        return ("field", tuple(value[1:].split(".")) if len(value) > 1 else ())
    if value in ("true", "false"):
        return ("lit", value == "true")
    if value == "nil":
        return ("lit", None)
    if value not in FUNCTIONS:
        raise TemplateError(f'function "{value}" not defined')
    return ("func", value)


def _parse_pipeline(
    lexemes: list[tuple[str, str]], pos: int = 0, closing: bool = False
) -> tuple[Pipeline, int]:
    commands: Pipeline = []
    current: Command = []
    while pos < len(lexemes):
        kind, value = lexemes[pos]
        if kind == "rparen":
            if not closing:
                raise TemplateError("unexpected right paren")
            break
        if kind == "pipe":
            if not current:
                raise TemplateError("missing command before |")
            commands.append(current)
            current = []
        elif kind == "lparen":
            sub, pos = _parse_pipeline(lexemes, pos + 1, closing=True)
            current.append(("pipeline", sub))
        else:
            current.append(_operand(kind, value))
        pos += 1
    else:
        if closing:
            raise TemplateError("unclosed left paren")
    if not current:
        raise TemplateError("missing value for command")
    commands.append(current)
    return commands, pos


@dataclass
class _Text:
    text: str


@dataclass
class _Action:
    pipeline: Pipeline


@dataclass
class _If:
    pipeline: Pipeline
    then: list[Any] = field(default_factory=list)
    otherwise: list[Any] = field(default_factory=list)


def _lookup(dot: Any, path: tuple[str, ...]) -> Any:
    value = dot
    for name in path:
        if isinstance(value, Mapping):
            if name not in value:
                raise TemplateError(f"can't evaluate field {name}")
            value = value[name]
        elif hasattr(value, name):
            value = getattr(value, name)
        else:
            raise TemplateError(f"can't evaluate field {name} in type {type(value).__name__}")
    return value


class Template:
    """A parsed template ready to be executed against data."""

    def __init__(self, nodes: list[Any], source: str = "") -> None:
        self._nodes = nodes
        self.source = source

    def execute(self, data: Any) -> str:
        """Render the template with data as the dot value."""
        out: list[str] = []
        self._run(self._nodes, data, out)
        return "".join(out)

    def _run(self, nodes: list[Any], dot: Any, out: list[str]) -> None:
        for node in nodes:
            if isinstance(node, _Text):
                out.append(node.text)
            elif isinstance(node, _Action):
                out.append(_stringify(self._pipeline(node.pipeline, dot)))
            else:
                branch = node.then if _truthy(self._pipeline(node.pipeline, dot)) else node.otherwise
                self._run(branch, dot, out)

    def _pipeline(self, pipeline: Pipeline, dot: Any) -> Any:
        value: Any = _MISSING
        for command in pipeline:
            value = self._command(command, dot, value)
        return value

    def _value(self, operand: Operand, dot: Any) -> Any:
        kind, payload = operand
        if kind == "lit":
            return payload
        if kind == "field":
            return _lookup(dot, payload)
        if kind == "pipeline":
            return self._pipeline(payload, dot)
        return self._call(payload, [])

    def _call(self, name: str, args: list[Any]) -> Any:
        try:
            return FUNCTIONS[name](*args)
        except TemplateError:
            raise
        except Exception as exc:
            raise TemplateError(f"error calling {name}: {exc}") from exc

    def _command(self, command: Command, dot: Any, piped: Any) -> Any:
        kind, payload = command[0]
        if kind == "func":
            args = [self._value(operand, dot) for operand in command[1:]]
            if piped is not _MISSING:
                args.append(piped)
            return self._call(payload, args)
        if len(command) > 1 or piped is not _MISSING:
            raise TemplateError("can't give argument to non-function")
        return self._value(command[0], dot)


def parse_template(text: str) -> Template:
    """Parse template text into a Template, raising TemplateError on bad syntax."""
    root: list[Any] = []
    stack: list[list[Any]] = []  # [if node, in else branch, chained from else-if]

    def target() -> list[Any]:
        if not stack:
            return root
        node, in_else, _ = stack[-1]
        return node.otherwise if in_else else node.then

    pos = 0
    trim_next = False
    while True:
        start = text.find("{{", pos)
        chunk = text[pos:] if start < 0 else text[pos:start]
        if trim_next:
            chunk = chunk.lstrip()
        if start < 0:
            if chunk:
                target().append(_Text(chunk))
            break
        inner = start + 2
        if text[inner:inner + 1] == "-" and text[inner + 1:inner + 2] in (" ", "\t", "\n", "\r"):
            chunk = chunk.rstrip()
            inner += 1
        if chunk:
            target().append(_Text(chunk))
        end = text.find("}}", inner)
        if end < 0:
            raise TemplateError("unclosed action")
        body = text[inner:end]
        pos = end + 2
        trim_next = len(body) >= 2 and body.endswith("-") and body[-2].isspace()
        if trim_next:
            body = body[:-1]
        body = body.strip()
        if body.startswith("/*"):
            if not body.endswith("*/"):
                raise TemplateError("unclosed comment")
            continue
        lexemes = _lex(body)
        if not lexemes:
            raise TemplateError("missing value for command")
        kind, word = lexemes[0]
        keyword = word if kind == "ident" else ""
        if keyword == "if":
            pipeline, _ = _parse_pipeline(lexemes[1:])
            node = _If(pipeline)
            target().append(node)
            stack.append([node, False, False])
        elif keyword == "else":
            if not stack or stack[-1][1]:
                raise TemplateError("unexpected {{else}}")
            entry = stack[-1]
            entry[1] = True
            if len(lexemes) > 1:
                if lexemes[1] != ("ident", "if"):
                    raise TemplateError("unexpected word after else")
                pipeline, _ = _parse_pipeline(lexemes[2:])
                node = _If(pipeline)
                entry[0].otherwise.append(node)
                stack.append([node, False, True])
        elif keyword == "end":
            if len(lexemes) > 1 or not stack:
                raise TemplateError("unexpected {{end}}")
            while stack.pop()[2]:
                pass
        elif keyword in ("range", "with", "define", "template", "block", "break", "continue"):
            raise TemplateError(f"unsupported action {keyword}")
        else:
            pipeline, _ = _parse_pipeline(lexemes)
            target().append(_Action(pipeline))
    if stack:
        raise TemplateError("unexpected EOF")
    return Template(root, text)