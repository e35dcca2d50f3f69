from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class ImportSpec:
    source: str
    kind: str
    default: Optional[str] = None
    names: tuple[str, ...] = ()
    namespace: Optional[str] = None

    @property
    def is_local(self) -> bool:
        return self.source.startswith(("./", "../", "/")) or self.source in {".", ".."}


@dataclass(frozen=True)
class ParsedSource:
    imports: tuple[ImportSpec, ...]
    exports: tuple[str, ...]
    default_export: Optional[str]
    component_name: Optional[str]
    has_jsx: bool


@dataclass(frozen=True)
class UnparsedSource:
    reason: str


SourceParseResult = Union[ParsedSource, UnparsedSource]

JS_SOURCE_EXTENSIONS = (".js", ".jsx", ".ts", ".tsx")

_IDENT = r"[A-Za-z_$][\w$]*"
_STATIC_IMPORT_RE = re.compile(
    r"\bimport\s+(?:type\s+)?(?P<clause>[\w$*{}\s,]+?)\s+from\s*(?P<q>['\"])(?P<source>[^'\"]+)(?P=q)"
)
_SIDE_EFFECT_IMPORT_RE = re.compile(r"\bimport\s*(?P<q>['\"])(?P<source>[^'\"]+)(?P=q)")
_REEXPORT_RE = re.compile(
    r"\bexport\s+(?:type\s+)?(?P<clause>\*(?:\s+as\s+" + _IDENT + r")?|\{[^}]*\})\s*from\s*(?P<q>['\"])(?P<source>[^'\"]+)(?P=q)"
)
_REQUIRE_RE = re.compile(r"\brequire\(\s*(?P<q>['\"])(?P<source>[^'\"]+)(?P=q)\s*\)")
_DYNAMIC_IMPORT_RE = re.compile(r"\bimport\(\s*(?P<q>['\"`])(?P<source>[^'\"`]+)(?P=q)\s*\)")

_EXPORT_DEFAULT_DECL_RE = re.compile(
    r"\bexport\s+default\s+(?:async\s+)?(?:function\s*\*?|class)\s*(?P<name>" + _IDENT + r")?"
)
_EXPORT_DEFAULT_IDENT_RE = re.compile(r"\bexport\s+default\s+(?P<name>" + _IDENT + r")\s*;?\s*$", re.MULTILINE)
_EXPORT_DECL_RE = re.compile(
    r"\bexport\s+(?:declare\s+)?(?:async\s+)?(?:const|let|var|function\s*\*?|class|type|interface|enum)\s+(?P<name>"
    + _IDENT
    + r")"
)
_EXPORT_LIST_RE = re.compile(r"\bexport\s*\{(?P<names>[^}]*)\}(?!\s*from)")

_JSX_RE = re.compile(r"(?:^|[(=?:,{\[]|&&|\|\||\breturn)\s*<(?:[A-Za-z][\w.:-]*[\s/>]|>)", re.MULTILINE)
_COMPONENT_DECL_RE = re.compile(
    r"\bfunction\s+(?P<fn>[A-Z][\w$]*)\s*\(|\b(?:const|let|var)\s+(?P<var>[A-Z][\w$]*)\s*(?::[^=]+)?=|\bclass\s+(?P<cls>[A-Z][\w$]*)"
)

_DECLARATION_KEYWORDS = {"function", "class", "async"}
_PAIRS = {")": "(", "]": "[", "}": "{"}
# A "/" after one of these starts a regex literal rather than a division.
_REGEX_PRECEDERS = set("(,=:[!&|?{;+-*%~^")
_REGEX_KEYWORDS = {"return", "typeof", "case", "in", "of", "delete", "void", "throw", "yield", "await", "else"}


def _is_ident_char(ch: str) -> bool:
    return ch.isalnum() or ch in "_$"


def _scan(content: str) -> tuple[str, str]:
    """Return ``(code, skeleton)``.

    ``code`` has comments blanked; ``skeleton`` additionally blanks string and
    regex literal contents so bracket balance can be checked. Raises
    ``ValueError`` on an unterminated comment or template literal.
    """
    code: list[str] = []
    skeleton: list[str] = []
    prev = ""
    word = ""
    word_open = False
    i = 0
    length = len(content)
    while i < length:
        ch = content[i]
        nxt = content[i + 1] if i + 1 < length else ""
        # "https://..." in JSX text is not a comment.
        if ch == "/" and nxt == "/" and (i == 0 or content[i - 1] != ":"):
            end = content.find("\n", i)
            end = length if end == -1 else end
            blank = " " * (end - i)
            code.append(blank)
            skeleton.append(blank)
            word_open = False
            i = end
            continue
        if ch == "/" and nxt == "*":
            end = content.find("*/", i + 2)
            if end == -1:
                raise ValueError("unterminated block comment")
            chunk = content[i : end + 2]
            blank = "".join("\n" if c == "\n" else " " for c in chunk)
            code.append(blank)
            skeleton.append(blank)
            word_open = False
            i = end + 2
            continue
        if ch == "/" and (prev == "" or prev in _REGEX_PRECEDERS or word in _REGEX_KEYWORDS):
            end = _regex_end(content, i)
            if end is not None:
                while end + 1 < length and content[end + 1].isalpha():
                    end += 1
                chunk = content[i : end + 1]
                code.append(chunk)
                skeleton.append("/" + " " * (len(chunk) - 1))
                prev, word, word_open = "/", "", False
                i = end + 1
                continue
        if ch in {"'", '"', "`"}:
            end = _string_end(content, i)
            if end is None:
                if ch == "`":
                    raise ValueError("unterminated template literal")
                # A lone quote in JSX text ("Don't") is not a string.
                code.append(ch)
                skeleton.append(" ")
                i += 1
                continue
            chunk = content[i : end + 1]
            code.append(chunk)
            skeleton.append(ch + "".join("\n" if c == "\n" else " " for c in chunk[1:-1]) + ch)
            prev, word, word_open = ch, "", False
            i = end + 1
            continue
        code.append(ch)
        skeleton.append(ch)
        if ch.isspace():
            word_open = False
        else:
            if _is_ident_char(ch):
                word = word + ch if word_open else ch
                word_open = True
            else:
                word, word_open = "", False
            prev = ch
        i += 1
    return "".join(code), "".join(skeleton)


def _regex_end(content: str, start: int) -> Optional[int]:
    """Index of the ``/`` closing a regex literal opened at ``start``, if any."""
    in_class = False
    i = start + 1
    while i < len(content):
        ch = content[i]
        if ch == "\n":
            return None
        if ch == "\\":
            i += 2
            continue
        if in_class:
            if ch == "]":
                in_class = False
        elif ch == "[":
            in_class = True
        elif ch == "/":
            return i if i > start + 1 else None
        i += 1
    return None


def _string_end(content: str, start: int) -> Optional[int]:
    quote = content[start]
    i = start + 1
    while i < len(content):
        ch = content[i]
        if ch == "\\":
            i += 2
            continue
        if ch == quote:
            return i
        if ch == "\n" and quote != "`":
            return None
        i += 1
    return None


def _balance_error(skeleton: str) -> Optional[str]:
    stack: list[tuple[str, int]] = []
    line = 1
    for ch in skeleton:
        if ch == "\n":
            line += 1
        elif ch in "([{":
            stack.append((ch, line))
        elif ch in _PAIRS:
            if not stack or stack[-1][0] != _PAIRS[ch]:
                return f"unexpected '{ch}' on line {line}"
            stack.pop()
    if stack:
        opener, opened_on = stack[-1]
        return f"unclosed '{opener}' opened on line {opened_on}"
    return None


def _bound_names(raw: str) -> list[str]:
    """Names bound by an ``a, b as c`` list: ``[a, c]``."""
    names: list[str] = []
    for part in raw.split(","):
        item = part.strip()
        if item.startswith("type "):
            item = item[5:].strip()
        if not item:
            continue
        names.append(re.split(r"\s+as\s+", item)[-1].strip())
    return names


def _parse_import_clause(clause: str, source: str) -> ImportSpec:
    default: Optional[str] = None
    namespace: Optional[str] = None
    names: list[str] = []
    remaining = clause.strip()
    brace = re.search(r"\{([^}]*)\}", remaining)
    if brace:
        names = _bound_names(brace.group(1))
        remaining = (remaining[: brace.start()] + remaining[brace.end() :]).strip()
    star = re.search(r"\*\s*as\s+(" + _IDENT + r")", remaining)
    if star:
        namespace = star.group(1)
        remaining = (remaining[: star.start()] + remaining[star.end() :]).strip()
    remaining = remaining.strip(", ")
    if remaining and re.fullmatch(_IDENT, remaining):
        default = remaining
    kind = "namespace" if namespace else "static"
    return ImportSpec(source=source, kind=kind, default=default, names=tuple(names), namespace=namespace)


def _collect_imports(code: str) -> tuple[ImportSpec, ...]:
    found: list[tuple[int, ImportSpec]] = []
    static_spans: list[tuple[int, int]] = []
    for match in _STATIC_IMPORT_RE.finditer(code):
        static_spans.append(match.span())
        found.append((match.start(), _parse_import_clause(match.group("clause"), match.group("source"))))
    for match in _SIDE_EFFECT_IMPORT_RE.finditer(code):
        if any(start <= match.start() < end for start, end in static_spans):
            continue
        found.append((match.start(), ImportSpec(source=match.group("source"), kind="side_effect")))
    for match in _REEXPORT_RE.finditer(code):
        found.append((match.start(), ImportSpec(source=match.group("source"), kind="reexport")))
    for match in _REQUIRE_RE.finditer(code):
        found.append((match.start(), ImportSpec(source=match.group("source"), kind="require")))
    for match in _DYNAMIC_IMPORT_RE.finditer(code):
        found.append((match.start(), ImportSpec(source=match.group("source"), kind="dynamic")))
    found.sort(key=lambda item: item[0])
    return tuple(spec for _, spec in found)


def _collect_exports(code: str) -> tuple[tuple[str, ...], Optional[str]]:
    exports: list[str] = []
    default_export: Optional[str] = None
    has_default = False

    for match in _EXPORT_DEFAULT_DECL_RE.finditer(code):
        has_default = True
        default_export = default_export or match.group("name")
    for match in _EXPORT_DEFAULT_IDENT_RE.finditer(code):
        name = match.group("name")
        if name in _DECLARATION_KEYWORDS:
            continue
        has_default = True
        default_export = default_export or name
    if not has_default and re.search(r"\bexport\s+default\b", code):
        has_default = True

    for match in _EXPORT_DECL_RE.finditer(code):
        exports.append(match.group("name"))
    for match in _EXPORT_LIST_RE.finditer(code):
        exports.extend(_bound_names(match.group("names")))

    if has_default:
        exports.append("default")
    return tuple(dict.fromkeys(exports)), default_export


def _component_name(code: str, default_export: Optional[str]) -> Optional[str]:
    if default_export and default_export[:1].isupper():
        return default_export
    match = _COMPONENT_DECL_RE.search(code)
    if not match:
        return None
    return match.group("fn") or match.group("var") or match.group("cls")


def parse_source(content: str, path: str = "") -> SourceParseResult:
    """Best-effort static read of a JS/TS module.

    Never raises: anything that does not look like a well-formed module comes
    back as ``UnparsedSource`` with a reason.
    """
    if not isinstance(content, str):
        return UnparsedSource(reason="content is not text")
    if "\x00" in content:
        return UnparsedSource(reason="binary content")
    try:
        code, skeleton = _scan(content)
    except ValueError as exc:
        return UnparsedSource(reason=str(exc))
    problem = _balance_error(skeleton)
    if problem:
        return UnparsedSource(reason=problem)

    imports = _collect_imports(code)
    exports, default_export = _collect_exports(code)
    allows_jsx = not path.endswith(".ts")
    has_jsx = allows_jsx and bool(_JSX_RE.search(skeleton))
    component_name = _component_name(code, default_export) if has_jsx else None
    return ParsedSource(
        imports=imports,
        exports=exports,
        default_export=default_export,
        component_name=component_name,
        has_jsx=has_jsx,
    )
