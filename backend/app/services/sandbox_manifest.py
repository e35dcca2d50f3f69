from __future__ import annotations

import json
import logging
import posixpath
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, Iterable, Mapping, Optional

from app.core.config import SandboxSettings
from app.services.sandbox_errors import ManifestError, SandboxError
from app.services.sandbox_file_tracker import normalize_tracked_path
from app.services.sandbox_project_template import (
    ENUMERATE_FILES_SCRIPT,
    EXCLUDED_DIRS,
    MANIFEST_EXTENSIONS,
    STRUCTURE_MAX_FILES_PER_DIR,
    STRUCTURE_MAX_LINES,
    build_project_skeleton,
)
from app.services.sandbox_providers import python_command
from app.services.sandbox_session import SandboxSession
from app.services.sandbox_source_parser import (
    JS_SOURCE_EXTENSIONS,
    ImportSpec,
    ParsedSource,
    parse_source,
)

if TYPE_CHECKING:
    from app.services.sandbox_session_registry import SandboxSessionRegistry


logger = logging.getLogger(__name__)

ENTRY_POINT_CANDIDATES = (
    "src/main.jsx",
    "src/main.tsx",
    "src/index.jsx",
    "src/index.tsx",
    "src/main.js",
    "src/main.ts",
    "src/index.js",
    "src/index.ts",
    "src/App.jsx",
    "src/App.tsx",
    "App.jsx",
    "App.tsx",
)
RESOLVE_EXTENSIONS = JS_SOURCE_EXTENSIONS + (".css", ".json")
DEMO_MANIFEST_WARNING = "Demo sandbox: manifest built from the starter template, no live files were read"

ROUTER_OBJECT_APIS = ("createBrowserRouter", "createHashRouter", "createMemoryRouter", "createRoutes", "useRoutes")

_JSX_ROUTE_RE = re.compile(r"path=[\"']([^\"']+)[\"'][^\n]*?(?:element|component)=\{([^}]+)\}")
_OBJECT_ROUTE_RE = re.compile(
    r"\{\s*path\s*:\s*[\"']([^\"']+)[\"']\s*,[^{}]*?\b(?:element|component|Component)\s*:\s*([^,}\n]+)"
)
_PAGES_PREFIX_RE = re.compile(r"^(src/)?pages/")
_SOURCE_EXTENSION_RE = re.compile(r"\.(jsx?|tsx?)$")
_COMPONENT_REF_RE = re.compile(r"[A-Za-z_$][\w$.]*")


@dataclass(frozen=True)
class FileRecord:
    path: str
    relative_path: str
    content: str
    kind: str
    last_modified: float
    imports: tuple[ImportSpec, ...] = ()
    exports: tuple[str, ...] = ()
    component_name: Optional[str] = None
    parse_error: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "relativePath": self.relative_path,
            "content": self.content,
            "type": self.kind,
            "lastModified": self.last_modified,
            "imports": [
                {
                    "source": spec.source,
                    "kind": spec.kind,
                    "defaultImport": spec.default,
                    "imports": list(spec.names),
                    "isLocal": spec.is_local,
                }
                for spec in self.imports
            ],
            "exports": list(self.exports),
            "componentName": self.component_name,
            "parseError": self.parse_error,
        }


@dataclass(frozen=True)
class RouteEntry:
    path: str
    file: str
    component: Optional[str] = None
    source: str = "router"


@dataclass(frozen=True)
class SandboxManifest:
    files: Mapping[str, FileRecord]
    entry_point: Optional[str]
    style_files: tuple[str, ...]
    import_graph: Mapping[str, tuple[str, ...]]
    routes: tuple[RouteEntry, ...]
    structure: str
    warnings: tuple[str, ...]
    built_at: datetime
    is_demo: bool = False

    def reachable_from(self, path: str) -> tuple[str, ...]:
        """Every file transitively imported by ``path``, excluding itself unless in a cycle."""
        return _walk(path, lambda node: self.import_graph.get(node, ()))

    def imported_by(self, path: str) -> tuple[str, ...]:
        """Every file that transitively imports ``path``."""
        reverse: Dict[str, list[str]] = {}
        for source, targets in self.import_graph.items():
            for target in targets:
                reverse.setdefault(target, []).append(source)
        return _walk(path, lambda node: reverse.get(node, ()))

    def to_payload(self) -> Dict[str, Any]:
        return {
            "files": {path: record.to_payload() for path, record in self.files.items()},
            "entryPoint": self.entry_point,
            "styleFiles": list(self.style_files),
            "importGraph": {path: list(targets) for path, targets in self.import_graph.items()},
            "routes": [
                {"path": route.path, "component": route.file, "componentName": route.component, "source": route.source}
                for route in self.routes
            ],
            "structure": self.structure,
            "warnings": list(self.warnings),
            "timestamp": self.built_at.isoformat(),
            "isDemo": self.is_demo,
        }


def _walk(start: str, neighbours) -> tuple[str, ...]:
    visited: set[str] = set()
    order: list[str] = []
    stack = list(reversed(tuple(neighbours(start))))
    while stack:
        node = stack.pop()
        if node in visited:
            continue
        visited.add(node)
        order.append(node)
        stack.extend(reversed(tuple(neighbours(node))))
    return tuple(order)


def _resolve_import(from_relative: str, source: str, known: set[str]) -> Optional[str]:
    if source.startswith("/"):
        base = posixpath.normpath(source.lstrip("/"))
    else:
        base = posixpath.normpath(posixpath.join(posixpath.dirname(from_relative), source))
    if base.startswith("..") or base == ".":
        return None
    candidates = [base]
    candidates.extend(f"{base}{ext}" for ext in RESOLVE_EXTENSIONS)
    candidates.extend(f"{base}/index{ext}" for ext in JS_SOURCE_EXTENSIONS)
    for candidate in candidates:
        if candidate in known:
            return candidate
    return None


def _component_ref(raw: str) -> Optional[str]:
    match = _COMPONENT_REF_RE.search(raw.strip().lstrip("<"))
    return match.group(0) if match else None


def _page_route(relative_path: str) -> Optional[str]:
    if not _PAGES_PREFIX_RE.match(relative_path) or not _SOURCE_EXTENSION_RE.search(relative_path):
        return None
    route = _SOURCE_EXTENSION_RE.sub("", _PAGES_PREFIX_RE.sub("", relative_path))
    route = re.sub(r"(^|/)index$", r"\1", route)
    route = "/" + route
    if len(route) > 1:
        route = route.rstrip("/")
    return route


def extract_routes(files: Mapping[str, FileRecord]) -> tuple[RouteEntry, ...]:
    routes: list[RouteEntry] = []
    for path, record in files.items():
        content = record.content
        if "<Route" in content:
            for match in _JSX_ROUTE_RE.finditer(content):
                routes.append(RouteEntry(path=match.group(1), file=path, component=_component_ref(match.group(2))))
        if "path" in content and any(api in content for api in ROUTER_OBJECT_APIS):
            for match in _OBJECT_ROUTE_RE.finditer(content):
                routes.append(RouteEntry(path=match.group(1), file=path, component=_component_ref(match.group(2))))
        page_route = _page_route(record.relative_path)
        if page_route is not None:
            routes.append(RouteEntry(path=page_route, file=path, component=record.component_name, source="pages"))
    return tuple(routes)


def render_structure(relative_paths: Iterable[str], root_name: str = "app") -> str:
    """Render an indented listing like the remote enumeration does."""
    tree: Dict[str, list[str]] = {"": []}
    for rel in sorted(relative_paths):
        parent = posixpath.dirname(rel)
        tree.setdefault(parent, []).append(posixpath.basename(rel))
        while parent:
            grand = posixpath.dirname(parent)
            tree.setdefault(grand, [])
            tree.setdefault(parent, [])
            parent = grand

    lines: list[str] = []

    def _emit(directory: str, level: int) -> None:
        if len(lines) >= STRUCTURE_MAX_LINES:
            return
        name = posixpath.basename(directory) or root_name
        lines.append(f"{'  ' * level}{name}/")
        for file_name in tree.get(directory, [])[:STRUCTURE_MAX_FILES_PER_DIR]:
            lines.append(f"{'  ' * (level + 1)}{file_name}")
        children = sorted(d for d in tree if d and posixpath.dirname(d) == directory)
        for child in children:
            _emit(child, level + 1)

    _emit("", 0)
    return "\n".join(lines[:STRUCTURE_MAX_LINES])


def assemble_manifest(
    *,
    app_dir: str,
    raw_files: Mapping[str, Any],
    structure: str,
    warnings: Iterable[str] = (),
    is_demo: bool = False,
) -> SandboxManifest:
    """Build a manifest from ``relative path -> content`` (or ``{content, mtime}``)."""
    app_dir = app_dir.rstrip("/") or "/"
    now = time.time()
    collected_warnings = list(warnings)
    records: Dict[str, FileRecord] = {}
    relative_to_absolute: Dict[str, str] = {}
    style_files: list[str] = []

    for relative_path, raw in raw_files.items():
        if isinstance(raw, Mapping):
            content = raw.get("content")
            mtime = raw.get("mtime") or now
        else:
            content, mtime = raw, now
        if not isinstance(content, str):
            logger.warning("Skipping non-text content for %s", relative_path)
            continue
        rel = normalize_tracked_path(relative_path)
        full_path = posixpath.join(app_dir, rel)
        relative_to_absolute[rel] = full_path

        kind = "utility"
        imports: tuple[ImportSpec, ...] = ()
        exports: tuple[str, ...] = ()
        component_name: Optional[str] = None
        parse_error: Optional[str] = None
        if rel.endswith(".css"):
            kind = "style"
            style_files.append(full_path)
        elif rel.endswith(JS_SOURCE_EXTENSIONS):
            parsed = parse_source(content, rel)
            if isinstance(parsed, ParsedSource):
                imports = parsed.imports
                exports = parsed.exports
                component_name = parsed.component_name
                if parsed.has_jsx:
                    kind = "component"
            else:
                parse_error = parsed.reason
                logger.debug("Could not parse %s: %s", rel, parsed.reason)

        records[full_path] = FileRecord(
            path=full_path,
            relative_path=rel,
            content=content,
            kind=kind,
            last_modified=float(mtime),
            imports=imports,
            exports=exports,
            component_name=component_name,
            parse_error=parse_error,
        )

    entry_point: Optional[str] = None
    for candidate in ENTRY_POINT_CANDIDATES:
        full_path = relative_to_absolute.get(candidate)
        if full_path is None:
            continue
        entry_point = full_path
        record = records[full_path]
        records[full_path] = FileRecord(
            path=record.path,
            relative_path=record.relative_path,
            content=record.content,
            kind="entry",
            last_modified=record.last_modified,
            imports=record.imports,
            exports=record.exports,
            component_name=record.component_name,
            parse_error=record.parse_error,
        )
        break

    known = set(relative_to_absolute)
    graph: Dict[str, tuple[str, ...]] = {}
    for full_path, record in records.items():
        targets: list[str] = []
        for spec in record.imports:
            if not spec.is_local:
                continue
            resolved = _resolve_import(record.relative_path, spec.source, known)
            if resolved is not None:
                targets.append(relative_to_absolute[resolved])
        graph[full_path] = tuple(dict.fromkeys(targets))

    return SandboxManifest(
        files=MappingProxyType(records),
        entry_point=entry_point,
        style_files=tuple(style_files),
        import_graph=MappingProxyType(graph),
        routes=extract_routes(records),
        structure=structure,
        warnings=tuple(collected_warnings),
        built_at=datetime.now(timezone.utc),
        is_demo=is_demo,
    )


class SandboxManifestBuilder:
    def __init__(self, settings: SandboxSettings, *, registry: "SandboxSessionRegistry | None" = None):
        self._settings = settings
        self._registry = registry

    async def build(self, session: SandboxSession) -> SandboxManifest:
        if session.is_demo:
            skeleton = build_project_skeleton(dev_port=self._settings.dev_port)
            manifest = assemble_manifest(
                app_dir=session.app_dir,
                raw_files=skeleton,
                structure=render_structure(skeleton.keys()),
                warnings=(DEMO_MANIFEST_WARNING,),
                is_demo=True,
            )
        else:
            payload = await self._enumerate(session)
            files = payload.get("files") or {}
            if not isinstance(files, dict):
                raise ManifestError("Sandbox file listing has an unexpected shape", code="OUTPUT_PARSE_FAILED")
            manifest = assemble_manifest(
                app_dir=session.app_dir,
                raw_files=files,
                structure=str(payload.get("structure") or ""),
                warnings=[str(item) for item in payload.get("errors") or []],
            )

        for record in manifest.files.values():
            session.tracker.add(record.relative_path)
        if self._registry is not None:
            self._registry.remember_manifest(session, manifest)
        logger.info(
            "Built manifest for sandbox %s: %d files, %d warnings",
            session.sandbox_id,
            len(manifest.files),
            len(manifest.warnings),
        )
        return manifest

    async def _enumerate(self, session: SandboxSession) -> Dict[str, Any]:
        command = python_command(
            ENUMERATE_FILES_SCRIPT,
            session.app_dir,
            str(self._settings.manifest_max_file_bytes),
            str(STRUCTURE_MAX_LINES),
            str(STRUCTURE_MAX_FILES_PER_DIR),
            json.dumps(list(MANIFEST_EXTENSIONS)),
            json.dumps(list(EXCLUDED_DIRS)),
        )
        try:
            result = await session.provider.exec(
                session.handle,
                command,
                timeout=self._settings.command_timeout_seconds,
            )
        except SandboxError as exc:
            raise ManifestError(
                "Failed to execute file retrieval code in sandbox",
                code="SANDBOX_EXECUTION_FAILED",
                details={"error": exc.message, "cause": exc.code},
            ) from exc
        if result.exit_code not in (0, None):
            raise ManifestError(
                "Failed to execute file retrieval code in sandbox",
                code="SANDBOX_EXECUTION_FAILED",
                details={"error": result.stderr.strip()[:2000], "exit_code": result.exit_code},
            )

        output = result.stdout.strip()
        if not output:
            raise ManifestError("No output received from sandbox file retrieval", code="NO_SANDBOX_OUTPUT")
        try:
            payload = json.loads(output)
        except json.JSONDecodeError:
            try:
                payload = json.loads(output.splitlines()[-1])
            except json.JSONDecodeError as exc:
                raise ManifestError(
                    "Failed to parse sandbox file retrieval output",
                    code="OUTPUT_PARSE_FAILED",
                    details={"parseError": str(exc)},
                ) from exc
        if not isinstance(payload, dict):
            raise ManifestError("Failed to parse sandbox file retrieval output", code="OUTPUT_PARSE_FAILED")
        if not payload.get("success"):
            raise ManifestError(
                f"Sandbox file retrieval failed: {payload.get('error')}",
                code="SANDBOX_OPERATION_FAILED",
                details={"sandboxError": payload.get("error"), "traceback": payload.get("traceback")},
            )
        return payload
