"""Codebase context: a stored structural summary of a repository.

The verifier only ever calls :meth:`CodebaseContextProvider.get`; how the
summary was produced is not its concern.  :class:`StoredContextProvider`
keeps one JSON blob per (repository, language) in the ``codebase_index``
table and bumps a version counter on every rebuild.
"""

from __future__ import annotations

import ast
import json
import os
import re
import sqlite3
from pathlib import Path
from typing import Callable, Protocol

import structlog

from bops.core.models import utc_now

logger = structlog.get_logger()

_SKIP_DIRS = frozenset({".git", ".hg", ".svn", "node_modules", "target", "build", "dist", "vendor",
                        "__pycache__", ".venv", "venv", "test", "tests"})

_EXTENSIONS: dict[str, tuple[str, ...]] = {
    "python": (".py",),
    "java": (".java",),
    "javascript": (".js", ".jsx", ".mjs"),
    "typescript": (".ts", ".tsx"),
}

_JAVA_PACKAGE_RE = re.compile(r"^\s*package\s+([\w.]+)\s*;", re.MULTILINE)
_JAVA_TYPE_RE = re.compile(r"\b(?:class|interface|enum|record)\s+(\w+)")
_JS_CLASS_RE = re.compile(r"\bclass\s+(\w+)")
_JS_FUNCTION_RE = re.compile(r"\bfunction\s+(\w+)|\b(?:const|let)\s+(\w+)\s*=\s*(?:async\s*)?\(")
_JS_EXPORT_RE = re.compile(r"\bexport\s+(?:default\s+)?(?:class|function|const|let)\s+(\w+)")

MAX_FILES = 2_000
MAX_SUMMARY_CHARS = 200_000
MAX_FILE_BYTES = 512 * 1024


class CodebaseContextProvider(Protocol):
    def get(self, repository_url: str, language: str) -> str: ...


IndexBuilder = Callable[[Path, str], str]


class StoredContextProvider:
    """Serve and refresh summaries persisted in ``codebase_index``."""

    def __init__(self, conn: sqlite3.Connection, builder: IndexBuilder | None = None) -> None:
        self.conn = conn
        self.builder = builder or summarise_checkout

    def get(self, repository_url: str, language: str) -> str:
        row = self.conn.execute(
            "SELECT index_data FROM codebase_index WHERE repository_url = ? AND lower(language) = lower(?)",
            (repository_url.rstrip("/"), language),
        ).fetchone()
        return row["index_data"] if row else ""

    def version(self, repository_url: str, language: str) -> int:
        row = self.conn.execute(
            "SELECT version FROM codebase_index WHERE repository_url = ? AND lower(language) = lower(?)",
            (repository_url.rstrip("/"), language),
        ).fetchone()
        return row["version"] if row else 0

    def rebuild(self, repository_url: str, language: str, root: Path) -> int:
        """Summarise the checkout at *root*, store it, and return the new version."""
        if not root.is_dir():
            raise FileNotFoundError(f"checkout not found: {root}")
        blob = self.builder(root, language)
        url = repository_url.rstrip("/")
        self.conn.execute(
            """
            INSERT INTO codebase_index (repository_url, language, index_data, version, updated_utc)
            VALUES (?, ?, ?, 1, ?)
            ON CONFLICT(repository_url, language) DO UPDATE SET
                index_data = excluded.index_data,
                version = codebase_index.version + 1,
                updated_utc = excluded.updated_utc
            """,
            (url, language.lower(), blob, utc_now()),
        )
        version = self.version(url, language)
        logger.info("codebase_indexed", repository_url=url, language=language, version=version, chars=len(blob))
        return version


def summarise_checkout(root: Path, language: str) -> str:
    """JSON structural summary of a local checkout.

    Python files are parsed with :mod:`ast`; Java and JS/TS are scanned with
    regexes; other languages get a plain file list.
    """
    language = language.lower()
    extensions = _EXTENSIONS.get(language)
    modules: list[dict[str, object]] = []
    files: list[str] = []

    for path in _walk(root):
        rel = path.relative_to(root).as_posix()
        if extensions is None:
            files.append(rel)
        elif path.suffix in extensions:
            entry = _summarise_file(path, rel, language)
            if entry is not None:
                modules.append(entry)
        if len(files) + len(modules) >= MAX_FILES:
            break

    summary: dict[str, object] = {"language": language}
    if extensions is None:
        summary["files"] = files
    else:
        summary["modules"] = modules
    blob = json.dumps(summary, sort_keys=True)
    if len(blob) > MAX_SUMMARY_CHARS:
        # Degrade to a path list rather than emit truncated JSON.
        paths = [m["path"] for m in modules] or files
        blob = json.dumps({"language": language, "files": paths, "truncated": True}, sort_keys=True)
    return blob


def _walk(root: Path):
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS and not d.startswith("."))
        for name in sorted(filenames):
            yield Path(dirpath) / name


def _summarise_file(path: Path, rel: str, language: str) -> dict[str, object] | None:
    try:
        if path.stat().st_size > MAX_FILE_BYTES:
            return {"path": rel}
        source = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None

    if language == "python":
        return {"path": rel, **_python_symbols(source)}
    if language == "java":
        package = _JAVA_PACKAGE_RE.search(source)
        return {
            "path": rel,
            "package": package.group(1) if package else None,
            "types": sorted(set(_JAVA_TYPE_RE.findall(source))),
        }
    functions = {a or b for a, b in _JS_FUNCTION_RE.findall(source)}
    return {
        "path": rel,
        "classes": sorted(set(_JS_CLASS_RE.findall(source))),
        "functions": sorted(functions),
        "exports": sorted(set(_JS_EXPORT_RE.findall(source))),
    }


def _python_symbols(source: str) -> dict[str, list[str]]:
    try:
        tree = ast.parse(source)
    except (SyntaxError, ValueError):
        return {"classes": [], "functions": []}
    classes: list[str] = []
    functions: list[str] = []
    for node in tree.body:
        if isinstance(node, ast.ClassDef):
            methods = [n.name for n in node.body if isinstance(n, (ast.FunctionDef, ast.AsyncFunctionDef))]
            classes.append(f"{node.name}({', '.join(methods)})" if methods else node.name)
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            functions.append(node.name)
    return {"classes": classes, "functions": functions}
