"""Rust declaration extraction built on Tree-sitter.

Turns the ``.rs`` files of an unpacked crate into a :class:`CrateItems`
catalog plus the external crate names it publicly re-exports:

- One recursive traversal per file yields ``(kind, record)`` pairs for
  top-level items, items of inline ``mod`` blocks, and every method of
  ``impl`` and ``trait`` bodies.
- Files are parsed concurrently on a thread pool; each worker returns its
  own partial catalog and the partials are merged after the join.
- A file that cannot be read or contains syntax errors is logged and
  skipped; it never aborts the crate.
"""

from __future__ import annotations

import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterator, List, Optional, Set, Tuple

import tree_sitter_rust
from tree_sitter import Language, Parser as TSParser

from .config import SOURCE_EXTENSION
from .errors import NotFoundError, ParseError
from .manifest import normalize_crate_name, read_dependencies
from .models import (
    ConstantInfo,
    CrateItems,
    Declaration,
    EnumInfo,
    FieldInfo,
    FunctionInfo,
    ImplInfo,
    IndexResult,
    MacroInfo,
    StructInfo,
    TraitInfo,
    TypeAliasInfo,
    VariantInfo,
    generate_id,
)

logger = logging.getLogger(__name__)

SKIP_DIRS: Set[str] = {"target", ".git", ".github"}
DEFAULT_MAX_WORKERS = 8

# Nodes that may sit between an item and its doc comments.
_TRIVIA = ("line_comment", "block_comment", "attribute_item")
_LOCAL_ROOTS = ("self", "super", "crate")

_WS_RE = re.compile(r"\s+")
_DOC_ATTR_RE = re.compile(r'^#\[\s*doc\s*=\s*"((?:[^"\\]|\\.)*)"\s*\]$', re.DOTALL)
_BLOCK_DOC_LEAD_RE = re.compile(r"^\s*\*? ?")
_ESCAPE_RE = re.compile(r"\\(.)")
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "0": "\0"}


@lru_cache(maxsize=None)
def _rust_language() -> Language:
    return Language(tree_sitter_rust.language())


_local = threading.local()


def _thread_parser() -> TSParser:
    """Tree-sitter parsers are not thread-safe; keep one per worker."""
    parser = getattr(_local, "parser", None)
    if parser is None:
        parser = TSParser(_rust_language())
        _local.parser = parser
    return parser


# ===================================================================
# Node helpers
# ===================================================================

def _text(node: Any) -> str:
    if node is None:
        return ""
    return node.text.decode("utf-8", errors="replace")


def _render(node: Any) -> str:
    """Source text of *node* with whitespace runs collapsed."""
    return _WS_RE.sub(" ", _text(node)).strip()


def _line(node: Any) -> int:
    return node.start_point[0] + 1


def _end_line(node: Any) -> Optional[int]:
    if node is None:
        return None
    return node.end_point[0] + 1


def _keyword_line(node: Any, keyword: str) -> int:
    """Line of the item's keyword token, ignoring a leading visibility."""
    for child in node.children:
        if child.type == keyword:
            return _line(child)
    return _line(node)


def _visibility(node: Any) -> str:
    for child in node.children:
        if child.type == "visibility_modifier":
            return _render(child)
    return "private"


def _unescape(value: str) -> str:
    return _ESCAPE_RE.sub(lambda m: _ESCAPES.get(m.group(1), m.group(1)), value)


def _doc_lines(node: Any) -> Optional[List[str]]:
    """Doc text carried by a comment or attribute node, ``None`` otherwise."""
    text = _text(node)
    if node.type == "line_comment":
        if text.startswith("///") and not text.startswith("////"):
            return [text[3:].rstrip("\r\n")]
    elif node.type == "block_comment":
        if text.startswith("/**") and not text.startswith("/***") and len(text) > 4:
            body = text[3:-2]
            return [_BLOCK_DOC_LEAD_RE.sub(" ", line, count=1) for line in body.splitlines()]
    elif node.type == "attribute_item":
        match = _DOC_ATTR_RE.match(text.strip())
        if match:
            return [_unescape(match.group(1))]
    return None


def _join_docs(lines: List[str]) -> Optional[str]:
    docs = "\n".join(line[1:] if line.startswith(" ") else line for line in lines).strip()
    return docs or None


def _docs(node: Any) -> Optional[str]:
    """Collect outer docs from the comments/attributes directly above *node*."""
    lines: List[str] = []
    sibling = node.prev_sibling
    while sibling is not None and sibling.type in _TRIVIA:
        doc = _doc_lines(sibling)
        if doc is not None:
            lines[:0] = doc
        sibling = sibling.prev_sibling
    return _join_docs(lines)


def _first_error_line(root: Any) -> int:
    stack = [root]
    while stack:
        node = stack.pop()
        if node.type == "ERROR" or node.is_missing:
            return _line(node)
        stack.extend(child for child in reversed(node.children) if child.has_error or child.is_missing)
    return _line(root)


# ===================================================================
# Rendering
# ===================================================================

def format_signature(node: Any) -> str:
    """Render a ``function_item``/``function_signature_item`` header.

    ``[const ][async ][unsafe ]fn name[<generics>](params)[ -> ret]``; the
    visibility, where-clause and body are not part of the signature.
    """
    qualifiers = ""
    for child in node.children:
        if child.type == "function_modifiers":
            tokens = {c.type for c in child.children}
            qualifiers = "".join(f"{q} " for q in ("const", "async", "unsafe") if q in tokens)
            break

    generics = ""
    type_params = node.child_by_field_name("type_parameters")
    if type_params is not None:
        params = [_render(c) for c in type_params.named_children if c.type not in _TRIVIA]
        if params:
            generics = f"<{', '.join(params)}>"

    inputs: List[str] = []
    parameters = node.child_by_field_name("parameters")
    if parameters is not None:
        inputs = [_render(c) for c in parameters.named_children if c.type not in _TRIVIA]

    output = ""
    return_type = node.child_by_field_name("return_type")
    if return_type is not None:
        output = f" -> {_render(return_type)}"

    name = _text(node.child_by_field_name("name"))
    return f"{qualifiers}fn {name}{generics}({', '.join(inputs)}){output}"


def _tuple_fields(body: Any) -> List[Tuple[str, str, Optional[str]]]:
    """``(type, visibility, docs)`` for each field of a ``( ... )`` list."""
    fields: List[Tuple[str, str, Optional[str]]] = []
    visibility = "private"
    doc_lines: List[str] = []
    for child in body.children:
        if child.type in ("(", ")", ","):
            continue
        if child.type in _TRIVIA:
            doc = _doc_lines(child)
            if doc is not None:
                doc_lines.extend(doc)
            continue
        if child.type == "visibility_modifier":
            visibility = _render(child)
            continue
        fields.append((_render(child), visibility, _join_docs(doc_lines)))
        visibility = "private"
        doc_lines = []
    return fields


def _struct_fields(body: Any) -> List[FieldInfo]:
    if body is None:
        return []
    if body.type == "ordered_field_declaration_list":
        return [
            FieldInfo(name=str(index), type_str=ty, visibility=vis, docs=docs)
            for index, (ty, vis, docs) in enumerate(_tuple_fields(body))
        ]
    fields: List[FieldInfo] = []
    for child in body.named_children:
        if child.type != "field_declaration":
            continue
        fields.append(FieldInfo(
            name=_text(child.child_by_field_name("name")),
            type_str=_render(child.child_by_field_name("type")),
            visibility=_visibility(child),
            docs=_docs(child),
        ))
    return fields


def _enum_variants(body: Any) -> List[VariantInfo]:
    if body is None:
        return []
    variants: List[VariantInfo] = []
    for child in body.named_children:
        if child.type != "enum_variant":
            continue
        fields_node = child.child_by_field_name("body")
        if fields_node is None:
            kind, fields = "unit", None
        elif fields_node.type == "ordered_field_declaration_list":
            kind = "tuple"
            fields = ", ".join(ty for ty, _, _ in _tuple_fields(fields_node))
        else:
            kind = "struct"
            fields = ", ".join(f"{f.name}: {f.type_str}" for f in _struct_fields(fields_node))
        variants.append(VariantInfo(
            name=_text(child.child_by_field_name("name")),
            kind=kind,
            fields=fields,
            docs=_docs(child),
        ))
    return variants


def _use_root(node: Any) -> Optional[str]:
    """First path segment of a ``use`` tree, ``None`` for bare groups/globs."""
    if node is None:
        return None
    kind = node.type
    if kind == "identifier":
        return _text(node)
    if kind in _LOCAL_ROOTS:
        return kind
    if kind == "scoped_identifier":
        path = node.child_by_field_name("path")
        if path is None:
            # `::name` with a leading path separator
            return _text(node.child_by_field_name("name")) or None
        return _use_root(path)
    if kind in ("use_as_clause", "scoped_use_list"):
        return _use_root(node.child_by_field_name("path"))
    if kind == "use_wildcard":
        named = [c for c in node.named_children if c.type not in _TRIVIA]
        return _use_root(named[0]) if named else None
    return None


# ===================================================================
# Parser
# ===================================================================

class RustItemParser:
    """Extracts declarations from the Rust files of one crate."""

    def __init__(self, crate_root: Path, crate_key: str) -> None:
        self.crate_root = crate_root
        self.crate_key = crate_key

    def _id(self, rel_path: str, name: str, line: int, kind: str) -> str:
        return generate_id(self.crate_key, rel_path, name, line, kind)

    # ------------------------------------------------------------------
    # File-level parsing
    # ------------------------------------------------------------------

    def parse_file(
        self,
        file_path: Path,
        source: Optional[str] = None,
    ) -> Tuple[CrateItems, List[str]]:
        """Parse one file into a partial catalog and re-export candidates.

        Raises:
            ParseError: the file is unreadable or has syntax errors.
        """
        rel_path = file_path.relative_to(self.crate_root).as_posix()
        if source is None:
            try:
                source = file_path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                raise ParseError(f"Failed to read {rel_path}: {exc}") from exc

        tree = _thread_parser().parse(source.encode("utf-8"))
        root = tree.root_node
        if root.has_error:
            raise ParseError(f"Syntax error in {rel_path} near line {_first_error_line(root)}")

        items = CrateItems()
        for kind, record in self.declarations(root, rel_path):
            items.add(kind, record)
        return items, self.reexports(root)

    def try_parse_file(self, file_path: Path) -> Optional[Tuple[CrateItems, List[str]]]:
        try:
            return self.parse_file(file_path)
        except ParseError as exc:
            logger.warning("Skipping %s: %s", file_path, exc)
        except Exception as exc:
            logger.warning("Failed to parse %s: %s", file_path, exc)
        return None

    # ------------------------------------------------------------------
    # Declaration walk
    # ------------------------------------------------------------------

    def declarations(self, container: Any, rel_path: str) -> Iterator[Tuple[str, Declaration]]:
        """Yield ``(catalog kind, record)`` for every item under *container*."""
        for node in container.named_children:
            kind = node.type
            if kind == "function_item":
                yield "functions", self._function(node, rel_path)
            elif kind == "struct_item":
                yield "structs", self._struct(node, rel_path)
            elif kind == "enum_item":
                yield "enums", self._enum(node, rel_path)
            elif kind == "trait_item":
                yield "traits", self._trait(node, rel_path)
                yield from self._methods(node, rel_path)
            elif kind == "impl_item":
                yield "impls", self._impl(node, rel_path)
                yield from self._methods(node, rel_path)
            elif kind == "macro_definition":
                yield "macros", self._macro(node, rel_path)
            elif kind == "type_item":
                yield "type_aliases", self._type_alias(node, rel_path)
            elif kind in ("const_item", "static_item"):
                yield "constants", self._constant(node, rel_path)
            elif kind == "mod_item":
                body = node.child_by_field_name("body")
                if body is not None:
                    yield from self.declarations(body, rel_path)

    def _methods(self, node: Any, rel_path: str) -> Iterator[Tuple[str, Declaration]]:
        body = node.child_by_field_name("body")
        if body is None:
            return
        for child in body.named_children:
            if child.type in ("function_item", "function_signature_item"):
                yield "functions", self._function(child, rel_path)

    # ------------------------------------------------------------------
    # Record builders
    # ------------------------------------------------------------------

    def _function(self, node: Any, rel_path: str) -> FunctionInfo:
        name = _text(node.child_by_field_name("name"))
        line = _keyword_line(node, "fn")
        return FunctionInfo(
            id=self._id(rel_path, name, line, "fn"),
            name=name,
            file=rel_path,
            line=line,
            end_line=_end_line(node.child_by_field_name("body")),
            signature=format_signature(node),
            docs=_docs(node),
        )

    def _struct(self, node: Any, rel_path: str) -> StructInfo:
        name = _text(node.child_by_field_name("name"))
        line = _keyword_line(node, "struct")
        body = node.child_by_field_name("body")
        return StructInfo(
            id=self._id(rel_path, name, line, "struct"),
            name=name,
            file=rel_path,
            line=line,
            end_line=_end_line(body),
            visibility=_visibility(node),
            fields=_struct_fields(body),
            docs=_docs(node),
        )

    def _enum(self, node: Any, rel_path: str) -> EnumInfo:
        name = _text(node.child_by_field_name("name"))
        line = _keyword_line(node, "enum")
        body = node.child_by_field_name("body")
        return EnumInfo(
            id=self._id(rel_path, name, line, "enum"),
            name=name,
            file=rel_path,
            line=line,
            end_line=_end_line(body),
            visibility=_visibility(node),
            variants=_enum_variants(body),
            docs=_docs(node),
        )

    def _trait(self, node: Any, rel_path: str) -> TraitInfo:
        name = _text(node.child_by_field_name("name"))
        line = _keyword_line(node, "trait")
        return TraitInfo(
            id=self._id(rel_path, name, line, "trait"),
            name=name,
            file=rel_path,
            line=line,
            end_line=_end_line(node.child_by_field_name("body")),
            visibility=_visibility(node),
            docs=_docs(node),
        )

    def _impl(self, node: Any, rel_path: str) -> ImplInfo:
        line = _keyword_line(node, "impl")
        self_type = _render(node.child_by_field_name("type"))
        trait = node.child_by_field_name("trait")
        trait_name = _render(trait) if trait is not None else None
        if trait_name and any(child.type == "!" for child in node.children):
            trait_name = f"!{trait_name}"
        id_name = f"{self_type}_{trait_name}" if trait_name else self_type
        return ImplInfo(
            id=self._id(rel_path, id_name, line, "impl"),
            file=rel_path,
            line=line,
            end_line=_end_line(node.child_by_field_name("body")),
            self_type=self_type,
            trait_name=trait_name,
        )

    def _macro(self, node: Any, rel_path: str) -> MacroInfo:
        name = _text(node.child_by_field_name("name"))
        line = _keyword_line(node, "macro_rules!")
        return MacroInfo(
            id=self._id(rel_path, name, line, "macro"),
            name=name,
            file=rel_path,
            line=line,
            end_line=_end_line(node),
            kind="declarative",
            docs=_docs(node),
        )

    def _type_alias(self, node: Any, rel_path: str) -> TypeAliasInfo:
        name = _text(node.child_by_field_name("name"))
        line = _keyword_line(node, "type")
        return TypeAliasInfo(
            id=self._id(rel_path, name, line, "type"),
            name=name,
            file=rel_path,
            line=line,
            end_line=_end_line(node),
            type_str=_render(node.child_by_field_name("type")),
            visibility=_visibility(node),
            docs=_docs(node),
        )

    def _constant(self, node: Any, rel_path: str) -> ConstantInfo:
        kind = "const" if node.type == "const_item" else "static"
        name = _text(node.child_by_field_name("name"))
        line = _keyword_line(node, kind)
        return ConstantInfo(
            id=self._id(rel_path, name, line, kind),
            name=name,
            file=rel_path,
            line=line,
            end_line=_end_line(node),
            kind=kind,
            type_str=_render(node.child_by_field_name("type")),
            visibility=_visibility(node),
            docs=_docs(node),
        )

    # ------------------------------------------------------------------
    # Re-exports
    # ------------------------------------------------------------------

    @staticmethod
    def reexports(root: Any) -> List[str]:
        """Candidate crate names from the file's top-level ``pub use`` items.

        Only plain ``pub`` counts (not ``pub(crate)``). Paths rooted at
        ``self``, ``super`` or ``crate`` are local; bare ``{...}`` groups and
        ``*`` globs are not expanded.
        """
        names: List[str] = []
        for node in root.named_children:
            if node.type != "use_declaration" or _visibility(node) != "pub":
                continue
            head = _use_root(node.child_by_field_name("argument"))
            if head and head not in _LOCAL_ROOTS:
                names.append(normalize_crate_name(head))
        return names


# ===================================================================
# Crate-level indexing
# ===================================================================

def discover_source_files(crate_path: Path) -> List[Path]:
    """All ``.rs`` files below *crate_path*, sorted, build output excluded."""
    files: List[Path] = []
    for path in crate_path.rglob(f"*{SOURCE_EXTENSION}"):
        parents = path.relative_to(crate_path).parts[:-1]
        if any(part in SKIP_DIRS or part.startswith(".") for part in parents):
            continue
        if path.is_file():
            files.append(path)
    return sorted(files)


def filter_reexports(candidates: Set[str], dependencies: Set[str]) -> List[str]:
    """Keep candidates that name a declared dependency.

    Matching ignores the ``-``/``_`` spelling difference; the manifest's
    spelling is returned.
    """
    declared = {normalize_crate_name(dep): dep for dep in dependencies}
    return sorted({declared[name] for name in candidates if name in declared})


def index_crate(
    crate_path: Path,
    crate_key: str,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> IndexResult:
    """Parse every source file of an unpacked crate.

    Args:
        crate_path: Root of the unpacked crate (the directory holding
                    ``Cargo.toml``).
        crate_key:  ``name-version`` key, hashed into every identifier.
        max_workers: Size of the parsing thread pool.

    Returns:
        The merged catalog and the re-exported crate names that are also
        declared dependencies.
    """
    if not crate_path.is_dir():
        raise NotFoundError(f"Crate directory {crate_path} does not exist")

    parser = RustItemParser(crate_path, crate_key)
    files = discover_source_files(crate_path)

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        results = list(pool.map(parser.try_parse_file, files))

    items = CrateItems()
    candidates: Set[str] = set()
    skipped = 0
    for result in results:
        if result is None:
            skipped += 1
            continue
        file_items, file_reexports = result
        items.merge(file_items)
        candidates.update(file_reexports)

    reexported = filter_reexports(candidates, read_dependencies(crate_path))
    logger.info(
        "Indexed %s: %s (%d files, %d skipped)",
        crate_key, items.summary(), len(files), skipped,
    )
    return IndexResult(items=items, reexported_crates=reexported)
