"""Structural breakpoints via tree-sitter.

Given source text and a language identifier, find the lines where chunk-worthy
constructs (functions, classes, methods, namespaces, types, ...) start. Each
construct contributes one breakpoint, moved up to include the comment,
decorator or attribute block attached to it.

Steps:
    1. Parse the text with the grammar for the language (and variant).
    2. Run the language's point-of-interest (POI) queries; the node captured
       as ``@capture`` is a candidate.
    3. Resolve direct parent/child POI pairs with the language's wrapper
       policy, then (for flatly nested grammars) keep only outermost POIs.
    4. Walk previous siblings of each POI to absorb its leading comments,
       stopping at a blank line or at the first substantive sibling.

Parse failures never raise: they yield no breakpoints and the chunker falls
back to line splitting.
"""

from __future__ import annotations

import importlib
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterator

from codeembed.languages import (
    LanguageSpec,
    get_language_spec,
    grammar_for,
    metadata_node_types,
)
from codeembed.models import Breakpoint

if TYPE_CHECKING:
    import tree_sitter

# Optional dependency with graceful fallback
try:
    from tree_sitter import Language, Parser, Query, QueryCursor

    _HAS_TREE_SITTER = True
except ImportError:
    Language = None  # type: ignore[assignment, misc]
    Parser = None  # type: ignore[assignment, misc]
    Query = None  # type: ignore[assignment, misc]
    QueryCursor = None  # type: ignore[assignment, misc]
    _HAS_TREE_SITTER = False

logger = logging.getLogger(__name__)

_IDENTIFIER_TYPES = frozenset(
    {
        "identifier",
        "property_identifier",
        "type_identifier",
        "field_identifier",
        "namespace_identifier",
        "constant",
    }
)


@dataclass
class SymbolInfo:
    """A named point of interest."""

    name: str
    symbol_type: str
    line: int
    column: int


def _iter_tree(node: tree_sitter.Node) -> Iterator[tree_sitter.Node]:
    """Iterate over all nodes in tree."""
    yield node
    for child in node.children:
        yield from _iter_tree(child)


def _is_comment_type(node_type: str) -> bool:
    return node_type == "comment" or node_type.endswith("_comment")


class StructureExtractor:
    """Finds structural breakpoint lines in source text.

    Parsers and loaded grammars are cached per (language, variant) on the
    instance; call :meth:`dispose` to drop them.
    """

    def __init__(self) -> None:
        self._languages: dict[tuple[str, str | None], Any] = {}
        self._parsers: dict[tuple[str, str | None], Any] = {}
        # Parsers are not safe to share between threads
        self._lock = threading.RLock()
        self._disposed = False

    # ── grammar loading ──────────────────────────────────────────────

    def _get_language(self, language: str, variant: str | None) -> Any:
        """Return the tree-sitter ``Language`` for a language variant.

        Raises:
            ValueError: the language is not in the table.
            ImportError: the grammar wheel is not installed.
        """
        key = (language, variant)
        if key in self._languages:
            return self._languages[key]

        spec = get_language_spec(language)
        if spec is None:
            raise ValueError(f"Language '{language}' is not supported")
        module_name, attribute = grammar_for(spec, variant)
        module = importlib.import_module(module_name)
        lang_obj = Language(getattr(module, attribute)())
        self._languages[key] = lang_obj
        return lang_obj

    def _get_parser(self, language: str, variant: str | None) -> Any:
        key = (language, variant)
        if key not in self._parsers:
            self._parsers[key] = Parser(self._get_language(language, variant))
        return self._parsers[key]

    def parse(
        self, text: str, language: str, variant: str | None = None
    ) -> tree_sitter.Tree | None:
        """Parse *text*; return None when the language cannot be parsed."""
        if self._disposed:
            logger.warning("StructureExtractor is disposed, cannot parse code")
            return None
        if not _HAS_TREE_SITTER or Parser is None:
            return None
        try:
            with self._lock:
                parser = self._get_parser(language, variant)
                return parser.parse(text.encode("utf-8"))
        except Exception as e:
            logger.debug("Could not parse %s (%s): %s", language, variant or "default", e)
            return None

    # ── queries ──────────────────────────────────────────────────────

    def _run_queries(
        self, root: tree_sitter.Node, lang_obj: Any, patterns: tuple[str, ...]
    ) -> list[tree_sitter.Node]:
        """Run each pattern and collect captured nodes, deduplicated by id."""
        nodes: list[tree_sitter.Node] = []
        seen: set[int] = set()
        for pattern in patterns:
            try:
                query = Query(lang_obj, pattern)
            except Exception as e:
                # Grammars differ between releases; a bad pattern skips only itself
                logger.debug("Skipping query %r: %s", pattern, e)
                continue
            cursor = QueryCursor(query)
            try:
                for _index, captures in cursor.matches(root):
                    captured = captures.get("capture") or next(iter(captures.values()), [])
                    for node in captured:
                        if node.id not in seen:
                            seen.add(node.id)
                            nodes.append(node)
            finally:
                del cursor, query
        return nodes

    # ── public API ───────────────────────────────────────────────────

    def extract_breakpoints(
        self, text: str, language: str, variant: str | None = None
    ) -> list[Breakpoint]:
        """Return sorted, line-unique breakpoints with the POI node type."""
        with self._lock:
            return self._extract_breakpoints(text, language, variant)

    def _extract_breakpoints(
        self, text: str, language: str, variant: str | None
    ) -> list[Breakpoint]:
        spec = get_language_spec(language)
        if spec is None or not text.strip():
            return []

        tree = self.parse(text, language, variant)
        if tree is None:
            return []

        try:
            lang_obj = self._get_language(language, variant)
            candidates = self._run_queries(tree.root_node, lang_obj, spec.points_of_interest)
            pois = resolve_points_of_interest(candidates, spec)
            source = text.encode("utf-8")
            lines = text.split("\n")
            comment_types = metadata_node_types(spec)

            by_line: dict[int, str] = {}
            for poi in pois:
                line = leading_block_start(poi, lines, source, comment_types)
                by_line.setdefault(line, poi.type)
            return [Breakpoint(line, node_type) for line, node_type in sorted(by_line.items())]
        except Exception as e:
            logger.warning("Error extracting breakpoints for %s: %s", language, e)
            return []
        finally:
            del tree

    def get_breakpoint_lines(
        self, text: str, language: str, variant: str | None = None
    ) -> list[int]:
        """Return sorted, deduplicated 0-based breakpoint lines."""
        return [bp.line for bp in self.extract_breakpoints(text, language, variant)]

    def find_symbols(
        self, text: str, language: str, variant: str | None = None
    ) -> list[SymbolInfo]:
        """Return the named points of interest, sorted by position."""
        with self._lock:
            return self._find_symbols(text, language, variant)

    def _find_symbols(
        self, text: str, language: str, variant: str | None
    ) -> list[SymbolInfo]:
        spec = get_language_spec(language)
        if spec is None:
            return []
        tree = self.parse(text, language, variant)
        if tree is None:
            return []

        try:
            lang_obj = self._get_language(language, variant)
            source = text.encode("utf-8")
            symbols: list[SymbolInfo] = []
            seen: set[tuple[str, int, int, str]] = set()
            for node in self._run_queries(tree.root_node, lang_obj, spec.points_of_interest):
                name = _extract_node_name(node, source)
                if not name:
                    continue
                row, column = node.start_point
                key = (name, row, column, node.type)
                if key in seen:
                    continue
                seen.add(key)
                symbols.append(SymbolInfo(name, node.type, row, column))
            return sorted(symbols, key=lambda s: (s.line, s.column))
        except Exception as e:
            logger.warning("Error finding symbols in %s code: %s", language, e)
            return []
        finally:
            del tree

    def dispose(self) -> None:
        if self._disposed:
            return
        self._parsers.clear()
        self._languages.clear()
        self._disposed = True
        logger.debug("StructureExtractor disposed")


# ── POI resolution ───────────────────────────────────────────────────────


def resolve_points_of_interest(
    candidates: list[tree_sitter.Node], spec: LanguageSpec
) -> list[tree_sitter.Node]:
    """Drop duplicate POIs so each construct yields one breakpoint.

    1. Parent/child pairs: when a candidate's direct parent is also a
       candidate and the parent type has a wrapper policy, the loser goes.
    2. Ancestor containment (``outermost_only`` languages): drop candidates
       with another candidate among their ancestors.
    """
    by_id = {node.id: node for node in candidates}
    discarded: set[int] = set()

    for node in candidates:
        parent = node.parent
        if parent is None or parent.id not in by_id:
            continue
        winner = spec.wrapper_policy.get(parent.type)
        if winner == "parent":
            discarded.add(node.id)
        elif winner == "child":
            discarded.add(parent.id)

    kept = [node for node in candidates if node.id not in discarded]

    if spec.outermost_only:
        kept_ids = {node.id for node in kept}
        outermost = []
        for node in kept:
            ancestor = node.parent
            while ancestor is not None and ancestor.id not in kept_ids:
                ancestor = ancestor.parent
            if ancestor is None:
                outermost.append(node)
        kept = outermost

    return sorted(kept, key=lambda n: (n.start_byte, -n.end_byte))


def _has_blank_line_between(lines: list[str], first_row: int, last_row: int) -> bool:
    """True if any line strictly between the two rows is blank."""
    for i in range(first_row + 1, last_row):
        if i < len(lines) and lines[i].strip() == "":
            return True
    return False


def leading_block_start(
    poi: tree_sitter.Node,
    lines: list[str],
    source: bytes,
    comment_types: frozenset[str],
) -> int:
    """Return the first line of the comment/decorator block attached to *poi*.

    Falls back to the POI's own start line when nothing is attached.
    """
    start_line = poi.start_point[0]
    current = poi
    while current.prev_sibling is not None:
        previous = current.prev_sibling
        if _has_blank_line_between(lines, previous.end_point[0], current.start_point[0]):
            break

        text = source[previous.start_byte : previous.end_byte]
        if _is_comment_type(previous.type) or previous.type in comment_types:
            # A comment trailing code on the same line belongs to that code
            before = previous.prev_sibling
            if (
                _is_comment_type(previous.type)
                and before is not None
                and before.end_point[0] == previous.start_point[0]
            ):
                break
            start_line = previous.start_point[0]
            current = previous
        elif text.strip() == b"":
            current = previous
        else:
            break
    return start_line


# ── Symbol names ─────────────────────────────────────────────────────────


def _node_text(node: tree_sitter.Node, source: bytes) -> str:
    return source[node.start_byte : node.end_byte].decode("utf-8", errors="replace")


def _extract_node_name(node: tree_sitter.Node, source: bytes) -> str | None:
    """Best-effort name for a POI node."""
    for field_name in ("name", "id", "identifier"):
        name_node = node.child_by_field_name(field_name)
        if name_node is not None and name_node.type in _IDENTIFIER_TYPES:
            return _node_text(name_node, source)

    # Wrappers (decorators, exports, templates): name of the wrapped definition
    for field_name in ("definition", "declaration"):
        inner = node.child_by_field_name(field_name)
        if inner is not None:
            name = _extract_node_name(inner, source)
            if name:
                return name

    declarator = node.child_by_field_name("declarator")
    if declarator is not None:
        for child in _iter_tree(declarator):
            if child.type in _IDENTIFIER_TYPES or child.type in (
                "qualified_identifier",
                "destructor_name",
                "operator_name",
            ):
                return _node_text(child, source)

    if node.type == "rule_set":
        selectors = next((c for c in node.children if c.type == "selectors"), None)
        if selectors is not None:
            return _node_text(selectors, source)

    for child in reversed(node.children):
        if child.type in _IDENTIFIER_TYPES:
            return _node_text(child, source)

    for child in node.named_children:
        if child.type in ("class_declaration", "function_declaration", "class_specifier",
                          "struct_specifier", "function_definition", "declaration"):
            return _extract_node_name(child, source)
    return None
