"""Per-language tables used by the structure extractor and the chunker.

Everything language-specific lives here as data: which grammar wheel parses
a language, which tree-sitter queries mark points of interest (POIs), which
node types count as leading comments/decorators/attributes, how nested POI
pairs are resolved, and which comment markers and closing tokens the
insignificant-chunk filter recognises. One generic routine in
``codeembed.structure`` evaluates the patterns for every language.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Literal, Mapping

WrapperWinner = Literal["parent", "child"]

# Formats split on blank-line-delimited paragraphs instead of syntax
PROSE_LANGUAGES = frozenset({"markdown", "plaintext"})


@dataclass(frozen=True)
class LanguageSpec:
    """Declarative description of one language."""

    # (module, attribute) of the grammar wheel, e.g. ("tree_sitter_python", "language")
    grammar: tuple[str, str]
    points_of_interest: tuple[str, ...]
    comments: tuple[str, ...] = ("(comment) @capture",)
    # Variant name -> grammar override, e.g. typescript/tsx
    variants: Mapping[str, tuple[str, str]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    # Parent node type -> which side survives when both parent and child are POIs
    wrapper_policy: Mapping[str, WrapperWinner] = field(
        default_factory=lambda: MappingProxyType({})
    )
    # Keep only outermost POIs (flatly nested grammars such as stylesheets)
    outermost_only: bool = False
    line_comments: tuple[str, ...] = ("//",)
    block_comments: tuple[tuple[str, str], ...] = (("/*", "*/"),)
    closing_tokens: tuple[str, ...] = ("}", ")", "]", "};", "});", ");", "],")


_C_FAMILY_CLOSERS = ("}", ")", "]", "};", "});", ");", "],")

LANGUAGES: Mapping[str, LanguageSpec] = MappingProxyType(
    {
        "javascript": LanguageSpec(
            grammar=("tree_sitter_javascript", "language"),
            points_of_interest=(
                "(class_declaration) @capture",
                "(function_declaration) @capture",
                "(variable_declarator value: (arrow_function)) @capture",
                "(export_statement) @capture",
                "(method_definition) @capture",
            ),
            comments=("(comment) @capture", "(decorator) @capture"),
            wrapper_policy=MappingProxyType({"export_statement": "parent"}),
        ),
        "typescript": LanguageSpec(
            grammar=("tree_sitter_typescript", "language_typescript"),
            variants=MappingProxyType({"tsx": ("tree_sitter_typescript", "language_tsx")}),
            points_of_interest=(
                "(internal_module) @capture",
                "(class_declaration) @capture",
                "(abstract_class_declaration) @capture",
                "(function_declaration) @capture",
                "(variable_declarator value: (arrow_function)) @capture",
                "(export_statement) @capture",
                "(method_definition) @capture",
                "(interface_declaration) @capture",
                "(type_alias_declaration) @capture",
                "(enum_declaration) @capture",
                "(module) @capture",
            ),
            comments=("(comment) @capture", "(decorator) @capture"),
            wrapper_policy=MappingProxyType({"export_statement": "parent"}),
        ),
        "python": LanguageSpec(
            grammar=("tree_sitter_python", "language"),
            points_of_interest=(
                "(decorated_definition) @capture",
                "(class_definition) @capture",
                "(function_definition) @capture",
            ),
            comments=("(comment) @capture", "(decorator) @capture"),
            wrapper_policy=MappingProxyType({"decorated_definition": "parent"}),
            line_comments=("#",),
            block_comments=(),
            closing_tokens=(")", "]", "}"),
        ),
        "java": LanguageSpec(
            grammar=("tree_sitter_java", "language"),
            points_of_interest=(
                "(class_declaration) @capture",
                "(interface_declaration) @capture",
                "(enum_declaration) @capture",
                "(record_declaration) @capture",
                "(method_declaration) @capture",
                "(constructor_declaration) @capture",
            ),
            comments=(
                "(line_comment) @capture",
                "(block_comment) @capture",
                "(marker_annotation) @capture",
                "(annotation) @capture",
            ),
        ),
        "cpp": LanguageSpec(
            grammar=("tree_sitter_cpp", "language"),
            points_of_interest=(
                "(namespace_definition) @capture",
                "(template_declaration) @capture",
                "(class_specifier body: (field_declaration_list)) @capture",
                "(struct_specifier body: (field_declaration_list)) @capture",
                "(enum_specifier body: (enumerator_list)) @capture",
                "(function_definition) @capture",
                "(declaration declarator: (function_declarator)) @capture",
            ),
            # A template header belongs to the construct it introduces
            wrapper_policy=MappingProxyType({"template_declaration": "parent"}),
        ),
        "c": LanguageSpec(
            grammar=("tree_sitter_c", "language"),
            points_of_interest=(
                "(function_definition) @capture",
                "(declaration declarator: (function_declarator)) @capture",
                "(struct_specifier body: (field_declaration_list)) @capture",
                "(enum_specifier body: (enumerator_list)) @capture",
            ),
        ),
        "csharp": LanguageSpec(
            grammar=("tree_sitter_c_sharp", "language"),
            points_of_interest=(
                "(namespace_declaration) @capture",
                "(class_declaration) @capture",
                "(struct_declaration) @capture",
                "(interface_declaration) @capture",
                "(enum_declaration) @capture",
                "(record_declaration) @capture",
                "(delegate_declaration) @capture",
                "(method_declaration) @capture",
                "(constructor_declaration) @capture",
                "(property_declaration) @capture",
                "(destructor_declaration) @capture",
                "(operator_declaration) @capture",
            ),
            comments=("(comment) @capture", "(attribute_list) @capture"),
        ),
        "go": LanguageSpec(
            grammar=("tree_sitter_go", "language"),
            points_of_interest=(
                "(package_clause) @capture",
                "(function_declaration) @capture",
                "(method_declaration) @capture",
                "(type_declaration) @capture",
            ),
        ),
        "ruby": LanguageSpec(
            grammar=("tree_sitter_ruby", "language"),
            points_of_interest=(
                "(class) @capture",
                "(module) @capture",
                "(method) @capture",
                "(singleton_method) @capture",
            ),
            line_comments=("#",),
            block_comments=(("=begin", "=end"),),
            closing_tokens=("end", "}", ")", "]"),
        ),
        "rust": LanguageSpec(
            grammar=("tree_sitter_rust", "language"),
            points_of_interest=(
                "(mod_item) @capture",
                "(struct_item) @capture",
                "(enum_item) @capture",
                "(trait_item) @capture",
                "(impl_item) @capture",
                "(function_item) @capture",
                "(function_signature_item) @capture",
            ),
            comments=(
                "(line_comment) @capture",
                "(block_comment) @capture",
                "(attribute_item) @capture",
            ),
        ),
        "css": LanguageSpec(
            grammar=("tree_sitter_css", "language"),
            points_of_interest=(
                "(at_rule) @capture",
                "(media_statement) @capture",
                "(namespace_statement) @capture",
                "(keyframes_statement) @capture",
                "(rule_set) @capture",
            ),
            outermost_only=True,
            line_comments=(),
            closing_tokens=("}",),
        ),
    }
)

# Markers used for languages without a table entry
_DEFAULT_LINE_COMMENTS = ("//",)
_DEFAULT_BLOCK_COMMENTS = (("/*", "*/"),)


def get_language_spec(language: str | None) -> LanguageSpec | None:
    """Return the table entry for *language*, or None when unsupported."""
    if not language:
        return None
    return LANGUAGES.get(language)


def grammar_for(spec: LanguageSpec, variant: str | None = None) -> tuple[str, str]:
    """Return the grammar (module, attribute) for a language variant."""
    if variant and variant in spec.variants:
        return spec.variants[variant]
    return spec.grammar


_PATTERN_HEAD = re.compile(r"^\(\s*([A-Za-z_][A-Za-z0-9_]*)")


def metadata_node_types(spec: LanguageSpec) -> frozenset[str]:
    """Return the node types named by the language's comment queries.

    These are the siblings (comments, decorators, attributes) absorbed when
    walking backwards from a point of interest.
    """
    types: set[str] = set()
    for pattern in spec.comments:
        match = _PATTERN_HEAD.match(pattern.strip())
        if match:
            types.add(match.group(1))
    return frozenset(types)


def comment_markers(
    language: str | None,
) -> tuple[tuple[str, ...], tuple[tuple[str, str], ...]]:
    """Return ``(line_markers, block_markers)`` for *language*.

    Prose formats have no comment syntax and return empty markers.
    """
    if language in PROSE_LANGUAGES:
        return (), ()
    spec = get_language_spec(language)
    if spec is None:
        return _DEFAULT_LINE_COMMENTS, _DEFAULT_BLOCK_COMMENTS
    return spec.line_comments, spec.block_comments


def closing_tokens(language: str | None) -> tuple[str, ...]:
    """Return the closing delimiters that carry no meaning on their own."""
    if language in PROSE_LANGUAGES:
        return ()
    spec = get_language_spec(language)
    if spec is None:
        return _C_FAMILY_CLOSERS
    return spec.closing_tokens


# ── Extension mapping ────────────────────────────────────────────────────

# Extension -> (language, variant)
_EXTENSION_TO_LANGUAGE: Mapping[str, tuple[str, str | None]] = MappingProxyType(
    {
        ".py": ("python", None),
        ".pyw": ("python", None),
        ".pyi": ("python", None),
        ".js": ("javascript", None),
        ".mjs": ("javascript", None),
        ".cjs": ("javascript", None),
        ".jsx": ("javascript", None),
        ".ts": ("typescript", None),
        ".mts": ("typescript", None),
        ".cts": ("typescript", None),
        ".tsx": ("typescript", "tsx"),
        ".java": ("java", None),
        ".c": ("c", None),
        ".cpp": ("cpp", None),
        ".cc": ("cpp", None),
        ".cxx": ("cpp", None),
        ".h": ("cpp", None),
        ".hpp": ("cpp", None),
        ".cs": ("csharp", None),
        ".go": ("go", None),
        ".rb": ("ruby", None),
        ".rs": ("rust", None),
        ".css": ("css", None),
        ".md": ("markdown", None),
        ".markdown": ("markdown", None),
        ".txt": ("plaintext", None),
        ".rst": ("plaintext", None),
    }
)


def detect_language(path: str) -> tuple[str, str | None] | None:
    """Detect ``(language, variant)`` from a file extension."""
    ext = Path(path).suffix.lower()
    return _EXTENSION_TO_LANGUAGE.get(ext)
