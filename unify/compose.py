"""Page composition: include expansion, layout resolution, slot filling and head merging."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

from .config import BuildConfig
from .errors import DEPTH, LAYOUT, MISSING, SECURITY, BuildWarning, CircularDependencyError
from .errors import MalformedDirectiveError, UnifyError
from .graph import DependencyGraph
from .head import HeadFragment, merge_head
from .io import SourceReader
from .layouts import find_ancestor_layout, is_full_document, match_default_rule, resolve_layout_reference
from .logging import get_logger
from .markup import (
    Element,
    find_element,
    iter_elements,
    iter_elements_with_attr,
    remove_attribute,
    replace_spans,
    start_tag,
)
from .paths import resolve
from .references import (
    INCLUDE,
    LAYOUT as LAYOUT_REFERENCE,
    IncludeDirective,
    Reference,
    ReferenceExtractor,
    find_data_layouts,
    find_includes,
    find_layout_link,
    strip_layout_directives,
)

logger = get_logger("compose")

MAX_INCLUDE_DEPTH = 10
DOCTYPE_RE = re.compile(r"<!DOCTYPE[^>]*>", re.IGNORECASE)


@dataclass
class CompositionResult:
    content: str
    dependencies: list[Path]
    warnings: list[BuildWarning]
    layout: Optional[Path] = None
    references: list[Reference] = field(default_factory=list)


@dataclass
class _Collector:
    dependencies: dict[Path, None] = field(default_factory=dict)
    references: list[Reference] = field(default_factory=list)
    warnings: list[BuildWarning] = field(default_factory=list)

    def depend(self, reference: Reference) -> None:
        self.references.append(reference)
        if reference.to_path is not None:
            self.dependencies.setdefault(reference.to_path, None)

    def warn(self, kind: str, message: str, path: Optional[Path] = None) -> None:
        warning = BuildWarning(kind, message, path)
        logger.debug("%s", warning)
        self.warnings.append(warning)


@dataclass(frozen=True)
class CompositionContext:
    """State of one top-level composition call. ``chain`` and ``depth`` travel down by value."""

    source_root: Path
    config: BuildConfig
    reader: SourceReader
    collector: _Collector
    chain: tuple[Path, ...] = ()
    depth: int = 0

    def descend(self, path: Path) -> "CompositionContext":
        return replace(self, chain=self.chain + (path,), depth=self.depth + 1)

    def restart(self, path: Path) -> "CompositionContext":
        return replace(self, chain=(path,), depth=0)


@dataclass
class SlotBindings:
    named: dict[str, str] = field(default_factory=dict)
    default: str = ""


def warning_marker(message: str) -> str:
    return f"<!-- WARNING: {message.replace('--', '- -')} -->"


# -- includes ---------------------------------------------------------------


def expand_includes(content: str, path: Path, ctx: CompositionContext) -> str:
    directives = find_includes(content)
    if not directives:
        return content
    replacements = [
        (directive.start, directive.end, _expand_directive(directive, path, ctx)) for directive in directives
    ]
    return replace_spans(content, replacements)


def _expand_directive(directive: IncludeDirective, path: Path, ctx: CompositionContext) -> str:
    target = resolve(directive.reference, path, ctx.source_root)
    ctx.collector.depend(Reference(path, target, INCLUDE, directive.src))
    if target is None:
        ctx.collector.warn(SECURITY, f"Unsafe or unresolvable include: {directive.src}", path)
        return warning_marker(f"include not found: {directive.src}")
    if not ctx.reader.exists(target):
        ctx.collector.warn(MISSING, f"Include not found: {directive.src}", path)
        return warning_marker(f"include not found: {directive.src}")
    if target in ctx.chain:
        raise CircularDependencyError(ctx.chain, target)
    if ctx.depth + 1 > MAX_INCLUDE_DEPTH:
        ctx.collector.warn(DEPTH, f"Include depth limit ({MAX_INCLUDE_DEPTH}) exceeded: {directive.src}", path)
        return warning_marker(f"include depth limit ({MAX_INCLUDE_DEPTH}) exceeded: {directive.src}")
    try:
        text = ctx.reader.read_text(target)
    except (OSError, UnicodeDecodeError) as exc:
        ctx.collector.warn(MISSING, f"Could not read include {directive.src}: {exc}", path)
        return warning_marker(f"include not found: {directive.src}")

    included = expand_includes(text, target, ctx.descend(target))
    if directive.kind != "element":
        return included
    if directive.body is None:
        # Named slots stay open for the page filling the enclosing layout.
        return apply_slots(included, SlotBindings(), keep_named=True)
    return apply_slots(included, split_slots(expand_includes(directive.body, path, ctx)))


# -- slots ------------------------------------------------------------------


def split_slots(content: str) -> SlotBindings:
    """Split composed page content into named slot bindings and the default binding."""
    bindings = SlotBindings()
    replacements = []
    for template in iter_elements(content, "template"):
        attrs = template.attrs
        target = attrs.get("target") or attrs.get("data-slot")
        if target:
            _bind(bindings, target, template.inner(content))
            replacements.append((template.start, template.end, ""))
        else:
            replacements.append((template.start, template.end, template.inner(content)))
    remaining = replace_spans(content, replacements)

    replacements = []
    for element in iter_elements_with_attr(remaining, "data-slot"):
        name = element.attrs.get("data-slot")
        if name:
            _bind(bindings, name, remove_attribute(remaining, element, "data-slot"))
        replacements.append((element.start, element.end, ""))
    bindings.default = replace_spans(remaining, replacements).strip()
    return bindings


def _bind(bindings: SlotBindings, name: str, html: str) -> None:
    name = name.strip()
    if name in bindings.named:
        bindings.named[name] += html
    else:
        bindings.named[name] = html


def apply_slots(html: str, bindings: SlotBindings, keep_named: bool = False) -> str:
    """Fill ``<slot>`` elements. Unmatched slots keep their fallback content.

    With ``keep_named`` an unbound named slot is left in place instead.
    """
    replacements = []
    default_used = False
    for slot in iter_elements(html, "slot"):
        name = (slot.attrs.get("name") or "").strip()
        fallback = slot.inner(html)
        if name and name != "default":
            if name in bindings.named:
                replacements.append((slot.start, slot.end, bindings.named[name]))
            elif not keep_named:
                replacements.append((slot.start, slot.end, fallback))
        elif not default_used:
            default_used = True
            replacements.append((slot.start, slot.end, bindings.default if bindings.default.strip() else fallback))
        else:
            replacements.append((slot.start, slot.end, fallback))
    return replace_spans(html, replacements)


def unwrap_layout_root(fragment: str) -> str:
    """Drop a fragment's single root element when it only carries the ``data-layout`` directive."""
    stripped = fragment.strip()
    elements = list(iter_elements_with_attr(stripped, "data-layout"))
    if len(elements) != 1:
        return fragment
    root = elements[0]
    if root.start != 0 or root.end != len(stripped) or root.inner_end == root.inner_start:
        return fragment
    return root.inner(stripped)


# -- layout resolution ------------------------------------------------------


def resolve_layout(
    source: str,
    path: Path,
    ctx: CompositionContext,
    explicit: Optional[str] = None,
    use_defaults: bool = True,
) -> Optional[Path]:
    """Pick the layout for ``source`` following the precedence rules.

    Full documents only honour their own directives; fragments also fall
    back to the default-layout rules and the nearest ``_layout.html``.
    """
    full = is_full_document(source)

    def lookup(value: str, origin: str) -> Optional[Path]:
        found = resolve_layout_reference(value, path, ctx.source_root, ctx.config, ctx.reader)
        if found is None:
            ctx.collector.warn(LAYOUT, f"Layout not found ({origin}): {value}", path)
        else:
            logger.debug("Using %s layout %s for %s", origin, found, path)
        return found

    if full:
        href = find_layout_link(source)
        if href:
            found = lookup(href, "link")
            if found is not None:
                return found

    data_layouts = find_data_layouts(source)
    if not full and len(data_layouts) > 1:
        raise MalformedDirectiveError("Multiple data-layout attributes found in fragment", path)
    value = explicit or (data_layouts[0] if data_layouts else None)
    if value:
        found = lookup(value, "data-layout")
        if found is not None:
            return found

    if full or not use_defaults:
        return None

    rule = match_default_rule(path, ctx.config.default_layouts, ctx.source_root)
    if rule is not None:
        found = lookup(rule.layout, "default rule")
        if found is not None:
            return found

    return find_ancestor_layout(path, ctx.source_root, ctx.config, ctx.reader)


# -- documents --------------------------------------------------------------


@dataclass
class _DocumentParts:
    doctype: Optional[str]
    html: Optional[Element]
    head: Optional[Element]
    body: Optional[Element]


def _document_parts(html: str) -> _DocumentParts:
    doctype = DOCTYPE_RE.search(html)
    root = find_element(html, "html")
    scope = root.inner_start if root is not None else 0
    return _DocumentParts(
        doctype=doctype.group(0) if doctype else None,
        html=root,
        head=find_element(html, "head", scope),
        body=find_element(html, "body", scope),
    )


def _head_html(html: str, parts: _DocumentParts) -> str:
    return parts.head.inner(html) if parts.head is not None else ""


def _body_html(html: str, parts: _DocumentParts) -> str:
    if parts.body is not None:
        return parts.body.inner(html)
    if parts.html is not None:
        return parts.html.inner(html)
    return html


def _rebuild_document(
    layout_html: str,
    doctype: Optional[str],
    html_attrs: dict,
    head: str,
    body_attrs: dict,
) -> str:
    parts = _document_parts(layout_html)
    replacements = []
    if parts.html is not None:
        replacements.append((parts.html.start, parts.html.inner_start, start_tag("html", html_attrs)))
        head_markup = "\n" + head + "\n" if head else "\n"
        if parts.head is not None:
            head_tag = start_tag("head", parts.head.attrs)
            replacements.append((parts.head.start, parts.head.end, f"{head_tag}{head_markup}</head>"))
        elif head:
            replacements.append((parts.html.inner_start, parts.html.inner_start, f"\n<head>{head_markup}</head>"))
    if parts.body is not None:
        replacements.append((parts.body.start, parts.body.inner_start, start_tag("body", body_attrs)))
    document = replace_spans(layout_html, replacements)
    if doctype:
        existing = DOCTYPE_RE.search(document)
        if existing:
            document = document[: existing.start()] + doctype + document[existing.end() :]
        else:
            document = doctype + "\n" + document.lstrip()
    return document


def _fragment_head(fragment: str) -> tuple[str, str]:
    """Split a page fragment into its optional ``<head>`` contents and the rest."""
    head = find_element(fragment, "head")
    if head is None:
        return "", fragment
    return head.inner(fragment), fragment[: head.start] + fragment[head.end :]


def fill_layout(
    page_html: str,
    page: Path,
    layout_html: str,
    layout: Path,
    head_html: str = "",
) -> str:
    """Merge composed page HTML into composed layout HTML."""
    page_full = is_full_document(page_html)
    layout_full = is_full_document(layout_html)

    if not page_full:
        page_head, fragment = _fragment_head(page_html)
        filled = apply_slots(layout_html, split_slots(unwrap_layout_root(fragment)))
        if not layout_full:
            return filled
        parts = _document_parts(filled)
        head = merge_head(
            [
                HeadFragment(layout, _head_html(filled, parts)),
                HeadFragment(page, strip_layout_directives(page_head)),
                HeadFragment(page, head_html),
            ]
        )
        return _rebuild_document(
            filled,
            parts.doctype,
            parts.html.attrs if parts.html is not None else {},
            head,
            parts.body.attrs if parts.body is not None else {},
        )

    page_parts = _document_parts(page_html)
    bindings = split_slots(unwrap_layout_root(_body_html(page_html, page_parts)))
    page_head = strip_layout_directives(_head_html(page_html, page_parts))

    if not layout_full:
        filled_fragment = apply_slots(layout_html, bindings)
        head = merge_head([HeadFragment(page, page_head), HeadFragment(page, head_html)])
        if page_parts.body is not None:
            body = page_parts.body
            page_html = page_html[: body.inner_start] + "\n" + filled_fragment + "\n" + page_html[body.inner_end :]
        return _rebuild_document(
            page_html,
            page_parts.doctype,
            page_parts.html.attrs if page_parts.html is not None else {},
            head,
            page_parts.body.attrs if page_parts.body is not None else {},
        )

    filled = apply_slots(layout_html, bindings)
    layout_parts = _document_parts(filled)
    html_attrs = dict(layout_parts.html.attrs) if layout_parts.html is not None else {}
    html_attrs.update(page_parts.html.attrs if page_parts.html is not None else {})
    body_attrs = dict(layout_parts.body.attrs) if layout_parts.body is not None else {}
    body_attrs.update(page_parts.body.attrs if page_parts.body is not None else {})
    head = merge_head(
        [
            HeadFragment(layout, _head_html(filled, layout_parts)),
            HeadFragment(page, page_head),
            HeadFragment(page, head_html),
        ]
    )
    return _rebuild_document(filled, page_parts.doctype or layout_parts.doctype, html_attrs, head, body_attrs)


def wrap_document(content: str, head_html: str) -> str:
    """Minimal document around a fragment that has no layout but brings head markup."""
    return (
        "<!DOCTYPE html>\n"
        '<html lang="en">\n'
        "<head>\n"
        '<meta charset="UTF-8">\n'
        f"{head_html}\n"
        "</head>\n"
        "<body>\n"
        f"{content}\n"
        "</body>\n"
        "</html>\n"
    )


def _apply_layouts(
    page_html: str,
    page: Path,
    layout: Path,
    ctx: CompositionContext,
    head_html: str,
    seen: tuple[Path, ...],
) -> tuple[str, str]:
    """Wrap ``page_html`` in ``layout`` and then in every parent layout it declares.

    Returns the composed HTML and any head markup that no full-document
    layout has absorbed yet.
    """
    current_html, current_path, current_layout, current_head = page_html, page, layout, head_html
    while current_layout is not None:
        if current_layout in seen:
            raise CircularDependencyError(seen, current_layout)
        ctx.collector.depend(Reference(current_path, current_layout, LAYOUT_REFERENCE))
        try:
            layout_source = ctx.reader.read_text(current_layout)
        except (OSError, UnicodeDecodeError) as exc:
            ctx.collector.warn(LAYOUT, f"Could not read layout {current_layout}: {exc}", current_path)
            return current_html, current_head
        layout_html = expand_includes(layout_source, current_layout, ctx.restart(current_layout))
        pending_head = ""
        if not is_full_document(current_html) and not is_full_document(layout_html):
            page_head, _ = _fragment_head(current_html)
            pending_head = "\n".join(
                part for part in (strip_layout_directives(page_head), current_head) if part.strip()
            )
        current_html = fill_layout(current_html, current_path, layout_html, current_layout, current_head)
        seen = seen + (current_layout,)
        current_path, current_head = current_layout, pending_head
        current_layout = resolve_layout(layout_source, current_layout, ctx, use_defaults=False)
    return current_html, current_head


# -- entry point ------------------------------------------------------------


def compose_page(
    content: str,
    path: Path,
    source_root: Path,
    graph: DependencyGraph,
    config: BuildConfig,
    *,
    reader: Optional[SourceReader] = None,
    extractor: Optional[ReferenceExtractor] = None,
    head_html: str = "",
    layout: Optional[str] = None,
) -> CompositionResult:
    """Compose one page and record everything it was built from.

    Recoverable problems come back as warnings. ``CircularDependencyError``
    and ``MalformedDirectiveError`` propagate, after the dependencies found up
    to that point are recorded so fixing the culprit still triggers a rebuild.
    """
    reader = reader or SourceReader()
    extractor = extractor or ReferenceExtractor(reader)
    collector = _Collector()
    ctx = CompositionContext(source_root, config, reader, collector, chain=(path,))

    try:
        expanded = expand_includes(content, path, ctx)
        layout_path = resolve_layout(content, path, ctx, explicit=layout)
        if layout_path is not None:
            composed, pending_head = _apply_layouts(expanded, path, layout_path, ctx, head_html, (path,))
        else:
            composed, pending_head = expanded, head_html
        if pending_head and not is_full_document(composed):
            composed = wrap_document(composed, pending_head)
        composed = strip_layout_directives(apply_slots(composed, SlotBindings()))
    except UnifyError:
        graph.record(path, list(collector.dependencies))
        extractor.clear_page(path)
        raise

    assets, asset_warnings = extractor.collect_assets(composed, path, source_root)
    asset_paths = [ref.to_path for ref in assets if ref.to_path is not None]
    for warning in asset_warnings:
        collector.warn(warning.kind, warning.message, warning.path)

    dependencies = list(dict.fromkeys([*collector.dependencies, *asset_paths]))
    dependencies = [dep for dep in dependencies if dep != path]
    graph.record(path, dependencies)
    extractor.record_page_assets(path, asset_paths)
    references = [*collector.references, *assets]
    return CompositionResult(composed, dependencies, collector.warnings, layout_path, references)
