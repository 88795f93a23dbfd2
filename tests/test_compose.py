from __future__ import annotations

import pytest

from unify.compose import MAX_INCLUDE_DEPTH, SlotBindings, apply_slots, split_slots
from unify.config import DefaultLayoutRule
from unify.errors import DEPTH, LAYOUT, MISSING, SECURITY, CircularDependencyError, MalformedDirectiveError
from unify import references
from unify.references import ReferenceExtractor

BASE_LAYOUT = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>Layout</title>
<link rel="stylesheet" href="/css/site.css">
</head>
<body>
<header><slot name="header">Default header</slot></header>
<main><slot>Default</slot></main>
</body>
</html>
"""


@pytest.fixture
def base_layout(site):
    site.write("css/site.css", "body { margin: 0; }")
    return site.write("_layouts/base.html", BASE_LAYOUT)


def test_ssi_include_is_expanded_and_recorded(site, graph, compose) -> None:
    header = site.write("_includes/header.html", "<header>Site</header>")
    page = site.write("index.html", '<!--#include virtual="/_includes/header.html" -->\n<main>Hi</main>')

    result = compose("index.html")

    assert result.content == "<header>Site</header>\n<main>Hi</main>"
    assert result.warnings == []
    assert graph.dependencies(page) == [header]
    assert graph.direct_dependents(header) == [page]


def test_file_include_is_relative_to_including_file(site, compose) -> None:
    site.write("blog/_parts/nav.html", "<nav>Blog</nav>")
    site.write("blog/post.html", '<!--#include file="_parts/nav.html" --><p>Post</p>')

    assert compose("blog/post.html").content == "<nav>Blog</nav><p>Post</p>"


def test_nested_includes_are_recorded_on_the_page(site, graph, compose) -> None:
    inner = site.write("_includes/inner.html", "<b>inner</b>")
    outer = site.write("_includes/outer.html", '<div><!--#include file="inner.html" --></div>')
    page = site.write("index.html", '<!--#include virtual="/_includes/outer.html" -->')

    result = compose("index.html")

    assert result.content == "<div><b>inner</b></div>"
    assert set(graph.dependencies(page)) == {inner, outer}


def test_missing_include_becomes_marker(site, compose) -> None:
    site.write("index.html", '<p>a</p><!--#include file="missing.html" --><p>b</p>')

    result = compose("index.html")

    assert "<!-- WARNING: include not found: missing.html -->" in result.content
    assert result.content.startswith("<p>a</p>") and result.content.endswith("<p>b</p>")
    assert [warning.kind for warning in result.warnings] == [MISSING]


def test_unsafe_include_is_not_read(site, graph, compose) -> None:
    page = site.write("index.html", '<!--#include file="../../../etc/passwd" -->')

    result = compose("index.html")

    assert "include not found" in result.content
    assert [warning.kind for warning in result.warnings] == [SECURITY]
    assert graph.dependencies(page) == []


def test_include_cycle_raises_with_full_chain(site, graph, compose) -> None:
    a = site.write("a.html", '<!--#include file="b.html" -->')
    b = site.write("b.html", '<!--#include file="c.html" -->')
    c = site.write("c.html", '<!--#include file="a.html" -->')

    with pytest.raises(CircularDependencyError) as excinfo:
        compose("a.html")

    assert excinfo.value.chain == [a, b, c]
    assert "→" in str(excinfo.value)
    # Dependencies found before the cycle stay recorded.
    assert set(graph.dependencies(a)) == {b, c}


def test_css_import_cycle_terminates_and_records_all(site, graph, compose) -> None:
    a = site.write("css/a.css", '@import "b.css";')
    b = site.write("css/b.css", '@import "c.css";')
    c = site.write("css/c.css", '@import "a.css";')
    page = site.write("index.html", '<link rel="stylesheet" href="/css/a.css">')

    result = compose("index.html")

    assert result.warnings == []
    assert set(graph.dependencies(page)) == {a, b, c}


def test_include_depth_limit(site, compose) -> None:
    for level in range(1, 13):
        site.write(f"_includes/level{level}.html", f'<p>L{level}</p><!--#include file="level{level + 1}.html" -->')
    site.write("index.html", '<!--#include virtual="/_includes/level1.html" -->')

    result = compose("index.html")

    for level in range(1, MAX_INCLUDE_DEPTH + 1):
        assert f"<p>L{level}</p>" in result.content
    assert "<p>L11</p>" not in result.content
    assert "include depth limit (10) exceeded: level11.html" in result.content
    assert [warning.kind for warning in result.warnings] == [DEPTH]


def test_data_layout_fragment_fills_slots(site, graph, base_layout, compose) -> None:
    page = site.write(
        "index.html",
        '<div data-layout="/_layouts/base.html">\n'
        '<template target="header"><h1>Custom</h1></template>\n'
        "<p>Body text</p>\n"
        "</div>\n",
    )

    result = compose("index.html")

    assert result.layout == base_layout
    assert "<header><h1>Custom</h1></header>" in result.content
    assert "<main><p>Body text</p></main>" in result.content
    assert "data-layout" not in result.content
    assert result.content.startswith("<!DOCTYPE html>")
    assert base_layout in graph.dependencies(page)
    assert site.path("css/site.css") in graph.dependencies(page)


def test_slot_fallback_is_kept(site, base_layout, compose) -> None:
    site.write("index.html", '<section data-layout="/_layouts/base.html"><template target="header">H</template></section>')

    result = compose("index.html")

    assert "<main>Default</main>" in result.content
    assert "<header>H</header>" in result.content


def test_data_slot_elements_bind_by_name(site, base_layout, compose) -> None:
    site.write(
        "index.html",
        '<div data-layout="/_layouts/base.html"><h1 data-slot="header">Title</h1><p>Text</p></div>',
    )

    result = compose("index.html")

    assert "<header><h1>Title</h1></header>" in result.content
    assert "<main><p>Text</p></main>" in result.content


def test_full_document_with_layout_link_merges_documents(site, base_layout, compose) -> None:
    site.write("css/page.css", "p { color: red; }")
    site.write(
        "index.html",
        """<!DOCTYPE html>
<html lang="fr" data-theme="dark">
<head>
<link rel="layout" href="/_layouts/base.html">
<title>Page title</title>
<link rel="stylesheet" href="/css/site.css">
<link rel="stylesheet" href="/css/page.css">
</head>
<body class="home">
<p>Hello</p>
</body>
</html>
""",
    )

    result = compose("index.html")
    content = result.content

    assert '<html lang="fr" data-theme="dark">' in content
    assert '<body class="home">' in content
    assert "<title>Page title</title>" in content
    assert "<title>Layout</title>" not in content
    assert content.count('href="/css/site.css"') == 1
    assert 'href="/css/page.css"' in content
    assert 'rel="layout"' not in content
    assert "<main><p>Hello</p></main>" in content
    assert content.count("<html") == 1


def test_full_document_over_fragment_layout(site, compose) -> None:
    site.write("_layouts/frame.html", '<div class="frame"><slot></slot></div>')
    site.write(
        "index.html",
        '<!DOCTYPE html>\n<html>\n<head><link rel="layout" href="/_layouts/frame.html"><title>T</title></head>\n'
        "<body>\n<p>Inside</p>\n</body>\n</html>",
    )

    content = compose("index.html").content

    assert '<div class="frame"><p>Inside</p></div>' in content
    assert "<title>T</title>" in content
    assert 'rel="layout"' not in content


def test_full_document_without_layout_is_left_alone(site, compose) -> None:
    site.write("_layout.html", "<div><slot></slot></div>")
    html = "<!DOCTYPE html>\n<html><head><title>X</title></head><body><p>Own</p></body></html>"
    site.write("index.html", html)

    result = compose("index.html")

    assert result.content == html
    assert result.layout is None


def test_multiple_data_layouts_in_fragment_is_malformed(site, compose) -> None:
    site.write("index.html", '<div data-layout="a"></div><div data-layout="b"></div>')

    with pytest.raises(MalformedDirectiveError):
        compose("index.html")


def test_default_layout_rules_first_match_wins(site, compose) -> None:
    blog = site.write("_layouts/blog.html", '<article class="blog"><slot></slot></article>')
    base = site.write("_layouts/plain.html", '<div class="plain"><slot></slot></div>')
    site.write("blog/post.html", "<p>post</p>")
    site.write("about.html", "<p>about</p>")
    config = site.config(
        default_layouts=[
            DefaultLayoutRule.parse("blog/**=/_layouts/blog.html"),
            DefaultLayoutRule.parse("/_layouts/plain.html"),
        ]
    )

    post = compose("blog/post.html", config=config)
    about = compose("about.html", config=config)

    assert post.layout == blog
    assert post.content == '<article class="blog"><p>post</p></article>'
    assert about.layout == base
    assert about.content == '<div class="plain"><p>about</p></div>'


def test_nearest_ancestor_layout_is_used(site, compose) -> None:
    site.write("_layout.html", '<div class="root"><slot></slot></div>')
    docs_layout = site.write("docs/_layout.html", '<div class="docs"><slot></slot></div>')
    site.write("docs/guide/intro.html", "<p>intro</p>")

    result = compose("docs/guide/intro.html")

    assert result.layout == docs_layout
    assert result.content == '<div class="docs"><p>intro</p></div>'


def test_includes_directory_layout_is_last_fallback(site, compose) -> None:
    fallback = site.write("_includes/_layout.html", '<div class="fallback"><slot></slot></div>')
    site.write("page.html", "<p>x</p>")

    assert compose("page.html").layout == fallback


def test_short_layout_name_is_searched(site, compose) -> None:
    card = site.write("_includes/_card.layout.html", '<div class="card"><slot></slot></div>')
    site.write("pages/item.html", '<div data-layout="card"><p>Item</p></div>')

    result = compose("pages/item.html")

    assert result.layout == card
    assert result.content == '<div class="card"><p>Item</p></div>'


def test_missing_named_layout_falls_through_with_warning(site, compose) -> None:
    root_layout = site.write("_layout.html", '<div class="root"><slot></slot></div>')
    site.write("index.html", '<div data-layout="nowhere"><p>x</p></div>')

    result = compose("index.html")

    assert result.layout == root_layout
    assert [warning.kind for warning in result.warnings] == [LAYOUT]
    assert result.content == '<div class="root"><p>x</p></div>'


def test_nested_layouts_are_applied_outward(site, graph, compose) -> None:
    outer = site.write("_layouts/outer.html", '<body-frame class="outer"><slot></slot></body-frame>')
    inner = site.write(
        "_layouts/inner.html",
        '<section data-layout="/_layouts/outer.html"><h2>Inner</h2><slot></slot></section>',
    )
    page = site.write("index.html", '<div data-layout="/_layouts/inner.html"><p>Page</p></div>')

    result = compose("index.html")

    assert result.content == '<body-frame class="outer"><h2>Inner</h2><p>Page</p></body-frame>'
    assert {outer, inner} <= set(graph.dependencies(page))


def test_layout_cycle_raises(site, compose) -> None:
    site.write("_layouts/a.html", '<section data-layout="/_layouts/b.html"><slot></slot></section>')
    site.write("_layouts/b.html", '<article data-layout="/_layouts/a.html"><slot></slot></article>')
    site.write("index.html", '<p data-layout="/_layouts/a.html">x</p>')

    with pytest.raises(CircularDependencyError):
        compose("index.html")


def test_include_element_fills_component_slots(site, compose) -> None:
    site.write(
        "_components/card.html",
        '<div class="card"><h2><slot name="title">Untitled</slot></h2><div class="body"><slot>No content</slot></div></div>',
    )
    site.write(
        "index.html",
        '<include src="/_components/card.html"><h3 data-slot="title">Hello</h3><p>Card body</p></include>',
    )

    content = compose("index.html").content

    assert content == '<div class="card"><h2><h3>Hello</h3></h2><div class="body"><p>Card body</p></div></div>'


def test_empty_include_element_keeps_fallbacks(site, compose) -> None:
    site.write("_components/card.html", '<div><slot name="title">Untitled</slot>|<slot>No content</slot></div>')
    site.write("index.html", '<include src="/_components/card.html" />')

    assert compose("index.html").content == "<div>Untitled|No content</div>"


def test_head_html_wraps_layoutless_fragment(site, compose) -> None:
    site.write("index.html", "<p>x</p>")

    content = compose("index.html", head_html="<title>Synth</title>").content

    assert content.startswith("<!DOCTYPE html>")
    assert "<title>Synth</title>" in content
    assert "<p>x</p>" in content


def test_explicit_layout_argument(site, base_layout, compose) -> None:
    site.write("notes.html", "<p>Notes</p>")

    result = compose("notes.html", layout="/_layouts/base.html", head_html="<title>Notes</title>")

    assert result.layout == base_layout
    assert "<title>Notes</title>" in result.content
    assert "<title>Layout</title>" not in result.content
    assert "<main><p>Notes</p></main>" in result.content


def test_composition_is_idempotent(site, graph, base_layout, compose) -> None:
    site.write("_includes/nav.html", "<nav>n</nav>")
    site.write(
        "index.html",
        '<div data-layout="/_layouts/base.html"><!--#include virtual="/_includes/nav.html" --><p>x</p></div>',
    )
    extractor = ReferenceExtractor()

    first = compose("index.html", extractor=extractor)
    first_snapshot = graph.snapshot()
    second = compose("index.html", extractor=extractor)

    assert first.content == second.content
    assert graph.snapshot() == first_snapshot
    assert extractor.get_all_referenced_assets() == [site.path("css/site.css")]


def test_split_and_apply_slots() -> None:
    bindings = split_slots('<template target="a">A</template><template>T</template><p data-slot="b">B</p>rest')

    assert bindings.named == {"a": "A", "b": "<p>B</p>"}
    assert bindings.default == "Trest"
    assert apply_slots('<slot name="a"></slot><slot name="c">C</slot><slot></slot><slot>second</slot>', bindings) == (
        "A" + "C" + "Trest" + "second"
    )
    assert apply_slots("<slot>fallback</slot>", SlotBindings()) == "fallback"


NESTED_BASE = "<!DOCTYPE html><html><head><title>Site</title></head><body><slot></slot></body></html>"


def test_head_html_survives_nested_layouts(site, compose) -> None:
    site.write("_base.html", NESTED_BASE)
    site.write("_post.html", '<article data-layout="base"><slot></slot></article>')
    site.write("page.html", "<p>x</p>")

    content = compose("page.html", layout="post", head_html="<title>Post Title</title>").content

    assert "<title>Post Title</title>" in content
    assert "<title>Site</title>" not in content
    assert "<p>x</p>" in content


def test_fragment_head_survives_nested_layouts(site, compose) -> None:
    site.write("_base.html", NESTED_BASE)
    site.write("_post.html", '<article data-layout="base"><slot></slot></article>')
    site.write("page.html", '<head><title>Mine</title></head><div data-layout="post"><p>x</p></div>')

    content = compose("page.html").content

    assert "<title>Mine</title>" in content
    assert "<title>Site</title>" not in content


def test_head_html_through_fragment_layouts_wraps_document(site, compose) -> None:
    site.write("_layouts/frame.html", '<div class="frame"><slot></slot></div>')
    site.write("page.html", "<p>x</p>")

    content = compose("page.html", layout="/_layouts/frame.html", head_html="<title>Framed</title>").content

    assert content.startswith("<!DOCTYPE html>")
    assert "<title>Framed</title>" in content
    assert '<div class="frame"><p>x</p></div>' in content


def test_layout_include_element_keeps_named_slots_for_page(site, compose) -> None:
    site.write("_includes/header.html", '<header><slot name="title">Default title</slot></header>')
    site.write(
        "_layouts/base.html",
        "<!DOCTYPE html><html><head><title>L</title></head><body>"
        '<include src="/_includes/header.html"/><main><slot></slot></main></body></html>',
    )
    site.write(
        "index.html",
        '<div data-layout="/_layouts/base.html"><h1 data-slot="title">Page title</h1><p>body</p></div>',
    )
    site.write("plain.html", '<div data-layout="/_layouts/base.html"><p>plain</p></div>')

    content = compose("index.html").content
    plain = compose("plain.html").content

    assert "<header><h1>Page title</h1></header>" in content
    assert "<main><p>body</p></main>" in content
    assert "Default title" not in content
    assert "<header>Default title</header>" in plain


def test_failed_composition_clears_page_assets(site, compose) -> None:
    css = site.write("css/site.css", "body { margin: 0; }")
    page = site.write("index.html", '<link rel="stylesheet" href="/css/site.css"><p>x</p>')
    extractor = ReferenceExtractor()
    compose("index.html", extractor=extractor)
    assert extractor.get_page_assets(page) == [css]

    site.write("index.html", '<link rel="stylesheet" href="/css/site.css"><!--#include file="index.html" -->')
    with pytest.raises(CircularDependencyError):
        compose("index.html", extractor=extractor)

    assert extractor.get_page_assets(page) == []
    assert not extractor.is_asset_referenced(css)


def test_result_lists_include_layout_and_asset_references(site, base_layout, compose) -> None:
    header = site.write("_includes/nav.html", "<nav>n</nav>")
    site.write(
        "index.html",
        '<div data-layout="/_layouts/base.html"><!--#include virtual="/_includes/nav.html" -->'
        '<!--#include file="../../../etc/passwd" --><p>x</p></div>',
    )

    result = compose("index.html")
    found = {(ref.kind, ref.to_path) for ref in result.references}

    assert (references.INCLUDE, header) in found
    assert (references.INCLUDE, None) in found
    assert (references.LAYOUT, base_layout) in found
    assert (references.STYLESHEET, site.path("css/site.css")) in found
    assert None not in result.dependencies
