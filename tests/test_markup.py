"""Unit tests for slide markup parsing."""

from __future__ import annotations

from domain.markup import (
    BoldNode,
    BreakNode,
    StyledRun,
    TextNode,
    TransparentNode,
    parse_markup,
    tokenize_markup,
)


def run_texts(runs: tuple[StyledRun, ...]) -> list[str]:
    """Return run texts with breaks shown as a marker."""
    return ["<br>" if run.is_line_break else run.text for run in runs]


def test_parse_markup_tree() -> None:
    """Parse text and a bold element into nodes."""
    assert parse_markup("a<b>b</b>") == (TextNode("a"), BoldNode((TextNode("b"),)))


def test_bold_run_and_spaces() -> None:
    """Emit words and single spaces with inherited styles."""
    runs = tokenize_markup("Hello <b>World</b>")

    assert run_texts(runs) == ["Hello", " ", "World"]
    assert runs[0].bold is False
    assert runs[2].bold is True


def test_nested_styles_accumulate() -> None:
    """Combine styles from nested tags."""
    runs = tokenize_markup("<b><i><u>all</u></i></b>")

    assert runs == (StyledRun(text="all", bold=True, italic=True, underline=True),)


def test_tags_are_case_insensitive() -> None:
    """Match tag names regardless of case."""
    runs = tokenize_markup("<B>bold</B><BR/><I>it</I>")

    assert run_texts(runs) == ["bold", "<br>", "it"]
    assert runs[0].bold is True
    assert runs[2].italic is True


def test_break_variants() -> None:
    """Treat <br>, <br/> and <br /> as line breaks."""
    runs = tokenize_markup("a<br>b<br/>c<br />d")

    assert run_texts(runs) == ["a", "<br>", "b", "<br>", "c", "<br>", "d"]


def test_unknown_tags_keep_text() -> None:
    """Keep the children of unknown tags without styling them."""
    nodes = parse_markup("<span>plain</span>")

    assert nodes == (TransparentNode(tag="span", children=(TextNode("plain"),)),)
    assert tokenize_markup("<span>plain</span>") == (StyledRun(text="plain"),)


def test_unbalanced_tags() -> None:
    """Close unclosed tags at the end and ignore stray closers."""
    assert tokenize_markup("<b>open") == (StyledRun(text="open", bold=True),)
    assert tokenize_markup("</i>stray") == (StyledRun(text="stray"),)


def test_entities_are_decoded() -> None:
    """Decode HTML entities in text content."""
    assert run_texts(tokenize_markup("fish &amp; chips &lt;3")) == [
        "fish",
        " ",
        "&",
        " ",
        "chips",
        " ",
        "<3",
    ]


def test_whitespace_collapses() -> None:
    """Collapse whitespace runs and drop it at the edges and around breaks."""
    runs = tokenize_markup("  a \t\n b  <br>  c  ")

    assert run_texts(runs) == ["a", " ", "b", "<br>", "c"]


def test_space_across_tag_boundary() -> None:
    """Emit one space between words separated across a tag boundary."""
    runs = tokenize_markup("Hello <b> World</b>")

    assert run_texts(runs) == ["Hello", " ", "World"]
    assert runs[2].bold is True


def test_uppercase_applies_to_text_only() -> None:
    """Upper-case text content without touching tag names."""
    runs = tokenize_markup("make <b>it</b> loud", uppercase=True)

    assert run_texts(runs) == ["MAKE", " ", "IT", " ", "LOUD"]
    assert runs[2].bold is True


def test_break_node_in_tree() -> None:
    """Represent <br> as a break node inside its parent."""
    assert parse_markup("<b>a<br>b</b>") == (
        BoldNode((TextNode("a"), BreakNode(), TextNode("b"))),
    )
