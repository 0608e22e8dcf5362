"""Inline markup parsing for slide text.

Slides accept a closed tag set: ``<b>``, ``<i>``, ``<u>`` and ``<br>``. Text
is parsed into a small tagged-variant tree and then flattened into styled
runs, one per word or whitespace gap, so that layout can measure and wrap
them individually.
"""

from __future__ import annotations

from dataclasses import dataclass
import html
import re
from typing import Iterator, Sequence, Tuple, Union

TAG_PATTERN = re.compile(r"<(/?)([A-Za-z][A-Za-z0-9]*)\b[^<>]*?(/?)\s*>")
WHITESPACE_PATTERN = re.compile(r"(\s+)")
SPACE_TEXT = " "


@dataclass(frozen=True)
class TextNode:
    text: str


@dataclass(frozen=True)
class BreakNode:
    pass


@dataclass(frozen=True)
class BoldNode:
    children: Tuple["MarkupNode", ...]


@dataclass(frozen=True)
class ItalicNode:
    children: Tuple["MarkupNode", ...]


@dataclass(frozen=True)
class UnderlineNode:
    children: Tuple["MarkupNode", ...]


@dataclass(frozen=True)
class TransparentNode:
    """Unknown tag: children are kept, no style is added."""

    tag: str
    children: Tuple["MarkupNode", ...]


MarkupNode = Union[TextNode, BreakNode, BoldNode, ItalicNode, UnderlineNode, TransparentNode]

CONTAINER_TAGS = {
    "b": BoldNode,
    "i": ItalicNode,
    "u": UnderlineNode,
}


@dataclass(frozen=True)
class RunStyleFlags:
    """Style flags inherited from enclosing tags."""

    bold: bool = False
    italic: bool = False
    underline: bool = False


@dataclass(frozen=True)
class StyledRun:
    """A word, a single space, or a line break with its style."""

    text: str
    bold: bool = False
    italic: bool = False
    underline: bool = False
    is_line_break: bool = False

    @property
    def is_space(self) -> bool:
        return not self.is_line_break and not self.text.strip()


class _OpenElement:
    def __init__(self, tag: str) -> None:
        self.tag = tag
        self.children: list[MarkupNode] = []

    def close(self) -> MarkupNode:
        node_type = CONTAINER_TAGS.get(self.tag)
        if node_type is None:
            return TransparentNode(tag=self.tag, children=tuple(self.children))
        return node_type(children=tuple(self.children))


def parse_markup(text_value: str, uppercase: bool = False) -> Tuple[MarkupNode, ...]:
    """Parse slide markup into a tree of markup nodes.

    Tags are matched case-insensitively. Closing tags without a matching
    opener are ignored and unclosed tags are closed at the end of input.
    When ``uppercase`` is set, text content is upper-cased as it is read.
    """
    root = _OpenElement("")
    stack: list[_OpenElement] = [root]

    def append_text(raw_text: str) -> None:
        if not raw_text:
            return
        decoded = html.unescape(raw_text)
        if uppercase:
            decoded = decoded.upper()
        stack[-1].children.append(TextNode(decoded))

    cursor = 0
    for match in TAG_PATTERN.finditer(text_value):
        append_text(text_value[cursor : match.start()])
        cursor = match.end()
        is_closing = bool(match.group(1))
        tag = match.group(2).lower()
        self_closing = bool(match.group(3))

        if tag == "br":
            if not is_closing:
                stack[-1].children.append(BreakNode())
            continue
        if is_closing:
            close_element(stack, tag)
            continue
        if self_closing:
            stack[-1].children.append(_OpenElement(tag).close())
            continue
        stack.append(_OpenElement(tag))
    append_text(text_value[cursor:])

    while len(stack) > 1:
        element = stack.pop()
        stack[-1].children.append(element.close())
    return tuple(root.children)


def close_element(stack: list[_OpenElement], tag: str) -> None:
    """Close the innermost open element named ``tag``, if any."""
    for depth in range(len(stack) - 1, 0, -1):
        if stack[depth].tag != tag:
            continue
        while len(stack) > depth:
            element = stack.pop()
            stack[-1].children.append(element.close())
        return


def iter_styled_text(
    nodes: Sequence[MarkupNode], flags: RunStyleFlags
) -> Iterator[Tuple[str | None, RunStyleFlags]]:
    """Walk nodes depth-first, yielding text (None for breaks) with styles."""
    for node in nodes:
        if isinstance(node, TextNode):
            yield node.text, flags
        elif isinstance(node, BreakNode):
            yield None, flags
        elif isinstance(node, BoldNode):
            yield from iter_styled_text(
                node.children,
                RunStyleFlags(True, flags.italic, flags.underline),
            )
        elif isinstance(node, ItalicNode):
            yield from iter_styled_text(
                node.children,
                RunStyleFlags(flags.bold, True, flags.underline),
            )
        elif isinstance(node, UnderlineNode):
            yield from iter_styled_text(
                node.children,
                RunStyleFlags(flags.bold, flags.italic, True),
            )
        else:
            yield from iter_styled_text(node.children, flags)


def build_runs(nodes: Sequence[MarkupNode]) -> Tuple[StyledRun, ...]:
    """Flatten markup nodes into word, space and break runs."""
    runs: list[StyledRun] = []
    pending_space: RunStyleFlags | None = None

    for text_value, flags in iter_styled_text(nodes, RunStyleFlags()):
        if text_value is None:
            pending_space = None
            runs.append(StyledRun(text="", is_line_break=True))
            continue
        for piece in WHITESPACE_PATTERN.split(text_value):
            if not piece:
                continue
            if piece.isspace():
                if runs and not runs[-1].is_line_break and pending_space is None:
                    pending_space = flags
                continue
            if pending_space is not None:
                runs.append(
                    StyledRun(
                        text=SPACE_TEXT,
                        bold=pending_space.bold,
                        italic=pending_space.italic,
                        underline=pending_space.underline,
                    )
                )
                pending_space = None
            runs.append(
                StyledRun(
                    text=piece,
                    bold=flags.bold,
                    italic=flags.italic,
                    underline=flags.underline,
                )
            )
    return tuple(runs)


def tokenize_markup(text_value: str, uppercase: bool = False) -> Tuple[StyledRun, ...]:
    """Convert slide markup into ordered styled runs."""
    return build_runs(parse_markup(text_value, uppercase=uppercase))
