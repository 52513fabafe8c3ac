"""Parsed-tree helpers shared by segmentation and reconstruction.

Both sides must agree on which paragraphs (Word) and blocks (XHTML) carry
text, otherwise positional pairing drifts. Every predicate used for pairing
lives here.
"""

from __future__ import annotations

import logging
import re
from html.entities import name2codepoint
from typing import List, Optional, Tuple

from docx.oxml.ns import qn
from lxml import etree
from lxml import html as lxml_html

from .errors import ParseError

logger = logging.getLogger(__name__)

W_PARAGRAPH = qn("w:p")
W_TEXT = qn("w:t")

BLOCK_TAGS = frozenset({"p", "h1", "h2", "h3", "h4", "h5", "h6"})
NON_TEXT_TAGS = frozenset({"script", "style"})

XML_ENTITIES = frozenset({"amp", "lt", "gt", "quot", "apos"})
NAMED_ENTITY = re.compile(rb"&([A-Za-z][A-Za-z0-9]*);")

# Markup whitespace; U+00A0 and friends are content.
MARKUP_WHITESPACE = re.compile(r"[ \t\n\r\f]+")

XML_SPACE = "{http://www.w3.org/XML/1998/namespace}space"


# --- Word paragraphs ------------------------------------------------------


def paragraph_text_nodes(paragraph: etree._Element) -> List[etree._Element]:
    """Return the ``w:t`` nodes owned by ``paragraph``.

    Text nodes of paragraphs nested inside this one (text boxes) belong to
    the nested paragraph and are excluded.
    """

    nodes = []
    for node in paragraph.iter(W_TEXT):
        owner = next(node.iterancestors(W_PARAGRAPH), None)
        if owner is paragraph:
            nodes.append(node)
    return nodes


def text_paragraphs(
    root: etree._Element,
) -> List[Tuple[etree._Element, List[etree._Element], str]]:
    """Return ``(paragraph, text_nodes, text)`` for paragraphs with text."""

    found = []
    for paragraph in root.iter(W_PARAGRAPH):
        nodes = paragraph_text_nodes(paragraph)
        text = "".join(node.text or "" for node in nodes)
        if text:
            found.append((paragraph, nodes, text))
    return found


# --- XHTML blocks ---------------------------------------------------------


class MarkupTree:
    """A parsed chapter document and the serializer that matches its parser."""

    def __init__(self, tree: etree._ElementTree, *, is_xml: bool) -> None:
        self.tree = tree
        self.is_xml = is_xml

    @property
    def root(self) -> etree._Element:
        return self.tree.getroot()

    def serialize(self) -> bytes:
        if self.is_xml:
            docinfo = self.tree.docinfo
            return etree.tostring(
                self.tree,
                xml_declaration=True,
                encoding=docinfo.encoding or "utf-8",
            )
        return etree.tostring(self.tree, method="html", encoding="utf-8")


def html_entities_to_numeric(content: bytes) -> bytes:
    """Rewrite HTML named entities as numeric references XML understands."""

    def repl(match: re.Match) -> bytes:
        name = match.group(1).decode("ascii")
        if name in XML_ENTITIES:
            return match.group(0)
        codepoint = name2codepoint.get(name)
        if codepoint is None:
            return match.group(0)
        return b"&#%d;" % codepoint

    return NAMED_ENTITY.sub(repl, content)


def parse_markup(content: bytes) -> MarkupTree:
    """Parse chapter markup strictly as XML, falling back to HTML.

    Markup that is not well-formed XML goes through lxml's HTML parser and
    is serialized back as HTML.
    """

    parser = etree.XMLParser(recover=False, resolve_entities=False, huge_tree=True)
    try:
        root = etree.fromstring(html_entities_to_numeric(content), parser)
    except etree.XMLSyntaxError as exc:
        logger.debug("Markup is not well-formed XML (%s), parsing as HTML", exc)
    else:
        return MarkupTree(root.getroottree(), is_xml=True)

    try:
        document = lxml_html.document_fromstring(content)
    except (etree.ParserError, ValueError) as exc:
        raise ParseError(f"Markup could not be parsed: {exc}") from exc
    return MarkupTree(document.getroottree(), is_xml=False)


def local_name(element: etree._Element) -> Optional[str]:
    if not isinstance(element.tag, str):
        return None
    return etree.QName(element).localname.lower()


def block_text(element: etree._Element) -> str:
    """Return the visible text of a block with markup whitespace collapsed."""

    pieces: List[str] = []
    _collect_text(element, pieces)
    return MARKUP_WHITESPACE.sub(" ", "".join(pieces)).strip(" ")


def _collect_text(element: etree._Element, pieces: List[str]) -> None:
    name = local_name(element)
    if name == "br":
        pieces.append(" ")
    elif name not in NON_TEXT_TAGS and name is not None and element.text:
        pieces.append(element.text)
    if name not in NON_TEXT_TAGS:
        for child in element:
            _collect_text(child, pieces)
            if child.tail:
                pieces.append(child.tail)


def _body(root: etree._Element) -> etree._Element:
    for element in root.iter():
        if local_name(element) == "body":
            return element
    return root


def _inside_block(element: etree._Element, scope: etree._Element) -> bool:
    for ancestor in element.iterancestors():
        if ancestor is scope:
            return False
        if local_name(ancestor) in BLOCK_TAGS:
            return True
    return False


def text_blocks(markup: MarkupTree) -> List[Tuple[etree._Element, str]]:
    """Return outermost ``p``/``h1``-``h6`` elements that carry text."""

    scope = _body(markup.root)
    found = []
    for element in scope.iter():
        if local_name(element) not in BLOCK_TAGS:
            continue
        if _inside_block(element, scope):
            continue
        text = block_text(element)
        if text.strip():
            found.append((element, text))
    return found


def loose_text(markup: MarkupTree) -> str:
    """Return body text that sits outside every ``p``/``h1``-``h6`` block.

    Such text is neither extracted nor rewritten.
    """

    scope = _body(markup.root)
    pieces: List[str] = []

    def visit(element: etree._Element) -> None:
        name = local_name(element)
        if name in BLOCK_TAGS or name in NON_TEXT_TAGS:
            return
        if name is not None and element.text:
            pieces.append(element.text)
        for child in element:
            visit(child)
            if child.tail:
                pieces.append(child.tail)

    visit(scope)
    return " ".join(" ".join(pieces).split())


def replace_block_content(element: etree._Element, text: str) -> None:
    """Replace everything inside ``element`` with ``text``.

    Inline markup is dropped; the element's own tag, attributes and tail
    are kept.
    """

    for child in list(element):
        element.remove(child)
    element.text = text
