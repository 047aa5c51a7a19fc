"""
Format adapters between raw bytes and the document tree.

XML is read and written with ElementTree. JSON uses an explicit node shape::

    {"name": "Sysmon", "attributes": {"schemaversion": "4.90"},
     "children": [{"name": "HashAlgorithms", "children": ["md5,sha256"]}]}

Text leaves appear as plain strings inside ``children``. Whitespace-only text
is treated as formatting and dropped by both parsers.
"""

import codecs
import json
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .errors import ParseError, SerializeError
from .models import Document, DocumentFormat, Element, Node, Text, child_labels

logger = logging.getLogger(__name__)

INDENT = "  "
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>\n'

_BOMS = (
    (codecs.BOM_UTF8, "utf-8"),
    (codecs.BOM_UTF16_LE, "utf-16-le"),
    (codecs.BOM_UTF16_BE, "utf-16-be"),
)
_XML_ENCODING = re.compile(r"""^(<\?xml[^>]*?encoding\s*=\s*)(["'])[^"']*\2""")
_JSON_KEYS = {"name", "attributes", "children"}

# XML 1.0 Name production; a leading "{uri}" is ElementTree namespace notation
_NAME_START = (
    r":A-Z_a-z\u00C0-\u00D6\u00D8-\u00F6\u00F8-\u02FF\u0370-\u037D\u037F-\u1FFF"
    r"\u200C-\u200D\u2070-\u218F\u2C00-\u2FEF\u3001-\uD7FF\uF900-\uFDCF\uFDF0-\uFFFD"
    r"\U00010000-\U000EFFFF"
)
_XML_NAME = re.compile(
    r"(?:\{[^}]*\})?[" + _NAME_START + r"][" + _NAME_START + r"\-.0-9\u00B7\u0300-\u036F\u203F-\u2040]*"
)
_XML_BAD_CHAR = re.compile(r"[^\u0009\u000A\u000D\u0020-\uD7FF\uE000-\uFFFD\U00010000-\U0010FFFF]")


def parse(data: bytes, fmt: DocumentFormat) -> Document:
    """Parse raw bytes in the given format."""
    if fmt is DocumentFormat.XML:
        return parse_xml(data)
    return parse_json(data)


def serialize(document: Document, fmt: DocumentFormat) -> bytes:
    """Serialize a document to raw bytes in the given format."""
    if fmt is DocumentFormat.XML:
        return serialize_xml(document)
    return serialize_json(document)


@dataclass(frozen=True)
class Codec:
    """The parse/serialize pair the pipeline converts with."""
    parse: Callable[[bytes, DocumentFormat], Document] = parse
    serialize: Callable[[Document, DocumentFormat], bytes] = serialize


DEFAULT_CODEC = Codec()


def preprocess(data: bytes, fmt: DocumentFormat) -> bytes:
    """
    Normalize encoding and whitespace before parsing.

    Strips byte order marks, decodes UTF-16 and legacy single-byte input,
    normalizes line endings, trims trailing whitespace on every line and
    re-encodes as UTF-8. For XML the declared encoding is rewritten to match.
    """
    text = _decode(data)
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\x00", "")
    text = "\n".join(line.rstrip() for line in text.split("\n")).strip()
    if fmt is DocumentFormat.XML:
        text = _XML_ENCODING.sub(r"\1\2UTF-8\2", text, count=1)
    return (text + "\n").encode("utf-8")


def _decode(data: bytes) -> str:
    for bom, encoding in _BOMS:
        if data.startswith(bom):
            return data[len(bom):].decode(encoding, errors="replace")
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        logger.debug("Input is not UTF-8, decoding as latin-1")
        return data.decode("latin-1")


def _append_text(children: list[Node], value: Optional[str]) -> None:
    """Append a text leaf, skipping blank text and joining adjacent leaves."""
    if not value or not value.strip():
        return
    if children and isinstance(children[-1], Text):
        children[-1] = Text(children[-1].content + value)
    else:
        children.append(Text(value))


# =========================================================================
# XML
# =========================================================================

def parse_xml(data: bytes) -> Document:
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        raise ParseError(f"Malformed XML: {e}") from e
    try:
        return Document(_from_etree(root))
    except RecursionError as e:
        raise ParseError("XML document is nested too deeply") from e


def _from_etree(node: ET.Element) -> Element:
    children: list[Node] = []
    _append_text(children, node.text)
    for sub in node:
        children.append(_from_etree(sub))
        _append_text(children, sub.tail)
    return Element(node.tag, dict(node.attrib), children)


def serialize_xml(document: Document) -> bytes:
    """
    Serialize a document as indented UTF-8 XML.

    Raises:
        SerializeError: if a name or character cannot be written as XML 1.0,
            naming the path of the offending element
    """
    try:
        root = _to_etree(document.root, document.root.name)
        _indent(root, document.root, 0)
        body = ET.tostring(root, encoding="unicode")
    except (TypeError, ValueError) as e:
        raise SerializeError(f"Cannot serialize XML: {e}") from e
    except RecursionError as e:
        raise SerializeError("Cannot serialize XML: document is nested too deeply") from e
    return (XML_DECLARATION + body + "\n").encode("utf-8")


def is_xml_name(name: str) -> bool:
    return _XML_NAME.fullmatch(name) is not None


def _check_xml_chars(value: str, where: str) -> None:
    bad = _XML_BAD_CHAR.search(value)
    if bad:
        raise SerializeError(f"{where}: character U+{ord(bad.group()):04X} is not allowed in XML")


def _to_etree(element: Element, path: str) -> ET.Element:
    if not is_xml_name(element.name):
        raise SerializeError(f"{path}: {element.name!r} is not a valid XML element name")
    for name, value in element.attributes.items():
        if not is_xml_name(name):
            raise SerializeError(f"{path}: {name!r} is not a valid XML attribute name")
        _check_xml_chars(value, f'{path}/attribute "{name}"')

    node = ET.Element(element.name, attrib=dict(element.attributes))
    last = None
    for child, label in zip(element.children, child_labels(element.children)):
        if isinstance(child, Text):
            _check_xml_chars(child.content, f"{path}/text()")
            if last is None:
                node.text = (node.text or "") + child.content
            else:
                last.tail = (last.tail or "") + child.content
        else:
            last = _to_etree(child, f"{path}/{label}")
            node.append(last)
    return node


def _indent(node: ET.Element, element: Element, level: int) -> None:
    # Mixed content keeps its text exactly, so only pure element lists get indented
    subs = list(node)
    if not subs:
        return
    if not any(isinstance(child, Text) for child in element.children):
        node.text = "\n" + INDENT * (level + 1)
        for sub in subs:
            sub.tail = "\n" + INDENT * (level + 1)
        subs[-1].tail = "\n" + INDENT * level
    for sub, child in zip(subs, element.elements()):
        _indent(sub, child, level + 1)


# =========================================================================
# JSON
# =========================================================================

def parse_json(data: bytes) -> Document:
    try:
        payload = json.loads(data)
    except ValueError as e:
        raise ParseError(f"Malformed JSON: {e}") from e
    except RecursionError as e:
        raise ParseError("Malformed JSON: document is nested too deeply") from e
    try:
        return Document(_element_from_json(payload, "$"))
    except RecursionError as e:
        raise ParseError("JSON document is nested too deeply") from e


def _element_from_json(value: Any, where: str) -> Element:
    if not isinstance(value, dict):
        raise ParseError(f"{where}: expected an object, got {type(value).__name__}")
    unknown = set(value) - _JSON_KEYS
    if unknown:
        raise ParseError(f"{where}: unexpected keys {sorted(unknown)}")

    name = value.get("name")
    if not isinstance(name, str) or not name:
        raise ParseError(f"{where}: 'name' must be a non-empty string")
    if not is_xml_name(name):
        raise ParseError(f"{where}: {name!r} is not a valid element name")
    where = f"{where}/{name}"

    attributes = value.get("attributes", {})
    if not isinstance(attributes, dict):
        raise ParseError(f"{where}: 'attributes' must be an object")
    for key, attr_value in attributes.items():
        if not is_xml_name(key):
            raise ParseError(f"{where}: {key!r} is not a valid attribute name")
        if not isinstance(attr_value, str):
            raise ParseError(f"{where}: attribute '{key}' must be a string")

    raw_children = value.get("children", [])
    if not isinstance(raw_children, list):
        raise ParseError(f"{where}: 'children' must be a list")
    children: list[Node] = []
    for position, raw in enumerate(raw_children):
        if isinstance(raw, str):
            _append_text(children, raw)
        else:
            children.append(_element_from_json(raw, f"{where}[{position}]"))

    return Element(name, dict(attributes), children)


def serialize_json(document: Document) -> bytes:
    try:
        body = json.dumps(_element_to_json(document.root), indent=2, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise SerializeError(f"Cannot serialize JSON: {e}") from e
    except RecursionError as e:
        raise SerializeError("Cannot serialize JSON: document is nested too deeply") from e
    return (body + "\n").encode("utf-8")


def _element_to_json(element: Element) -> dict[str, Any]:
    payload: dict[str, Any] = {"name": element.name}
    if element.attributes:
        payload["attributes"] = dict(element.attributes)
    if element.children:
        payload["children"] = [
            child.content if isinstance(child, Text) else _element_to_json(child)
            for child in element.children
        ]
    return payload
