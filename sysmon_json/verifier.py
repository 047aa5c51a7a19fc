"""Round-trip verification of written outputs."""

import logging
from pathlib import Path
from typing import Optional

from .adapters import DEFAULT_CODEC, Codec
from .errors import ConversionIOError, VerificationMismatchError
from .models import Document, DocumentFormat, Element, Node, Text, child_labels

logger = logging.getLogger(__name__)


def first_difference(expected: Node, actual: Node, path: Optional[str] = None) -> Optional[str]:
    """
    Find the first structural difference between two trees.

    Attribute order and formatting whitespace are not significant. Returns
    None when the trees are equal, otherwise a path such as
    ``Sysmon/EventFiltering/RuleGroup[2]/attribute "onmatch"``.
    """
    if isinstance(expected, Text) or isinstance(actual, Text):
        if expected != actual:
            return f"{path}/text()" if path else "text()"
        return None

    path = path or expected.name
    if expected.name != actual.name:
        return f"{path} (element <{expected.name}> != <{actual.name}>)"

    for name in sorted(set(expected.attributes) | set(actual.attributes)):
        if expected.attributes.get(name) != actual.attributes.get(name):
            return f'{path}/attribute "{name}"'

    labels = child_labels(expected.children)
    for position, (left, right) in enumerate(zip(expected.children, actual.children)):
        if isinstance(left, Element) and isinstance(right, Element):
            difference = first_difference(left, right, f"{path}/{labels[position]}")
        elif isinstance(left, Text) and isinstance(right, Text):
            difference = first_difference(left, right, path)
        else:
            difference = f"{path}/child[{position + 1}] (element and text differ)"
        if difference:
            return difference

    if len(expected.children) != len(actual.children):
        return f"{path} ({len(expected.children)} children != {len(actual.children)})"
    return None


def structurally_equal(left: Document, right: Document) -> bool:
    return first_difference(left.root, right.root) is None


def verify_output(
    output: Path,
    original: Document,
    output_format: DocumentFormat,
    original_format: DocumentFormat,
    codec: Codec = DEFAULT_CODEC
) -> None:
    """
    Re-read a written file and compare it with the tree it was made from.

    The output is parsed, serialized back to the original format and parsed
    again, so both adapters take part in the check.

    Raises:
        VerificationMismatchError: naming the first differing path
    """
    try:
        data = output.read_bytes()
    except OSError as e:
        raise ConversionIOError(output, e, "read back") from e

    written = codec.parse(data, output_format)
    round_tripped = codec.parse(codec.serialize(written, original_format), original_format)

    difference = first_difference(original.root, round_tripped.root)
    if difference is not None:
        raise VerificationMismatchError(output, difference)
    logger.debug("Verified %s", output)
