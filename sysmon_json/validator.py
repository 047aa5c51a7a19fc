"""Structural checks run on merge results."""

from typing import TYPE_CHECKING

from .errors import MergeStructuralError
from .models import Document, Element, Text, child_labels

if TYPE_CHECKING:
    from .merger import MergePolicy


def validate(document: Document, policy: "MergePolicy") -> None:
    """
    Check a merged document against a merge policy.

    Raises:
        MergeStructuralError: naming the path of the first offending element
    """
    root = document.root
    if policy.root_tag and root.name != policy.root_tag:
        raise MergeStructuralError(root.name, f"expected root element <{policy.root_tag}>")
    _check_unique(root, root.name, policy)
    for rule in policy.rules:
        rule(document)


def _check_unique(element: Element, path: str, policy: "MergePolicy") -> None:
    seen: dict[tuple[str, ...], str] = {}
    for child, label in zip(element.children, child_labels(element.children)):
        if not isinstance(child, Element):
            continue
        child_path = f"{path}/{label}"
        if child.name in policy.unique_tags:
            key = policy.identity_key(child)
            if key is not None:
                if key in seen:
                    raise MergeStructuralError(
                        child_path,
                        f"duplicate <{child.name}> within one scope (first at {seen[key]})"
                    )
                seen[key] = child_path
        _check_unique(child, child_path, policy)


def check_sysmon_layout(document: Document) -> None:
    """
    Sysmon layout rules.

    The root must carry ``schemaversion``. ``EventFiltering`` may only hold
    ``RuleGroup`` elements, at least one, and each group needs at least one
    event element.
    """
    root = document.root
    if "schemaversion" not in root.attributes:
        raise MergeStructuralError(root.name, 'missing attribute "schemaversion"')

    for child, label in zip(root.children, child_labels(root.children)):
        if not isinstance(child, Element) or child.name != "EventFiltering":
            continue
        path = f"{root.name}/{label}"
        if not child.elements():
            raise MergeStructuralError(path, "EventFiltering requires at least one RuleGroup")
        for group, group_label in zip(child.children, child_labels(child.children)):
            if isinstance(group, Text):
                raise MergeStructuralError(path, "unexpected text inside EventFiltering")
            group_path = f"{path}/{group_label}"
            if group.name != "RuleGroup":
                raise MergeStructuralError(
                    group_path,
                    f"<{group.name}> must be wrapped in a RuleGroup"
                )
            if not group.elements():
                raise MergeStructuralError(group_path, "RuleGroup holds no event elements")
