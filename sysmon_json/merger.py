"""Core merge logic."""

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Mapping, Optional, Sequence

from .errors import MergeStructuralError
from .models import Document, Element, Node, Text, fingerprint
from .validator import check_sysmon_layout, validate

logger = logging.getLogger(__name__)


class MergeMode(Enum):
    """How a matched element absorbs a later one."""
    MERGE = "merge"
    REPLACE = "replace"


StructureRule = Callable[[Document], None]


@dataclass(frozen=True)
class MergePolicy:
    """
    Rules for matching and combining elements.

    ``identity`` maps a tag to the attributes that identify it. An empty
    tuple makes the tag a singleton, matched by name alone. Tags missing
    from the map use ``default_identity``; None means never matched.
    """
    identity: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    default_identity: Optional[tuple[str, ...]] = ("name",)
    replace_tags: frozenset[str] = frozenset()
    unique_tags: frozenset[str] = frozenset()
    dedup: bool = True
    root_tag: Optional[str] = None
    rules: tuple[StructureRule, ...] = ()

    def identity_for(self, tag: str) -> Optional[tuple[str, ...]]:
        return self.identity.get(tag, self.default_identity)

    def mode_for(self, tag: str) -> MergeMode:
        return MergeMode.REPLACE if tag in self.replace_tags else MergeMode.MERGE

    def identity_key(self, element: Element) -> Optional[tuple[str, ...]]:
        """
        Key under which an element matches its counterparts, or None.

        An element missing any identity attribute, or carrying it empty,
        has no identity and is always kept as a distinct sibling.
        """
        attributes = self.identity_for(element.name)
        if attributes is None:
            return None
        values = []
        for name in attributes:
            value = element.attributes.get(name)
            if not value:
                return None
            values.append(value)
        return (element.name, *values)


@dataclass
class MergePlan:
    """Source documents and the policy to merge them with. Consumed by merge()."""
    documents: list[Document]
    policy: MergePolicy = field(default_factory=MergePolicy)


DEFAULT_POLICY = MergePolicy()

SYSMON_EVENT_TAGS = (
    "ProcessCreate", "FileCreateTime", "NetworkConnect", "ProcessTerminate",
    "DriverLoad", "ImageLoad", "CreateRemoteThread", "RawAccessRead",
    "ProcessAccess", "FileCreate", "RegistryEvent", "FileCreateStreamHash",
    "PipeEvent", "WmiEvent", "DnsQuery", "FileDelete", "ClipboardChange",
    "ProcessTampering", "FileDeleteDetected", "FileBlockExecutable",
    "FileBlockShredding", "FileExecutableDetected",
)
SYSMON_SETTING_TAGS = (
    "HashAlgorithms", "CheckRevocation", "DnsLookup", "ArchiveDirectory",
    "DriverName", "FieldSizes", "CopyOnDeletePE", "CopyOnDeleteSIDs",
    "CopyOnDeleteExtensions", "CopyOnDeleteProcesses",
)

SYSMON_POLICY = MergePolicy(
    identity={
        "Sysmon": (),
        "EventFiltering": (),
        **{tag: () for tag in SYSMON_SETTING_TAGS},
        "RuleGroup": ("name",),
        "Rule": ("name",),
        **{tag: ("onmatch",) for tag in SYSMON_EVENT_TAGS},
    },
    default_identity=None,
    replace_tags=frozenset(SYSMON_SETTING_TAGS),
    unique_tags=frozenset(("EventFiltering",) + SYSMON_SETTING_TAGS + SYSMON_EVENT_TAGS),
    root_tag="Sysmon",
    rules=(check_sysmon_layout,),
)


def merge(plan: MergePlan) -> Document:
    """Merge the documents of a plan, taking ownership of them."""
    documents, plan.documents = plan.documents, []
    return merge_documents(documents, plan.policy)


def merge_documents(
    documents: Sequence[Document],
    policy: MergePolicy = DEFAULT_POLICY
) -> Document:
    """
    Merge documents into one; later documents take precedence.

    Inputs are not modified. The result is validated against the policy.

    Raises:
        MergeStructuralError: if roots differ or the result breaks a rule
    """
    if not documents:
        raise MergeStructuralError("/", "no documents to merge")

    expected = documents[0].root.name
    for position, document in enumerate(documents, start=1):
        if document.root.name != expected:
            raise MergeStructuralError(
                document.root.name,
                f"root element mismatch: document {position} has <{document.root.name}>, "
                f"expected <{expected}>"
            )

    merged = copy.deepcopy(documents[0].root)
    for document in documents[1:]:
        _merge_element(merged, document.root, policy)

    if policy.dedup:
        _dedup(merged)

    result = Document(merged)
    validate(result, policy)
    logger.info(
        "Merged %d document(s) into <%s> (fingerprint %s)",
        len(documents), merged.name, fingerprint(merged)
    )
    return result


def _merge_element(target: Element, source: Element, policy: MergePolicy) -> None:
    """Fold ``source`` into the matching ``target`` in place."""
    if policy.mode_for(source.name) is MergeMode.REPLACE:
        target.attributes = dict(source.attributes)
        target.children = copy.deepcopy(source.children)
        return

    target.attributes.update(source.attributes)

    # Text is last-wins, like an attribute value
    if any(isinstance(child, Text) for child in source.children):
        target.children = [child for child in target.children if not isinstance(child, Text)]

    # Only elements present before this source can be matched
    candidates: dict[tuple[str, ...], Element] = {}
    for child in target.children:
        if isinstance(child, Element):
            key = policy.identity_key(child)
            if key is not None:
                candidates.setdefault(key, child)

    for child in source.children:
        if isinstance(child, Text):
            target.children.append(Text(child.content))
            continue
        key = policy.identity_key(child)
        # Each earlier element absorbs at most one element of this source
        match = candidates.pop(key, None) if key is not None else None
        if match is None:
            target.children.append(copy.deepcopy(child))
        else:
            _merge_element(match, child, policy)

    target.children = _join_text(target.children)


def _dedup(element: Element) -> None:
    """Collapse structurally identical sibling elements, keeping the first."""
    seen: dict[str, list[Element]] = {}
    kept: list[Node] = []
    for child in element.children:
        if isinstance(child, Element):
            _dedup(child)
            bucket = seen.setdefault(fingerprint(child), [])
            if any(child == other for other in bucket):
                logger.debug("Dropping duplicate <%s> under <%s>", child.name, element.name)
                continue
            bucket.append(child)
        kept.append(child)
    element.children = _join_text(kept)


def _join_text(children: list[Node]) -> list[Node]:
    joined: list[Node] = []
    for child in children:
        if isinstance(child, Text) and joined and isinstance(joined[-1], Text):
            joined[-1] = Text(joined[-1].content + child.content)
        else:
            joined.append(child)
    return joined
