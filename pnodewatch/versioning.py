"""Software version labels: normalization, release families, consensus."""

import re
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass

from pnodewatch.models import NodeRecord


@dataclass(frozen=True)
class VersionFamily:
    """A named release line of the pNode software.

    Attributes:
        id: Stable identifier used as a count key.
        label: Display name.
        pattern: Regex matched against the normalized version, or ``None``
            for the catch-all families.
    """

    id: str
    label: str
    pattern: re.Pattern | None = None


HERRENBERG = VersionFamily("v0_4_herrenberg", "v0.4 Herrenberg", re.compile(r"^0\.4(\.|$)"))
INGOLSTADT = VersionFamily("v0_5_ingolstadt", "v0.5 Ingolstadt", re.compile(r"^0\.5(\.|$)"))
STUTTGART = VersionFamily("v0_6_stuttgart", "v0.6 Stuttgart", re.compile(r"^0\.6(\.|$)"))
PRIVATE = VersionFamily("private", "Private (Hidden)")
UNVERIFIED = VersionFamily("unverified", "Unverified Build")

VERSION_FAMILIES = (HERRENBERG, INGOLSTADT, STUTTGART, PRIVATE, UNVERIFIED)


def normalize_version(raw: str | None) -> str | None:
    """Strip whitespace and a leading ``v``; ``unknown`` becomes ``None``."""
    if not raw:
        return None
    trimmed = raw.strip()
    if not trimmed or trimmed.lower() == "unknown":
        return None
    if trimmed[0] in "vV" and len(trimmed) > 1 and trimmed[1].isdigit():
        return trimmed[1:]
    return trimmed


def version_family(raw: str | None, is_private: bool = False) -> VersionFamily:
    """Map a version string to its release family.

    A private node that reports no version is ``PRIVATE``; anything that
    matches no known release line is ``UNVERIFIED``.
    """
    version = normalize_version(raw)
    if version is not None:
        for family in VERSION_FAMILIES:
            if family.pattern is not None and family.pattern.match(version):
                return family
    if is_private and version is None:
        return PRIVATE
    return UNVERIFIED


def consensus_version(nodes: Iterable[NodeRecord]) -> str | None:
    """Most common version among public nodes that report one.

    Ties go to the version seen first.  ``None`` when no public node
    reports a version.
    """
    counts: Counter[str] = Counter()
    for node in nodes:
        if node.node_type != "public":
            continue
        version = normalize_version(node.version)
        if version is not None:
            counts[version] += 1
    if not counts:
        return None
    return counts.most_common(1)[0][0]
