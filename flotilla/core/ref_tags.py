"""Release tag resolution from source-control refs.

Rules, first match wins:

1. the primary branch                   -> ``latest``
2. ``<feature prefix><suffix>``          -> ``feature-<suffix>``
3. anything else                         -> ``unknown``

Resolution is pure and total: unrecognised refs degrade to ``unknown``
instead of raising.
"""

from __future__ import annotations

import re

from flotilla.models.release import ReleaseTag, TagKind

_HEADS_PREFIX = "refs/heads/"

# Characters outside the OCI tag alphabet are replaced with "-".
_TAG_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


class RefTagResolver:
    """Maps refs to release tags.

    Parameters
    ----------
    primary_branch:
        Branch whose builds are tagged ``latest``.
    feature_prefix:
        Namespace prefix of feature branches (``feature/`` by default).
    """

    LATEST = "latest"
    UNKNOWN = "unknown"

    def __init__(
        self, primary_branch: str = "main", feature_prefix: str = "feature/"
    ) -> None:
        self.primary_branch = primary_branch
        self.feature_prefix = feature_prefix

    def resolve(self, ref: str) -> ReleaseTag:
        """Return the release tag for *ref*.  Never raises."""
        name = (ref or "").strip()
        if name.startswith(_HEADS_PREFIX):
            name = name[len(_HEADS_PREFIX):]

        if name and name == self.primary_branch:
            return ReleaseTag(value=self.LATEST, kind=TagKind.LATEST, ref=ref or "")

        if self.feature_prefix and name.startswith(self.feature_prefix):
            suffix = name[len(self.feature_prefix):]
            if suffix:
                return ReleaseTag(
                    value=f"feature-{_TAG_UNSAFE.sub('-', suffix)}",
                    kind=TagKind.FEATURE,
                    ref=ref,
                )

        return ReleaseTag(value=self.UNKNOWN, kind=TagKind.UNKNOWN, ref=ref or "")


def resolve_tag(
    ref: str, primary_branch: str = "main", feature_prefix: str = "feature/"
) -> str:
    """Functional shortcut returning just the tag string."""
    return RefTagResolver(primary_branch, feature_prefix).resolve(ref).value
