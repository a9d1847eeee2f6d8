"""Image tag generation from source digests.

Tag format: ``kudev-{8 hex}`` optionally followed by ``-{YYYYMMDD}-{HHMMSS}``
(UTC). Tags without a timestamp are reproducible for identical source trees.
"""

import re
from datetime import datetime, timezone
from typing import Optional

from .hashing import HashCalculator

TAG_PREFIX = "kudev-"
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"

_TAG_PATTERN = re.compile(r"^kudev-(?P<digest>[0-9a-f]{8})(?P<timestamp>-\d{8}-\d{6})?$")


def tag_for_digest(
    digest: str, with_timestamp: bool = False, now: Optional[datetime] = None
) -> str:
    """
    Format a digest as an image tag.

    Args:
        digest: 8-character source digest
        with_timestamp: Append a UTC timestamp suffix
        now: Time to use for the suffix (defaults to the current time)

    Returns:
        Image tag
    """
    tag = f"{TAG_PREFIX}{digest}"
    if with_timestamp:
        moment = now or datetime.now(timezone.utc)
        if moment.tzinfo is not None:
            moment = moment.astimezone(timezone.utc)
        tag = f"{tag}-{moment.strftime(TIMESTAMP_FORMAT)}"
    return tag


def is_kudev_tag(tag: str) -> bool:
    """Check if a tag was generated by kudev."""
    return bool(tag) and _TAG_PATTERN.match(tag) is not None


def parse_tag(tag: str) -> tuple[str, bool]:
    """
    Extract the digest from a kudev tag.

    Args:
        tag: Image tag

    Returns:
        Tuple of (digest, has_timestamp); ("", False) for non-kudev tags
    """
    match = _TAG_PATTERN.match(tag or "")
    if match is None:
        return "", False
    return match.group("digest"), match.group("timestamp") is not None


def compare_hashes(tag_a: str, tag_b: str) -> bool:
    """
    Check whether two tags were built from the same source digest.

    Timestamp suffixes are ignored. Returns False if either tag is not a
    kudev tag.
    """
    digest_a, _ = parse_tag(tag_a)
    digest_b, _ = parse_tag(tag_b)
    return bool(digest_a) and digest_a == digest_b


class Tagger:
    """Generates image tags for a source tree."""

    def __init__(self, calculator: HashCalculator):
        """
        Initialize tagger.

        Args:
            calculator: Hash calculator for the source tree
        """
        self.calculator = calculator
        self._hash: Optional[str] = None

    def generate_tag(self, with_timestamp: bool = False) -> str:
        """
        Generate a tag for the current source tree.

        The digest is computed once per Tagger; create a new Tagger to pick up
        later source changes.

        Args:
            with_timestamp: Append a UTC timestamp suffix

        Returns:
            Image tag

        Raises:
            HashError: If the digest cannot be computed
        """
        return tag_for_digest(self.get_hash(), with_timestamp=with_timestamp)

    def get_hash(self) -> str:
        """Return the source digest, computing it on first use."""
        if self._hash is None:
            self._hash = self.calculator.calculate()
        return self._hash
