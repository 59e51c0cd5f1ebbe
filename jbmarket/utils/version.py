"""Version utilities for plugin versions and IDE build numbers."""

import re
from dataclasses import dataclass
from functools import total_ordering

# Segment used in place of "*" in an upper bound, matching the marketplace's
# "any build of this branch" semantics.
WILDCARD_MAX = 99999999


@total_ordering
class PluginVersion:
    """A marketplace plugin version string with a total ordering.

    Versions are split on dots. Two numeric segments compare as integers;
    if either segment is not purely numeric the two compare as strings, so
    "2.0-beta" < "2.1". A version that is a prefix of another sorts below
    it ("1.0" < "1.0.1").
    """

    def __init__(self, raw: str):
        if not raw or not raw.strip():
            raise ValueError("Plugin version must not be empty")
        self.raw = raw.strip()
        self._key = tuple(_Segment(s) for s in self.raw.split("."))

    @property
    def key(self) -> tuple["_Segment", ...]:
        """Get the comparison key."""
        return self._key

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PluginVersion):
            return NotImplemented
        return self._key == other._key

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, PluginVersion):
            return NotImplemented
        return self._key < other._key

    def __hash__(self) -> int:
        return hash(self._key)

    def __str__(self) -> str:
        return self.raw

    def __repr__(self) -> str:
        return f"PluginVersion({self.raw!r})"


@total_ordering
class _Segment:
    """One dot-separated part of a plugin version."""

    __slots__ = ("text", "number")

    def __init__(self, text: str):
        self.text = text
        self.number = int(text) if text.isascii() and text.isdigit() else None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, _Segment):
            return NotImplemented
        if self.number is not None and other.number is not None:
            return self.number == other.number
        return self.text == other.text

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, _Segment):
            return NotImplemented
        if self.number is not None and other.number is not None:
            return self.number < other.number
        return self.text < other.text

    def __hash__(self) -> int:
        return hash(self.number if self.number is not None else self.text)

    def __repr__(self) -> str:
        return f"_Segment({self.text!r})"


_PRODUCT_PREFIX = re.compile(r"^[A-Z]{2,4}-")


@total_ordering
@dataclass(frozen=True)
class BuildNumber:
    """A dotted-integer IDE build number (e.g. "251.26094.121").

    Shorter build numbers are padded with zeros when compared, so
    "243" == "243.0.0".
    """

    parts: tuple[int, ...]

    @classmethod
    def parse(cls, value: str, wildcard: int = 0) -> "BuildNumber":
        """Parse a build number.

        Args:
            value: Build number string, optionally with a product prefix ("IU-243.1")
            wildcard: Value substituted for "*" segments

        Returns:
            BuildNumber instance

        Raises:
            ValueError: If a segment is not an integer or wildcard
        """
        text = _PRODUCT_PREFIX.sub("", value.strip())
        if not text:
            raise ValueError("Build number must not be empty")

        parts: list[int] = []
        for segment in text.split("."):
            if segment == "*":
                parts.append(wildcard)
            elif segment.isdigit():
                parts.append(int(segment))
            else:
                raise ValueError(f"Invalid build number: {value}")
        return cls(tuple(parts))

    @classmethod
    def lower_bound(cls, value: str) -> "BuildNumber":
        """Parse a since-build value ("*" reads as 0)."""
        return cls.parse(value, wildcard=0)

    @classmethod
    def upper_bound(cls, value: str) -> "BuildNumber":
        """Parse an until-build value ("*" reads as unbounded for that segment)."""
        bound = cls.parse(value, wildcard=WILDCARD_MAX)
        if value.strip().endswith("*"):
            # "243.*" must also admit deeper builds such as 243.99999.1
            bound = cls(bound.parts + (WILDCARD_MAX,) * 4)
        return bound

    def _padded(self, length: int) -> tuple[int, ...]:
        return self.parts + (0,) * (length - len(self.parts))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BuildNumber):
            return NotImplemented
        length = max(len(self.parts), len(other.parts))
        return self._padded(length) == other._padded(length)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, BuildNumber):
            return NotImplemented
        length = max(len(self.parts), len(other.parts))
        return self._padded(length) < other._padded(length)

    def __hash__(self) -> int:
        parts = list(self.parts)
        while parts and parts[-1] == 0:
            parts.pop()
        return hash(tuple(parts))

    def __str__(self) -> str:
        return ".".join(str(p) for p in self.parts)


def in_build_range(build: BuildNumber, since: str | None, until: str | None) -> bool:
    """Check whether a build lies inside a since/until range.

    Args:
        build: IDE build number
        since: Lower bound, or None/empty for unbounded
        until: Upper bound, or None/empty for unbounded

    Returns:
        True if the build is compatible with the range
    """
    if since and since.strip() and build < BuildNumber.lower_bound(since):
        return False
    if until and until.strip() and build > BuildNumber.upper_bound(until):
        return False
    return True


def marketing_line(version: str) -> tuple[int, int] | None:
    """Get the (year, minor) release line of an IDE marketing version.

    Args:
        version: Marketing version such as "2025.1.2"

    Returns:
        (2025, 1), or None if the version is not year-based
    """
    match = re.match(r"^(\d{4})\.(\d+)", version)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))
