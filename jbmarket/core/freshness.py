"""Freshness window: which IDE release lines are regenerated on a run."""

import logging
from collections.abc import Iterable
from datetime import date

from jbmarket.config.schemas import FreshnessConfig
from jbmarket.marketplace.base import IdeBuild
from jbmarket.utils.version import marketing_line

logger = logging.getLogger(__name__)


class FreshnessPolicy:
    """Decides which IDE builds are inside the freshness window.

    By default a build is fresh when its marketing year is the current year
    or later, or when it belongs to the last minor line of the previous
    year for that IDE (e.g. 2025.3 on any day of 2026). Explicit version
    prefixes replace the computed window.
    """

    def __init__(self, today: date | None = None, prefixes: list[str] | None = None):
        self._today = today or date.today()
        self._prefixes = list(prefixes or [])

    @classmethod
    def from_config(cls, config: FreshnessConfig) -> "FreshnessPolicy":
        today = date.fromisoformat(config.today) if config.today else None
        return cls(today=today, prefixes=config.prefixes)

    @property
    def today(self) -> date:
        return self._today

    def _last_previous_lines(self, builds: Iterable[IdeBuild]) -> dict[str, int]:
        """Highest minor line of the previous year, per IDE."""
        previous_year = self._today.year - 1
        last: dict[str, int] = {}
        for build in builds:
            line = marketing_line(build.version)
            if line is None or line[0] != previous_year:
                continue
            last[build.ide] = max(last.get(build.ide, line[1]), line[1])
        return last

    def select(self, builds: Iterable[IdeBuild]) -> list[IdeBuild]:
        """Keep the builds inside the window, in input order.

        Duplicate (IDE, version) pairs keep their first occurrence.

        Args:
            builds: Builds reported by the release feeds

        Returns:
            Fresh builds
        """
        builds = list(builds)
        last_lines = {} if self._prefixes else self._last_previous_lines(builds)

        fresh: list[IdeBuild] = []
        seen: set[tuple[str, str]] = set()
        for build in builds:
            if (build.ide, build.version) in seen:
                continue
            if self._is_fresh(build, last_lines):
                seen.add((build.ide, build.version))
                fresh.append(build)
            else:
                logger.debug("Ignoring %s %s: too old", build.ide, build.version)
        return fresh

    def _is_fresh(self, build: IdeBuild, last_lines: dict[str, int]) -> bool:
        if self._prefixes:
            return any(build.version.startswith(p) for p in self._prefixes)

        line = marketing_line(build.version)
        if line is None:
            return False
        year, minor = line
        if year >= self._today.year:
            return True
        return year == self._today.year - 1 and last_lines.get(build.ide) == minor
