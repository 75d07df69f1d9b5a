"""
Compiler diagnostic parsing.

The worker reports a missing package as part of its error text, e.g.

    file not found (searched for @preview/example:0.1.0)

This phrasing is a contract with the compiler running inside the worker and
is not guaranteed to be stable across compiler releases. Bump
MISSING_PACKAGE_PATTERN_VERSION whenever the pattern changes so the tests
pinned to it fail loudly.
"""

from __future__ import annotations

import re

MISSING_PACKAGE_PATTERN_VERSION = 1

MISSING_PACKAGE_PATTERN = re.compile(r"searched for ([\w@/:.\-]+)")


def find_missing_packages(diagnostic: str) -> list[str]:
    """
    Return every distinct spec named by a missing-package marker, in order of first appearance.

    Trailing punctuation that the pattern can swallow (a sentence-ending
    period) is stripped. Specs are returned as written; normalization is the
    package cache's job.
    """
    found: list[str] = []
    for match in MISSING_PACKAGE_PATTERN.finditer(diagnostic or ""):
        spec = match.group(1).rstrip(".:/")
        if spec and spec not in found:
            found.append(spec)
    return found
