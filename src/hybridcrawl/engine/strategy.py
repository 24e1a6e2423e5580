"""
Decide how much JavaScript a fetched page needs.

Pure functions over the static HTML: no scripts means the static result is
final, signs of a client-rendered app mean a full browser re-fetch, anything in
between gets the lightweight inline-script pass.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import List, Tuple

MANY_SCRIPTS_THRESHOLD = 5
MIN_DIV_COUNT = 3

# Word-bounded so "reaction" or "revue" do not register as frameworks
FRAMEWORK_PATTERNS: List[Tuple[str, re.Pattern]] = [
    ("React", re.compile(r"\b(?:react(?:-dom)?|data-reactroot|_react\w*)\b", re.IGNORECASE)),
    ("Vue", re.compile(r"\b(?:vue(?:js)?|data-v-[0-9a-f]+|v-cloak)\b", re.IGNORECASE)),
    ("Angular", re.compile(r"\b(?:angular|ng-app|ng-version)\b", re.IGNORECASE)),
    ("Ember", re.compile(r"\b(?:ember|ember-application)\b", re.IGNORECASE)),
    ("Svelte", re.compile(r"\bsvelte\b", re.IGNORECASE)),
]

UNKNOWN_FRAMEWORK = "Unknown"


class Strategy(Enum):
    STATIC = "static"
    HYBRID = "hybrid"
    DYNAMIC = "dynamic"

    def __str__(self) -> str:
        return self.value.capitalize()


def detect_framework(html: str) -> str:
    """Name of the first client-side framework whose markers appear in ``html``."""
    for name, pattern in FRAMEWORK_PATTERNS:
        if pattern.search(html):
            return name
    return UNKNOWN_FRAMEWORK


def needs_javascript(html: str, script_count: int) -> bool:
    if script_count > MANY_SCRIPTS_THRESHOLD:
        return True
    if detect_framework(html) != UNKNOWN_FRAMEWORK:
        return True
    # A nearly empty shell with scripts is typical of an SPA mount point
    if html.lower().count("<div") < MIN_DIV_COUNT and script_count > 0:
        return True
    return False


def determine_strategy(html: str, script_count: int) -> Strategy:
    if script_count == 0:
        return Strategy.STATIC
    if needs_javascript(html, script_count):
        return Strategy.DYNAMIC
    return Strategy.HYBRID
