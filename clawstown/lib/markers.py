"""
Hidden coordination markers.

Stores that cannot carry structured fields (GitHub issues shared by one bot
account) encode identities and signals as HTML comments in bodies:

    <!-- clawstown:claim worker=agent-1 -->

Humans never see them in rendered markdown.
"""

import re

_MARKER_PATTERN = re.compile(r'<!--\s*clawstown:([a-z-]+)((?:\s+[a-z_-]+=[^\s>]*)*)\s*-->')
_PAIR_PATTERN = re.compile(r'([a-z_-]+)=([^\s>]*)')


def render_marker(kind: str, **fields: str) -> str:
    pairs = " ".join(f"{key}={value}" for key, value in fields.items())
    return f"<!-- clawstown:{kind} {pairs} -->" if pairs else f"<!-- clawstown:{kind} -->"


def parse_markers(text: str) -> list[tuple[str, dict[str, str]]]:
    """Return (kind, fields) for every marker in text, in order."""
    markers = []
    for match in _MARKER_PATTERN.finditer(text or ""):
        fields = dict(_PAIR_PATTERN.findall(match.group(2)))
        markers.append((match.group(1), fields))
    return markers


def find_marker(text: str, kind: str) -> dict[str, str] | None:
    """First marker of a kind, or None."""
    for found_kind, fields in parse_markers(text):
        if found_kind == kind:
            return fields
    return None


def strip_markers(text: str) -> str:
    return _MARKER_PATTERN.sub("", text or "").strip()
