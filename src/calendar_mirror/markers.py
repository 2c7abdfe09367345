"""
Ownership marker embedded in the description of every managed event.

The block is appended at the very end of the description::

    Synced by Calendar Mirror. Do not edit or remove this line.
    [CalendarMirror] key=<namespaceHash>-<contentHash>

Older releases wrote a single line instead, which is still recognised::

    [CalendarMirror] tuple=<configUUID> name=<urlEncodedName> source=<nativeId> occ=<isoInstant>

The marker is the only ownership signal that survives loss of the state
database, so the format must stay byte-exact across releases.
"""

import re
from dataclasses import dataclass
from urllib.parse import quote
from urllib.parse import unquote

from calendar_mirror.models import EventOccurrence

MARKER_TOKEN = "[CalendarMirror]"
BRAND_PHRASE = "Synced by Calendar Mirror."
BRAND_LINE = f"{BRAND_PHRASE} Do not edit or remove this line."

_KEY_RE = re.compile(
    r"^\[CalendarMirror\] key=(?P<namespace>[0-9a-f]{64})-(?P<content>[0-9a-f]{64})[ \t]*$",
    re.MULTILINE,
)
_LEGACY_RE = re.compile(
    r"^\[CalendarMirror\] tuple=(?P<tuple>\S+) name=(?P<name>\S*) "
    r"source=(?P<source>\S+) occ=(?P<occ>\S+)[ \t]*$",
    re.MULTILINE,
)


@dataclass(frozen=True)
class Marker:
    """A parsed marker; exactly one of ``key`` or ``tuple_id`` is set."""

    key: str | None = None
    namespace: str | None = None
    tuple_id: str | None = None
    name: str | None = None
    source: str | None = None
    occ: str | None = None

    @property
    def is_legacy(self) -> bool:
        return self.key is None

    @property
    def legacy_key(self) -> str | None:
        if not self.is_legacy:
            return None
        return f"{self.source}|{self.occ}"


def marker_line(key: str) -> str:
    return f"{MARKER_TOKEN} key={key}"


def legacy_marker_line(tuple_id: str, name: str, source: str, occ: str) -> str:
    return f"{MARKER_TOKEN} tuple={tuple_id} name={quote(name, safe='')} source={source} occ={occ}"


def render_marker(key: str) -> str:
    """Two-line marker block for ``key``."""
    return f"{BRAND_LINE}\n{marker_line(key)}"


def parse_marker(text: str | None) -> Marker | None:
    """Extract the marker from free text; when several are present the last one wins."""
    if not text:
        return None

    best: tuple[int, Marker] | None = None
    for m in _KEY_RE.finditer(text):
        marker = Marker(
            key=f"{m.group('namespace')}-{m.group('content')}",
            namespace=m.group("namespace"),
        )
        best = (m.start(), marker)
    for m in _LEGACY_RE.finditer(text):
        if best is not None and best[0] > m.start():
            continue
        best = (
            m.start(),
            Marker(
                tuple_id=m.group("tuple"),
                name=unquote(m.group("name")),
                source=m.group("source"),
                occ=m.group("occ"),
            ),
        )
    return best[1] if best else None


def find_marker(event: EventOccurrence) -> Marker | None:
    """Marker from the description, falling back to the url field."""
    return parse_marker(event.notes) or parse_marker(event.url)


def has_marker_text(event: EventOccurrence) -> bool:
    """True when the event carries any trace of our marker, parseable or not."""
    for text in (event.notes, event.url):
        if text and (BRAND_PHRASE in text or MARKER_TOKEN in text):
            return True
    return False


def contains_brand(text: str | None) -> bool:
    """Coarse brand-phrase test used only by purge."""
    return bool(text) and BRAND_PHRASE in text


def strip_marker(text: str | None) -> str:
    """Remove marker and brand lines, e.g. from a source description being copied."""
    if not text:
        return ""
    kept = [
        line
        for line in text.split("\n")
        if line.strip() != BRAND_LINE and not _KEY_RE.match(line) and not _LEGACY_RE.match(line)
    ]
    return "\n".join(kept).rstrip("\n")


def ensure_marker(notes: str | None, key: str) -> str:
    """Return ``notes`` with a complete marker block.

    Appends the block when no marker is present. When a marker is present but
    the brand line in front of it is missing, the brand line is inserted and
    the existing key is left alone.
    """
    notes = notes or ""
    if parse_marker(notes) is None:
        if not notes:
            return render_marker(key)
        return f"{notes.rstrip(chr(10))}\n{render_marker(key)}"

    lines = notes.split("\n")
    idx = _last_marker_line_index(lines)
    if idx > 0 and lines[idx - 1].strip() == BRAND_LINE:
        return notes
    lines.insert(idx, BRAND_LINE)
    return "\n".join(lines)


def _last_marker_line_index(lines: list[str]) -> int:
    for idx in range(len(lines) - 1, -1, -1):
        line = lines[idx]
        if _KEY_RE.match(line) or _LEGACY_RE.match(line):
            return idx
    return len(lines)
