"""
Scene heading (slugline) detection.

Headings are recognised by an optional leading scene number, an interior /
exterior token, separator punctuation and free text. The same predicate is
used by the parser, the validator and the extraction worker's scene estimate
so the three never disagree about what counts as a scene.
"""

import re
from typing import List, Optional

from scenebreak.models import SceneHeading
from scenebreak.utils.logging import get_logger

logger = get_logger(__name__)

MAX_HEADING_LENGTH = 200
UNKNOWN_LOCATION = "UNKNOWN LOCATION"

_INT_EXT_TOKEN = (
    r"INT\.?\s*/\s*EXT\.?|EXT\.?\s*/\s*INT\.?|I\s*/\s*E\.?|INTERIOR|EXTERIOR|INT\.?|EXT\.?"
)

# Transitions and page furniture that may start with similar letters
_NON_HEADING_RE = re.compile(
    r"^(?:FADE|CUT|TITLE|THE END|CONTINUED|DISSOLVE|WIPE|SMASH)\b", re.IGNORECASE
)

# "12 INT. HOUSE - DAY", "INT./EXT. CAR - NIGHT", "EXT: PARK", "I/E TRUCK"
_LEADING_TOKEN_RE = re.compile(
    rf"^(?:\d+[A-Z]?\.?\s+)?(?P<token>{_INT_EXT_TOKEN})(?P<rest>(?:[\s.:,\-–—/]+)\S.*)$",
    re.IGNORECASE,
)

# "WAREHOUSE - INT - DAY"
_LOCATION_FIRST_RE = re.compile(
    r"^(?:\d+\s+)?(?P<location>.+?)\s*[-–—]\s*(?P<token>INT\.?|EXT\.?|INTERIOR|EXTERIOR|I/E)"
    r"\s*(?:[-–—]\s*(?P<time>.+))?$",
    re.IGNORECASE,
)

_TIME_SPLIT_RE = re.compile(r"\s+[-–—]+\s*|\s*[-–—]+\s+")
_TRAILING_NUMBER_RE = re.compile(r"\s+\d+[A-Z]?\.?$")


def is_scene_heading(line: str) -> bool:
    """Return True when a single line is a scene heading."""
    stripped = line.strip()
    if len(stripped) < 3 or len(stripped) > MAX_HEADING_LENGTH:
        return False
    if _NON_HEADING_RE.match(stripped):
        return False
    if _LEADING_TOKEN_RE.match(stripped):
        return True
    return bool(_LOCATION_FIRST_RE.match(stripped))


def find_headings(text: str) -> List[str]:
    """All heading lines in a document, in order."""
    return [line.strip() for line in text.split("\n") if is_scene_heading(line)]


def count_headings(text: str) -> int:
    return len(find_headings(text))


def normalize_int_ext(token: Optional[str]) -> Optional[str]:
    """Map any interior/exterior spelling onto INT, EXT or INT./EXT."""
    if not token:
        return None
    cleaned = re.sub(r"[\s.:,]", "", token.upper())
    if ("INT" in cleaned and "EXT" in cleaned) or cleaned in ("I/E", "IE"):
        return "INT./EXT."
    if cleaned.startswith("INT"):
        return "INT"
    if cleaned.startswith("EXT"):
        return "EXT"
    return None


def parse_heading(line: str) -> SceneHeading:
    """
    Split a heading into interior/exterior, location and time of day.

    Lines that are not recognisable headings still produce a SceneHeading
    with an unknown location so callers never have to special-case them.
    """
    raw = line.strip()

    match = _LEADING_TOKEN_RE.match(raw)
    if match:
        rest = match.group("rest").lstrip(" .:,-–—/")
        rest = _TRAILING_NUMBER_RE.sub("", rest).strip()
        parts = _TIME_SPLIT_RE.split(rest, maxsplit=1)
        location = parts[0].strip(" .-")
        time_of_day = parts[1].strip(" .-") if len(parts) > 1 else ""
        return _build_heading(raw, match.group("token"), location, time_of_day)

    match = _LOCATION_FIRST_RE.match(raw)
    if match:
        return _build_heading(
            raw,
            match.group("token"),
            match.group("location").strip(" .-"),
            (match.group("time") or "").strip(" .-"),
        )

    return SceneHeading(raw=raw)


def _build_heading(raw: str, token: str, location: str, time_of_day: str) -> SceneHeading:
    location = re.sub(r"\s+", " ", location)
    if len(location) < 2:
        logger.warning(f"Heading missing location: '{raw}'")
        location = UNKNOWN_LOCATION
    return SceneHeading(
        raw=raw,
        int_ext=normalize_int_ext(token),
        location=location,
        time_of_day=time_of_day,
    )
