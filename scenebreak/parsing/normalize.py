"""
Text decoding and whitespace normalisation shared by every format.
"""

import re

_EXCESS_NEWLINES_RE = re.compile(r"\n{5,}")
_EXCESS_BLANK_LINES_RE = re.compile(r"\n{4,}")


def decode_text(data: bytes) -> str:
    """Decode document bytes as UTF-8 (BOM tolerated), falling back to Latin-1."""
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def normalize_text(text: str) -> str:
    """
    Normalise line endings and whitespace.

    CRLF and CR become LF, tabs become four spaces, trailing whitespace is
    stripped from each line and runs of five or more newlines shrink to three.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\t", "    ")
    text = "\n".join(line.rstrip() for line in text.split("\n"))
    return _EXCESS_NEWLINES_RE.sub("\n\n\n", text).strip()


def collapse_blank_lines(text: str) -> str:
    """At most two consecutive blank lines."""
    return _EXCESS_BLANK_LINES_RE.sub("\n\n\n", text)
