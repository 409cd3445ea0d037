"""
Format parser: raw screenplay bytes plus a declared format in, an ordered
list of scene blocks out.

The parser is pure. It performs no I/O beyond reading the bytes it is given,
keeps no state between calls, and identical input always yields an identical
ParsedScreenplay, so re-parsing is always safe.
"""

import re
import xml.etree.ElementTree as ET
from typing import Any, List, Optional, Tuple

from scenebreak.config import Settings, get_settings
from scenebreak.extraction.pdf_text import extract_pdf_text
from scenebreak.models import DocumentFormat, ParsedScreenplay, SceneBlock
from scenebreak.parsing.headings import UNKNOWN_LOCATION, is_scene_heading, parse_heading
from scenebreak.parsing.normalize import collapse_blank_lines, decode_text, normalize_text
from scenebreak.utils.errors import EmptyDocumentError, MalformedStructureError
from scenebreak.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TITLE = "Untitled Screenplay"
TITLE_SEARCH_LINES = 20
MAX_TITLE_LENGTH = 60

_TITLE_LINE_RE = re.compile(r"^Title:\s*", re.IGNORECASE)

# Final Draft paragraph types
FDX_SCENE_HEADING = "Scene Heading"
FDX_CHARACTER = "Character"
FDX_PARENTHETICAL = "Parenthetical"
FDX_TRANSITION = "Transition"


def is_mostly_uppercase(line: str, ratio: float = 0.8) -> bool:
    """True when at least `ratio` of the letters in a line are upper case."""
    letters = [c for c in line if c.isascii() and c.isalpha()]
    if not letters:
        return False
    upper = sum(1 for c in letters if c.isupper())
    return upper / len(letters) >= ratio


def extract_title(lines: List[str]) -> str:
    """
    Find the screenplay title among the first lines of a document.

    An explicit "Title:" line wins; otherwise the first short, mostly
    upper-case line that is not a scene heading.
    """
    for line in lines[:TITLE_SEARCH_LINES]:
        stripped = line.strip()
        if _TITLE_LINE_RE.match(stripped):
            title = _TITLE_LINE_RE.sub("", stripped).strip()
            if title:
                return title
        if (
            3 < len(stripped) < MAX_TITLE_LENGTH
            and is_mostly_uppercase(stripped)
            and not is_scene_heading(stripped)
        ):
            return stripped
    return DEFAULT_TITLE


class FormatParser:
    """Normalise txt, pdf and fdx screenplays into ordered scene blocks."""

    def __init__(
        self,
        min_scene_chars: Optional[int] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or get_settings()
        self.min_scene_chars = (
            min_scene_chars if min_scene_chars is not None else settings.min_scene_chars
        )

    def parse(self, data: bytes, format_hint: Any) -> ParsedScreenplay:
        """
        Parse a document.

        Args:
            data: Raw document bytes
            format_hint: Declared format (tag, extension, MIME type or DocumentFormat)

        Returns:
            Title, format and ordered scene blocks numbered 1..N

        Raises:
            UnrecognizedFormatError: Unsupported format hint
            EmptyDocumentError: No usable content
            MalformedStructureError: Missing XML structure or no scene headings
        """
        doc_format = DocumentFormat.from_hint(format_hint)
        if not data or not data.strip():
            raise EmptyDocumentError("Document is empty", {"format": doc_format.value})

        if doc_format == DocumentFormat.FINAL_DRAFT:
            return self._parse_fdx(data)
        if doc_format == DocumentFormat.PDF:
            return self.parse_text(extract_pdf_text(data).text, DocumentFormat.PDF)
        return self.parse_text(decode_text(data), DocumentFormat.PLAIN_TEXT)

    def parse_text(
        self,
        text: str,
        doc_format: DocumentFormat = DocumentFormat.PLAIN_TEXT,
    ) -> ParsedScreenplay:
        """Split already-extracted text on scene headings."""
        text = normalize_text(text)
        if not text:
            raise EmptyDocumentError("Document contains no text", {"format": doc_format.value})

        lines = text.split("\n")
        sections: List[Tuple[str, List[str]]] = []
        for line in lines:
            if is_scene_heading(line):
                sections.append((line.strip(), []))
            elif sections:
                sections[-1][1].append(line)
            # lines before the first heading are title page material

        if not sections:
            raise MalformedStructureError(
                "No scene headers detected. Expected headings like 'INT. LOCATION - TIME'",
                {"format": doc_format.value, "text_length": len(text)},
            )

        scenes = self._build_blocks(
            (header, "\n".join(body).strip()) for header, body in sections
        )
        parsed = ParsedScreenplay(title=extract_title(lines), format=doc_format, scenes=scenes)
        logger.info(
            f"Parsed {doc_format.value} screenplay '{parsed.title}' into {parsed.total_scenes} scenes"
        )
        return parsed

    def _parse_fdx(self, data: bytes) -> ParsedScreenplay:
        try:
            root = ET.fromstring(data)
        except ET.ParseError as e:
            raise MalformedStructureError(f"Final Draft XML is not well-formed: {e}")

        if root.tag != "FinalDraft":
            raise MalformedStructureError(
                f"Expected <FinalDraft> root element, found <{root.tag}>",
                {"root": root.tag},
            )

        paragraphs = root.findall("./Content/Paragraph") or root.findall("./Paragraph")
        if not paragraphs:
            raise MalformedStructureError("Final Draft document contains no paragraphs")

        sections: List[Tuple[str, List[str]]] = []
        preamble: List[str] = []
        for para in paragraphs:
            para_type = para.get("Type", "")
            text = _paragraph_text(para)
            if not text:
                continue
            if para_type == FDX_SCENE_HEADING:
                sections.append((text.upper(), []))
                continue
            rendered = _render_paragraph(para_type, text)
            if sections:
                sections[-1][1].append(rendered)
            else:
                preamble.append(rendered)

        if not sections:
            raise MalformedStructureError(
                "No scene headers detected in Final Draft document",
                {"paragraphs": len(paragraphs)},
            )

        scenes = self._build_blocks(
            (header, collapse_blank_lines("\n".join(body)).strip()) for header, body in sections
        )
        title = _fdx_title(root) or extract_title(preamble)
        parsed = ParsedScreenplay(title=title, format=DocumentFormat.FINAL_DRAFT, scenes=scenes)
        logger.info(f"Parsed fdx screenplay '{parsed.title}' into {parsed.total_scenes} scenes")
        return parsed

    def _build_blocks(self, sections) -> List[SceneBlock]:
        blocks = []
        for number, (header, body) in enumerate(sections, start=1):
            auto_skip = len(body.strip()) < self.min_scene_chars
            if auto_skip:
                logger.debug(f"Scene {number} body below {self.min_scene_chars} chars, tagged for skip")
            blocks.append(
                SceneBlock(
                    scene_number=number,
                    header=header,
                    heading=parse_heading(header),
                    text=body,
                    auto_skip=auto_skip,
                )
            )
        return blocks


def _paragraph_text(para: ET.Element) -> str:
    """Concatenate every Text run of a paragraph."""
    return "".join("".join(run.itertext()) for run in para.findall("Text")).strip()


def _render_paragraph(para_type: str, text: str) -> str:
    if para_type in (FDX_CHARACTER, FDX_TRANSITION):
        return text.upper()
    if para_type == FDX_PARENTHETICAL and not text.startswith("("):
        return f"({text})"
    return text


def _fdx_title(root: ET.Element) -> Optional[str]:
    for para in root.findall("./TitlePage/Content/Paragraph"):
        text = _paragraph_text(para)
        if text:
            return text
    return None


def _fdx_paragraphs(data: bytes) -> List[ET.Element]:
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        raise MalformedStructureError(f"Final Draft XML is not well-formed: {e}")
    return root.findall("./Content/Paragraph") or root.findall("./Paragraph")


def count_fdx_headings(data: bytes) -> int:
    """Non-empty Scene Heading paragraphs, i.e. the scenes FormatParser will emit."""
    return sum(
        1
        for para in _fdx_paragraphs(data)
        if para.get("Type", "") == FDX_SCENE_HEADING and _paragraph_text(para)
    )


def render_fdx_text(data: bytes) -> str:
    """
    Flatten a Final Draft document into screenplay-formatted plain text.

    Headings are upper-cased with a blank line either side. Headings are
    typed paragraphs, so count them with `count_fdx_headings` rather than
    by pattern-matching this text.
    """
    out: List[str] = []
    for para in _fdx_paragraphs(data):
        para_type = para.get("Type", "")
        text = _paragraph_text(para)
        if not text:
            continue
        if para_type == FDX_SCENE_HEADING:
            out.append(f"\n{text.upper()}\n")
        else:
            out.append(_render_paragraph(para_type, text))
    return collapse_blank_lines("\n".join(out)).strip()


def review_parse(parsed: ParsedScreenplay) -> List[str]:
    """
    Post-parse quality warnings. Nothing here is fatal.

    Flags headings without INT/EXT or a readable location, suspiciously low
    scene density, and a single scene in what looks like a long document.
    """
    warnings: List[str] = []
    scenes = parsed.scenes
    if not scenes:
        return warnings

    # ~3000 characters per screenplay page
    estimated_pages = sum(len(s.text) for s in scenes) / 3000
    scenes_per_page = len(scenes) / max(estimated_pages, 1)

    if len(scenes) == 1 and estimated_pages > 5:
        warnings.append(
            f"Only 1 scene detected in what appears to be a {round(estimated_pages)}-page screenplay"
        )
    if scenes_per_page < 0.3 and estimated_pages > 10:
        warnings.append(
            f"Scene density unusually low ({scenes_per_page:.2f} scenes/page); "
            "some scenes may not have been detected"
        )

    for scene in scenes:
        if scene.heading.int_ext is None:
            warnings.append(f"Scene {scene.scene_number} heading has no INT/EXT marker")
        if scene.heading.location == UNKNOWN_LOCATION:
            warnings.append(f"Scene {scene.scene_number} heading has no readable location")

    skipped = sum(1 for s in scenes if s.auto_skip)
    if skipped:
        warnings.append(f"{skipped} scene(s) too short to analyse and will be skipped")
    return warnings
