"""
Shared fixtures for scenebreak tests.
"""

import os
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from xml.sax.saxutils import escape

import fitz  # PyMuPDF
import pytest

from scenebreak.analysis.ledger import InMemoryLedger
from scenebreak.analysis.schema import parse_analysis_payload
from scenebreak.config import Settings, reset_settings
from scenebreak.models import AnalysisRequest, AnalysisResult
from scenebreak.utils.retry import BackoffPolicy, SceneRetryPolicy

SAMPLE_SCREENPLAY = """THE LAST SHIFT

Written by
Jane Writer


INT. DINER - NIGHT

Neon hums over empty booths. MARGE (50s) wipes the counter.

MARGE
(tired)
We're closed.

TOM (30s) lingers in the doorway, soaked.

TOM
Just coffee. Please.

EXT. PARKING LOT - CONTINUOUS

Rain hammers a lone pickup. Tom stands beside it, watching the diner.

INT./EXT. PICKUP TRUCK - MOVING - LATER

Tom drives. The wipers fight the storm. He glances at a photo on the dash.

TOM (V.O.)
She always left the light on.
"""


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    """Keep environment variables from leaking into Settings()."""
    for key in list(os.environ):
        if key.startswith("SCENEBREAK_") or key == "OPENAI_API_KEY":
            monkeypatch.delenv(key, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def sample_screenplay_text() -> str:
    return SAMPLE_SCREENPLAY


def build_fdx(
    paragraphs: Sequence[Tuple[str, Union[str, List[str]]]],
    title: Optional[str] = None,
    wrap_content: bool = True,
) -> bytes:
    """Build a Final Draft document from (type, text) pairs; a list text means several runs."""
    body = []
    for para_type, text in paragraphs:
        runs = text if isinstance(text, list) else [text]
        rendered = "".join(f"<Text>{escape(run)}</Text>" for run in runs)
        body.append(f'<Paragraph Type="{para_type}">{rendered}</Paragraph>')
    paragraphs_xml = "\n".join(body)
    if wrap_content:
        paragraphs_xml = f"<Content>\n{paragraphs_xml}\n</Content>"
    title_xml = ""
    if title:
        title_xml = (
            "<TitlePage><Content>"
            f'<Paragraph Type="Title"><Text>{escape(title)}</Text></Paragraph>'
            "</Content></TitlePage>"
        )
    return (
        '<?xml version="1.0" encoding="UTF-8" standalone="no" ?>\n'
        f'<FinalDraft DocumentType="Script" Template="No" Version="1">\n'
        f"{paragraphs_xml}\n{title_xml}\n</FinalDraft>"
    ).encode("utf-8")


@pytest.fixture
def fdx_builder():
    return build_fdx


def make_pdf(text: str, lines_per_page: int = 45) -> bytes:
    """Render text onto PDF pages in memory."""
    doc = fitz.open()
    lines = text.split("\n")
    for start in range(0, max(len(lines), 1), lines_per_page):
        page = doc.new_page()
        page.insert_text((72, 72), "\n".join(lines[start:start + lines_per_page]), fontsize=10)
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def pdf_builder():
    return make_pdf


def analysis_payload(shots: int = 5, image_prompt: str = "Wide shot of a diner at night") -> Dict[str, Any]:
    return {
        "story_analysis": {"the_core": "Marge lets Tom in", "stakes": "Loneliness"},
        "producing_logistics": {
            "cast": {"principal": ["MARGE", "TOM"]},
            "scene_complexity": {"rating": 2, "justification": "Single interior"},
        },
        "directing_vision": {"tone": "Melancholy", "actor_objectives": {"TOM": "to be let in"}},
        "shot_list": [
            {
                "shot_type": "WIDE",
                "subject": f"Diner interior {i + 1}",
                "visual": "Neon light over empty booths",
                "rationale": "Establish isolation",
                "image_prompt": image_prompt,
            }
            for i in range(shots)
        ],
    }


@pytest.fixture
def valid_payload() -> Dict[str, Any]:
    return analysis_payload()


class ScriptedAnalysisService:
    """
    Fake analysis service that plays back a script of responses.

    Each entry is a dict (valid JSON object), a str (raw response text,
    parsed like a real service would) or an exception to raise. When the
    script runs out the last entry repeats.
    """

    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.requests: List[AnalysisRequest] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    def calls_for(self, scene_number: int) -> int:
        return sum(1 for r in self.requests if r.scene_number == scene_number)

    async def analyze(self, request: AnalysisRequest) -> AnalysisResult:
        self.requests.append(request)
        index = min(len(self.requests) - 1, len(self.responses) - 1)
        response = self.responses[index]
        if isinstance(response, BaseException):
            raise response
        return parse_analysis_payload(response)


@pytest.fixture
def scripted_service():
    return ScriptedAnalysisService


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger(balances={"caller-1": 10}, unlimited_callers=[])


@pytest.fixture
def fast_scene_policy() -> SceneRetryPolicy:
    return SceneRetryPolicy(max_attempts=3, auto_retry=True, wait_seconds=0.0)


@pytest.fixture
def fast_backoff() -> BackoffPolicy:
    return BackoffPolicy(max_attempts=3, base_ms=0, factor=2.0)
