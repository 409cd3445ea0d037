"""
Request shaping for the analysis service.

The shot-count policy is not enforced locally; the orchestrator only passes
the signals (complexity, target shot range, characters) the service needs to
apply it.
"""

import re
from typing import List, Optional, Tuple

from scenebreak.models import AnalysisRequest, SceneComplexity

SIMPLE_SHOT_RANGE: Tuple[int, int] = (5, 8)
COMPLEX_SHOT_RANGE: Tuple[int, int] = (8, 15)

# Scenes longer than this read as more than a page of dialogue or action
COMPLEX_SCENE_CHARS = 1500
COMPLEX_SPEAKER_COUNT = 3

_DIALOGUE_CUE_RE = re.compile(r"^[ \t]*([A-Z][A-Z .'\-]+?)(?:\s*\((?:CONT'D|V\.O\.|O\.S\.|O\.C\.)\))?[ \t]*$", re.MULTILINE)
_ACTION_CHARACTER_RE = re.compile(
    r"\b([A-Z][a-z]{2,})\s+(?:stands?|watches?|eyes|looks?|pushes?|pulls?|walks?|sits?|"
    r"moves?|turns?|enters?|exits?|leaves?|waits?|unlocks?)\b"
)
_ACTION_BEATS_RE = re.compile(
    r"\b(?:fight|fights|punch|punches|chase|chases|explodes?|explosion|crash|crashes|"
    r"gunfire|shoots?|runs?|sprints?|struggle|stunt)\b",
    re.IGNORECASE,
)
_NOT_CHARACTERS = {"Camera", "Shot", "Scene", "Something", "Behind", "Wind"}
_CUE_STOPWORDS = {"CONTINUED", "CUT TO", "FADE IN", "FADE OUT", "THE END", "MORE"}


SCENE_ANALYSIS_SYSTEM_PROMPT = """You are a film production team in one: story analyst, first assistant director, director and director of photography.

Break the scene down into four sections:
1. **story_analysis**: the core of the scene, the turn, the stakes, subtext
2. **producing_logistics**: cast (principal, speaking, silent), locations, key props, wardrobe, special requirements, a 1-5 complexity rating with justification
3. **directing_vision**: actor objectives as actable verbs, tone and mood, visual approach
4. **shot_list**: story-driven coverage; every shot earns its place

Every shot carries shot_type, subject, visual, rationale and image_prompt (a self-contained prompt for an image generator).

Return ONLY a JSON object with exactly those four top-level keys. No markdown."""


def extract_characters(scene_text: str) -> List[str]:
    """
    Names of speaking characters (upper-case cues) and named actors in
    action lines, in order of first appearance.
    """
    names: List[str] = []
    for match in _DIALOGUE_CUE_RE.finditer(scene_text):
        name = match.group(1).strip()
        if len(name) < 2 or name in _CUE_STOPWORDS or name.startswith(("INT", "EXT")):
            continue
        if name not in names:
            names.append(name)
    for match in _ACTION_CHARACTER_RE.finditer(scene_text):
        name = match.group(1)
        if name in _NOT_CHARACTERS or name.upper() in names or name in names:
            continue
        names.append(name)
    return names


def classify_complexity(scene_text: str, characters: Optional[List[str]] = None) -> SceneComplexity:
    """Dialogue-heavy, action-heavy or long scenes are complex."""
    if characters is None:
        characters = extract_characters(scene_text)
    speakers = [c for c in characters if c.isupper()]
    if (
        len(scene_text) > COMPLEX_SCENE_CHARS
        or len(speakers) >= COMPLEX_SPEAKER_COUNT
        or _ACTION_BEATS_RE.search(scene_text)
    ):
        return SceneComplexity.COMPLEX
    return SceneComplexity.SIMPLE


def shot_range_for(complexity: SceneComplexity) -> Tuple[int, int]:
    return COMPLEX_SHOT_RANGE if complexity == SceneComplexity.COMPLEX else SIMPLE_SHOT_RANGE


def build_request(
    scene_text: str,
    scene_number: int,
    total_scenes: int,
    visual_style: Optional[str] = None,
    custom_instructions: Optional[str] = None,
) -> AnalysisRequest:
    characters = extract_characters(scene_text)
    complexity = classify_complexity(scene_text, characters)
    return AnalysisRequest(
        scene_text=scene_text,
        scene_number=scene_number,
        total_scenes=total_scenes,
        visual_style=visual_style or None,
        custom_instructions=custom_instructions or None,
        characters=characters,
        scene_complexity=complexity,
        target_shot_range=shot_range_for(complexity),
    )


def build_user_prompt(request: AnalysisRequest) -> str:
    """User message for a direct LLM call."""
    low, high = request.target_shot_range
    parts = [
        f"Analyze scene {request.scene_number} of {request.total_scenes}:",
        f"<scene>\n{request.scene_text}\n</scene>",
        f"<characters>\n{', '.join(request.characters) or 'None identified'}\n</characters>",
        f"This is a {request.scene_complexity.value} scene: plan {low}-{high} shots.",
    ]
    if request.visual_style:
        parts.append(
            f"<visual_style>\n{request.visual_style}\n</visual_style>\n"
            "Every image_prompt MUST include this visual style."
        )
    if request.custom_instructions:
        parts.append(f"<director_notes>\n{request.custom_instructions}\n</director_notes>")
    return "\n\n".join(parts)
