"""
Validation of analysis service responses.

A response is accepted only if it is a JSON object with the four required
sections of the right types and every shot carries the required string
fields. Anything else is an AnalysisSchemaError, which the orchestrator
treats as a retryable failure.
"""

import json
import re
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from scenebreak.models import AnalysisResult
from scenebreak.utils.errors import AnalysisSchemaError

DICT_SECTIONS = ("story_analysis", "producing_logistics", "directing_vision")
SHOT_LIST = "shot_list"
SHOT_FIELDS = ("shot_type", "subject", "visual", "rationale", "image_prompt")

NOT_APPLICABLE = "not_applicable"
SKIP_REASON = "Scene content too short to analyse"

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    match = _CODE_FENCE_RE.match(text)
    return match.group(1) if match else text


def _decode(raw: Union[str, bytes, Dict[str, Any]]) -> Any:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(_strip_code_fence(raw))
    except json.JSONDecodeError as e:
        raise AnalysisSchemaError([f"response is not valid JSON: {e.msg} at position {e.pos}"])


def schema_problems(payload: Any) -> List[str]:
    """Every structural problem in a decoded payload (empty when valid)."""
    if not isinstance(payload, dict):
        return [f"response must be a JSON object, got {type(payload).__name__}"]

    problems = []
    for section in DICT_SECTIONS:
        if section not in payload:
            problems.append(f"missing section '{section}'")
        elif not isinstance(payload[section], dict):
            problems.append(f"section '{section}' must be an object")

    shots = payload.get(SHOT_LIST)
    if SHOT_LIST not in payload:
        problems.append(f"missing section '{SHOT_LIST}'")
    elif not isinstance(shots, list):
        problems.append(f"section '{SHOT_LIST}' must be an array")
    else:
        for index, shot in enumerate(shots):
            if not isinstance(shot, dict):
                problems.append(f"shot {index + 1} must be an object")
                continue
            for field in SHOT_FIELDS:
                if not isinstance(shot.get(field), str):
                    problems.append(f"shot {index + 1} field '{field}' missing or not a string")
    return problems


def parse_analysis_payload(raw: Union[str, bytes, Dict[str, Any]]) -> AnalysisResult:
    """
    Decode and validate an analysis response.

    Accepts a decoded dict, or JSON text optionally wrapped in a Markdown
    code fence.

    Raises:
        AnalysisSchemaError: Not JSON, or not the required shape
    """
    payload = _decode(raw)
    problems = schema_problems(payload)
    if problems:
        raise AnalysisSchemaError(problems)
    try:
        return AnalysisResult.model_validate(payload)
    except ValidationError as e:
        raise AnalysisSchemaError(
            [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        )


def skipped_analysis(reason: str = SKIP_REASON) -> AnalysisResult:
    """Canonical payload for scenes too short to analyse."""
    marker = {"status": NOT_APPLICABLE, "reason": reason}
    return AnalysisResult(
        story_analysis=dict(marker),
        producing_logistics=dict(marker),
        directing_vision=dict(marker),
        shot_list=[],
    )


def apply_visual_style(result: AnalysisResult, visual_style: Optional[str]) -> AnalysisResult:
    """Make sure every shot's image prompt carries the visual style directive."""
    style = (visual_style or "").strip()
    if not style:
        return result

    shots = []
    for shot in result.shot_list:
        if style.lower() in shot.image_prompt.lower():
            shots.append(shot)
        else:
            prompt = f"{style}. {shot.image_prompt}" if shot.image_prompt else style
            shots.append(shot.model_copy(update={"image_prompt": prompt}))
    return result.model_copy(update={"shot_list": shots})

