"""
Scene analysis orchestrator.

Walks a project's scenes, in scene-number order and one at a time, through

    PENDING -> ANALYZING -> COMPLETED | ERROR
    PENDING -> SKIPPED
    ERROR   -> ANALYZING   (retry, while attempts remain)

against the external analysis service. A scene whose body is too short is
skipped without a service call or a charge. Before each call the caller's
balance is checked; an unaffordable scene halts the project and stays
PENDING. Failed attempts (timeout, transport error, bad payload) count
toward the scene's retry ceiling; a scene that exhausts it ends ERROR and
the loop moves on. Each completed scene is charged exactly one unit.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from uuid import uuid4

from scenebreak.analysis.ledger import ConsumptionLedger
from scenebreak.analysis.prompts import build_request
from scenebreak.analysis.schema import apply_visual_style
from scenebreak.analysis.service import AnalysisService
from scenebreak.config import Settings, get_settings
from scenebreak.models import (
    AnalysisRequest,
    AnalysisResult,
    ParsedScreenplay,
    ProjectProgress,
    Scene,
    SceneStatus,
    utcnow,
)
from scenebreak.progress import ProgressTracker
from scenebreak.utils.errors import (
    AnalysisFailure,
    AnalysisServiceError,
    AnalysisTimeoutError,
    InsufficientBalanceError,
    RetryLimitExceededError,
    ScenebreakError,
    SceneStateError,
)
from scenebreak.utils.logging import LogContext, get_logger
from scenebreak.utils.retry import SceneRetryPolicy, compact_error

logger = get_logger(__name__)


class SceneEventType(Enum):
    """Events emitted while a project is processed."""

    STARTED = "started"  # scene moved to ANALYZING
    SKIPPED = "skipped"
    RETRYING = "retrying"  # attempt failed, another follows
    COMPLETED = "completed"
    FAILED = "failed"  # scene reached ERROR
    HALTED = "halted"  # insufficient balance
    CANCELLED = "cancelled"


@dataclass
class SceneEvent:
    """One orchestrator event."""

    type: SceneEventType
    project_id: str
    scene_number: Optional[int]
    message: str
    retry_count: int = 0
    progress: Optional[ProjectProgress] = None
    timestamp: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "project_id": self.project_id,
            "scene_number": self.scene_number,
            "message": self.message,
            "retry_count": self.retry_count,
            "progress": self.progress.model_dump() if self.progress else None,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }


EventListener = Callable[[SceneEvent], Union[None, Awaitable[None]]]


@dataclass
class ProjectRunResult:
    """Outcome of one pass over a project."""

    project_id: str
    scenes: List[Scene]
    progress: ProjectProgress
    charged: int = 0
    halted: bool = False
    halt_reason: Optional[str] = None
    cancelled: bool = False
    all_skipped: bool = False

    def _with_status(self, status: SceneStatus) -> List[Scene]:
        return [scene for scene in self.scenes if scene.status == status]

    @property
    def completed(self) -> List[Scene]:
        return self._with_status(SceneStatus.COMPLETED)

    @property
    def failed(self) -> List[Scene]:
        return self._with_status(SceneStatus.ERROR)

    @property
    def skipped(self) -> List[Scene]:
        return self._with_status(SceneStatus.SKIPPED)

    @property
    def analyses(self) -> Dict[int, AnalysisResult]:
        """Final analysis set keyed by scene number, skipped scenes included."""
        return {
            scene.scene_number: scene.effective_analysis
            for scene in self.scenes
            if scene.status in (SceneStatus.COMPLETED, SceneStatus.SKIPPED)
        }


class SceneAnalysisOrchestrator:
    """Sequential per-project driver of the scene state machine."""

    def __init__(
        self,
        scenes: List[Scene],
        service: AnalysisService,
        ledger: ConsumptionLedger,
        caller_id: str,
        project_id: Optional[str] = None,
        visual_style: Optional[str] = None,
        retry_policy: Optional[SceneRetryPolicy] = None,
        timeout: Optional[float] = None,
        tracker: Optional[ProgressTracker] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        """
        Initialize the orchestrator for one project.

        Args:
            scenes: Scenes numbered contiguously from 1
            service: External analysis service client
            ledger: Consumption balance collaborator
            caller_id: Account charged for completed scenes
            project_id: Identifier used in events and logs
            visual_style: Style directive propagated into every image prompt
            retry_policy: Attempt ceiling and pacing
            timeout: Per-call timeout in seconds
            tracker: Progress derivation
            settings: Settings override
        """
        settings = settings or get_settings()
        ordered = sorted(scenes, key=lambda scene: scene.scene_number)
        expected = list(range(1, len(ordered) + 1))
        if [scene.scene_number for scene in ordered] != expected:
            raise ValueError("scene numbers must be contiguous and start at 1")

        self.scenes = ordered
        self.service = service
        self.ledger = ledger
        self.caller_id = caller_id
        self.project_id = project_id or str(uuid4())
        self.visual_style = visual_style
        self.retry_policy = retry_policy or SceneRetryPolicy.from_settings(settings)
        self.timeout = timeout or settings.analysis_timeout_seconds
        self.tracker = tracker or ProgressTracker(settings=settings)
        self.min_scene_chars = settings.min_scene_chars

        self.events: List[SceneEvent] = []
        self.charged = 0
        self._listeners: List[EventListener] = []
        self._cancel_requested = False
        self._lock = asyncio.Lock()

    @classmethod
    def from_screenplay(
        cls,
        screenplay: ParsedScreenplay,
        service: AnalysisService,
        ledger: ConsumptionLedger,
        caller_id: str,
        **kwargs: Any,
    ) -> "SceneAnalysisOrchestrator":
        scenes = [Scene.from_block(block) for block in screenplay.scenes]
        return cls(scenes, service, ledger, caller_id, **kwargs)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def cancel(self) -> None:
        """Stop before the next scene starts. An in-flight call is not aborted."""
        self._cancel_requested = True
        logger.info(f"Cancellation requested for project {self.project_id}")

    def progress(self) -> ProjectProgress:
        return self.tracker.snapshot(self.scenes)

    def get_scene(self, scene_number: int) -> Scene:
        if not 1 <= scene_number <= len(self.scenes):
            raise KeyError(f"Scene {scene_number} does not exist in project {self.project_id}")
        return self.scenes[scene_number - 1]

    async def run(self, custom_instructions: Optional[str] = None) -> ProjectRunResult:
        """
        Process every PENDING scene in order.

        Scenes already terminal (or in ERROR awaiting a manual retry) are left
        alone, so calling run() again after a halt resumes where it stopped.
        """
        halted = False
        halt_reason = None
        cancelled = False

        with LogContext(project_id=self.project_id, caller_id=self.caller_id):
            logger.info(f"Processing project {self.project_id}: {len(self.scenes)} scenes")
            for scene in self.scenes:
                if scene.status != SceneStatus.PENDING:
                    continue
                if self._cancel_requested:
                    cancelled = True
                    await self._emit(
                        SceneEventType.CANCELLED, scene, f"Cancelled before scene {scene.scene_number}"
                    )
                    break
                try:
                    async with self._lock:
                        await self._process(scene, custom_instructions)
                except InsufficientBalanceError as e:
                    halted = True
                    halt_reason = e.message
                    await self._emit(
                        SceneEventType.HALTED,
                        scene,
                        f"Insufficient balance: processing halted at scene {scene.scene_number}",
                        balance=e.balance,
                    )
                    logger.warning(f"Project {self.project_id} halted: {e.message}")
                    break

            result = ProjectRunResult(
                project_id=self.project_id,
                scenes=self.scenes,
                progress=self.progress(),
                charged=self.charged,
                halted=halted,
                halt_reason=halt_reason,
                cancelled=cancelled,
                all_skipped=bool(self.scenes)
                and all(scene.status == SceneStatus.SKIPPED for scene in self.scenes),
            )
            if result.all_skipped:
                logger.warning(
                    f"Every scene in project {self.project_id} was too short to analyse; nothing charged"
                )
            logger.info(
                f"Project {self.project_id} pass finished: {len(result.completed)} completed, "
                f"{len(result.failed)} failed, {len(result.skipped)} skipped, {self.charged} charged"
            )
        return result

    async def analyze_scene(
        self, scene_number: int, custom_instructions: Optional[str] = None
    ) -> Scene:
        """Process one PENDING scene. Raises InsufficientBalanceError on halt."""
        scene = self.get_scene(scene_number)
        if scene.status != SceneStatus.PENDING:
            raise SceneStateError(scene_number, scene.status.value, SceneStatus.ANALYZING.value)
        with LogContext(project_id=self.project_id, caller_id=self.caller_id):
            async with self._lock:
                return await self._process(scene, custom_instructions)

    async def retry_scene(
        self, scene_number: int, custom_instructions: Optional[str] = None
    ) -> Scene:
        """
        Manually retry an ERROR scene, optionally steering it with instructions.

        Raises:
            RetryLimitExceededError: If the scene has used every attempt
            SceneStateError: If the scene is not in ERROR
            InsufficientBalanceError: If the caller cannot pay for the scene
        """
        scene = self.get_scene(scene_number)
        if scene.retry_count >= self.retry_policy.max_attempts:
            raise RetryLimitExceededError(scene_number, scene.retry_count)
        if scene.status != SceneStatus.ERROR:
            raise SceneStateError(scene_number, scene.status.value, SceneStatus.ANALYZING.value)

        logger.info(f"Manual retry of scene {scene_number} (attempt {scene.retry_count + 1})")
        with LogContext(project_id=self.project_id, caller_id=self.caller_id):
            async with self._lock:
                return await self._process(scene, custom_instructions)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _process(self, scene: Scene, custom_instructions: Optional[str]) -> Scene:
        with LogContext(scene_number=scene.scene_number):
            too_short = len(scene.raw_text.strip()) < self.min_scene_chars
            if scene.status == SceneStatus.PENDING and too_short:
                scene.transition(SceneStatus.SKIPPED)
                scene.analysis = None
                logger.info(
                    f"Scene {scene.scene_number} skipped: content below {self.min_scene_chars} chars"
                )
                await self._emit(SceneEventType.SKIPPED, scene, "Scene too short to analyse")
                return scene

            if self.retry_policy.remaining(scene.retry_count) == 0:
                raise RetryLimitExceededError(scene.scene_number, scene.retry_count)

            if not await self.ledger.can_afford(self.caller_id, 1):
                balance = await self.ledger.balance(self.caller_id)
                raise InsufficientBalanceError(self.caller_id, balance, 1)

            scene.transition(SceneStatus.ANALYZING)
            scene.started_at = utcnow()
            scene.completed_at = None
            scene.error = None
            logger.info(f"Scene {scene.scene_number} analyzing")
            await self._emit(SceneEventType.STARTED, scene, f"Analyzing scene {scene.scene_number}")

            request = build_request(
                scene.full_text,
                scene.scene_number,
                len(self.scenes),
                visual_style=self.visual_style,
                custom_instructions=custom_instructions,
            )

            try:
                analysis = await self._attempt_with_retries(scene, request)
            except AnalysisFailure as e:
                scene.transition(SceneStatus.ERROR)
                scene.error = compact_error(e)
                scene.analysis = None
                terminal = scene.retry_count >= self.retry_policy.max_attempts
                logger.error(
                    f"Scene {scene.scene_number} failed after {scene.retry_count} attempt(s)"
                    f"{' (terminal)' if terminal else ''}: {scene.error}"
                )
                await self._emit(
                    SceneEventType.FAILED,
                    scene,
                    scene.error,
                    terminal=terminal,
                )
                return scene

            analysis = apply_visual_style(analysis, self.visual_style)
            try:
                await self.ledger.charge(
                    self.caller_id,
                    1,
                    reference={"project_id": self.project_id, "scene_number": scene.scene_number},
                )
            except InsufficientBalanceError:
                scene.transition(SceneStatus.PENDING)
                scene.started_at = None
                logger.warning(
                    f"Scene {scene.scene_number} analysed but could not be charged; left pending"
                )
                raise

            scene.analysis = analysis
            scene.completed_at = utcnow()
            scene.transition(SceneStatus.COMPLETED)
            self.charged += 1
            logger.info(
                f"Scene {scene.scene_number} completed with {len(analysis.shot_list)} shots "
                f"after {scene.retry_count + 1} attempt(s)"
            )
            await self._emit(
                SceneEventType.COMPLETED,
                scene,
                f"Scene {scene.scene_number} completed",
                shots=len(analysis.shot_list),
            )
            return scene

    async def _attempt_with_retries(self, scene: Scene, request: AnalysisRequest) -> AnalysisResult:
        """Call the service until success or the pass runs out of attempts."""
        attempts_this_pass = self.retry_policy.attempts_per_run(scene.retry_count)
        async for attempt in self.retry_policy.retrying(scene.retry_count):
            with attempt:
                try:
                    return await self._call_service(scene, request)
                except AnalysisFailure as e:
                    scene.retry_count += 1
                    scene.error = compact_error(e)
                    if attempt.retry_state.attempt_number < attempts_this_pass:
                        await self._emit(
                            SceneEventType.RETRYING,
                            scene,
                            f"Attempt {scene.retry_count} failed: {scene.error}",
                        )
                    raise
        raise AnalysisServiceError("No analysis attempt was made")

    async def _call_service(self, scene: Scene, request: AnalysisRequest) -> AnalysisResult:
        try:
            return await asyncio.wait_for(self.service.analyze(request), self.timeout)
        except asyncio.TimeoutError:
            raise AnalysisTimeoutError(scene.scene_number, self.timeout)
        except ScenebreakError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error from analysis service for scene {scene.scene_number}")
            raise AnalysisServiceError(f"Unexpected analysis error: {compact_error(e)}") from e

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _emit(
        self,
        event_type: SceneEventType,
        scene: Optional[Scene],
        message: str,
        **metadata: Any,
    ) -> None:
        event = SceneEvent(
            type=event_type,
            project_id=self.project_id,
            scene_number=scene.scene_number if scene else None,
            message=message,
            retry_count=scene.retry_count if scene else 0,
            progress=self.progress(),
            metadata=metadata,
        )
        self.events.append(event)
        for listener in self._listeners:
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Event listener failed on {event_type.value}: {e}")
