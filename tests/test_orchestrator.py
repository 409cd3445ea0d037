"""
Tests for the scene analysis orchestrator.
"""

import asyncio

import pytest

from scenebreak.analysis.ledger import InMemoryLedger
from scenebreak.analysis.orchestrator import SceneAnalysisOrchestrator, SceneEventType
from scenebreak.analysis.schema import NOT_APPLICABLE, parse_analysis_payload
from scenebreak.models import DocumentFormat, ParsedScreenplay, Scene, SceneStatus
from scenebreak.parsing.format_parser import FormatParser
from scenebreak.utils.errors import (
    AnalysisServiceError,
    RetryLimitExceededError,
    SceneStateError,
)
from scenebreak.utils.retry import SceneRetryPolicy

from tests.conftest import analysis_payload

DINER = "Neon hums over empty booths. MARGE wipes the counter.\n\nMARGE\nWe're closed."
LOT = "Rain hammers a lone pickup. Tom stands beside it."
TRUCK = "Tom drives. The wipers fight the storm."


def _scenes(*bodies):
    return [
        Scene(scene_number=number, header=f"INT. ROOM {number} - DAY", raw_text=body)
        for number, body in enumerate(bodies, start=1)
    ]


def _orchestrator(scenes, service, ledger, settings, **kwargs):
    kwargs.setdefault("retry_policy", SceneRetryPolicy(max_attempts=3, auto_retry=True))
    return SceneAnalysisOrchestrator(
        scenes,
        service,
        ledger,
        "caller-1",
        project_id="project-1",
        settings=settings,
        **kwargs,
    )


def _event_types(orchestrator, scene_number=None):
    return [
        event.type
        for event in orchestrator.events
        if scene_number is None or event.scene_number == scene_number
    ]


class SlowFirstCallService:
    """Hangs on the first call, answers immediately afterwards."""

    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.calls = 0

    async def analyze(self, request):
        self.calls += 1
        if self.calls == 1:
            await asyncio.sleep(self.delay)
        return parse_analysis_payload(analysis_payload())


class ConcurrencyProbeService:
    """Records how many analyze() calls overlap."""

    def __init__(self) -> None:
        self.active = 0
        self.max_active = 0
        self.order = []

    async def analyze(self, request):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.order.append(request.scene_number)
        await asyncio.sleep(0.01)
        self.active -= 1
        return parse_analysis_payload(analysis_payload())


class AlwaysAffordableLedger(InMemoryLedger):
    """Reports every caller as solvent but still enforces balances on charge."""

    async def can_afford(self, caller_id, amount=1):
        return True


class TestSkipAndComplete:
    """Test the happy path and short-scene skipping."""

    @pytest.mark.asyncio
    async def test_short_scene_is_skipped_without_call_or_charge(
        self, scripted_service, ledger, settings
    ):
        """Test a scene below the minimum length is skipped and never charged."""
        service = scripted_service([analysis_payload()])
        orchestrator = _orchestrator(_scenes("Hi."), service, ledger, settings)

        result = await orchestrator.run()

        scene = result.scenes[0]
        assert scene.status == SceneStatus.SKIPPED
        assert service.calls == 0
        assert result.charged == 0
        assert await ledger.balance("caller-1") == 10
        assert scene.effective_analysis.shot_list == []
        assert scene.effective_analysis.story_analysis["status"] == NOT_APPLICABLE
        assert _event_types(orchestrator) == [SceneEventType.SKIPPED]

    @pytest.mark.asyncio
    async def test_whitespace_padding_does_not_count_toward_length(
        self, scripted_service, ledger, settings
    ):
        service = scripted_service([analysis_payload()])
        orchestrator = _orchestrator(_scenes("   ok  \n\n"), service, ledger, settings)

        result = await orchestrator.run()

        assert result.skipped == result.scenes

    @pytest.mark.asyncio
    async def test_every_scene_completed_and_charged_once(
        self, scripted_service, ledger, settings
    ):
        service = scripted_service([analysis_payload()])
        orchestrator = _orchestrator(_scenes(DINER, LOT, TRUCK), service, ledger, settings)

        result = await orchestrator.run()

        assert [s.status for s in result.scenes] == [SceneStatus.COMPLETED] * 3
        assert result.charged == 3
        assert await ledger.balance("caller-1") == 7
        assert len(ledger.charges("caller-1")) == 3
        assert [c.reference["scene_number"] for c in ledger.charges("caller-1")] == [1, 2, 3]
        assert all(s.completed_at >= s.started_at for s in result.scenes)
        assert set(result.analyses) == {1, 2, 3}

    @pytest.mark.asyncio
    async def test_request_carries_scene_context(self, scripted_service, ledger, settings):
        service = scripted_service([analysis_payload()])
        orchestrator = _orchestrator(_scenes(DINER, LOT), service, ledger, settings)

        await orchestrator.run()

        request = service.requests[0]
        assert request.scene_number == 1
        assert request.total_scenes == 2
        assert request.scene_text.startswith("INT. ROOM 1 - DAY\n")
        assert "MARGE" in request.characters

    @pytest.mark.asyncio
    async def test_scenes_are_processed_one_at_a_time_in_order(self, ledger, settings):
        service = ConcurrencyProbeService()
        orchestrator = _orchestrator(_scenes(DINER, LOT, TRUCK), service, ledger, settings)

        await orchestrator.run()

        assert service.max_active == 1
        assert service.order == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_all_skipped_project(self, scripted_service, ledger, settings):
        service = scripted_service([analysis_payload()])
        orchestrator = _orchestrator(_scenes("a", "b"), service, ledger, settings)

        result = await orchestrator.run()

        assert result.all_skipped
        assert result.charged == 0
        assert service.calls == 0

    @pytest.mark.asyncio
    async def test_from_screenplay(self, scripted_service, ledger, settings, sample_screenplay_text):
        screenplay = FormatParser(settings=settings).parse(sample_screenplay_text.encode(), "txt")
        service = scripted_service([analysis_payload()])

        orchestrator = SceneAnalysisOrchestrator.from_screenplay(
            screenplay, service, ledger, "caller-1", settings=settings
        )
        result = await orchestrator.run()

        assert len(result.completed) == 3
        assert result.scenes[1].header == "EXT. PARKING LOT - CONTINUOUS"

    def test_scene_numbers_must_be_contiguous(self, scripted_service, ledger, settings):
        scenes = [
            Scene(scene_number=1, header="INT. A - DAY", raw_text=DINER),
            Scene(scene_number=3, header="INT. B - DAY", raw_text=LOT),
        ]

        with pytest.raises(ValueError, match="contiguous"):
            _orchestrator(scenes, scripted_service([]), ledger, settings)

    def test_empty_project(self, scripted_service, ledger, settings):
        orchestrator = _orchestrator([], scripted_service([]), ledger, settings)

        progress = orchestrator.progress()

        assert progress.total_scenes == 0
        assert progress.eta_ms is None


class TestRetries:
    """Test retry accounting and terminal failure."""

    @pytest.mark.asyncio
    async def test_malformed_responses_then_valid(self, scripted_service, ledger, settings):
        """Test two bad payloads followed by a good one complete with one charge."""
        service = scripted_service(
            ["this is not json", '{"story_analysis": {}}', analysis_payload()]
        )
        orchestrator = _orchestrator(_scenes(DINER), service, ledger, settings)

        result = await orchestrator.run()

        scene = result.scenes[0]
        assert scene.status == SceneStatus.COMPLETED
        assert scene.retry_count == 2
        assert service.calls == 3
        assert result.charged == 1
        assert await ledger.balance("caller-1") == 9
        assert _event_types(orchestrator) == [
            SceneEventType.STARTED,
            SceneEventType.RETRYING,
            SceneEventType.RETRYING,
            SceneEventType.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_three_failures_end_in_error_and_loop_continues(
        self, scripted_service, ledger, settings
    ):
        """Test a scene that fails three times ends ERROR uncharged and the next scene runs."""
        failure = AnalysisServiceError("Analysis service returned 503", status_code=503)
        service = scripted_service([failure, failure, failure, analysis_payload()])
        orchestrator = _orchestrator(_scenes(DINER, LOT), service, ledger, settings)

        result = await orchestrator.run()

        first, second = result.scenes
        assert first.status == SceneStatus.ERROR
        assert first.retry_count == 3
        assert "503" in first.error
        assert first.analysis is None
        assert second.status == SceneStatus.COMPLETED
        assert result.charged == 1
        assert [c.reference["scene_number"] for c in ledger.charges()] == [2]

        failed_event = orchestrator.events[3]
        assert failed_event.type == SceneEventType.FAILED
        assert failed_event.metadata["terminal"] is True
        assert failed_event.retry_count == 3

    @pytest.mark.asyncio
    async def test_no_retry_after_limit(self, scripted_service, ledger, settings):
        failure = AnalysisServiceError("down")
        service = scripted_service([failure])
        orchestrator = _orchestrator(_scenes(DINER), service, ledger, settings)
        await orchestrator.run()

        with pytest.raises(RetryLimitExceededError):
            await orchestrator.retry_scene(1)
        assert service.calls == 3

    @pytest.mark.asyncio
    async def test_timeout_counts_as_a_failed_attempt(self, ledger, settings):
        service = SlowFirstCallService(delay=5)
        orchestrator = _orchestrator(_scenes(DINER), service, ledger, settings, timeout=0.05)

        result = await orchestrator.run()

        scene = result.scenes[0]
        assert scene.status == SceneStatus.COMPLETED
        assert scene.retry_count == 1
        assert service.calls == 2
        retry_event = orchestrator.events[1]
        assert retry_event.type == SceneEventType.RETRYING
        assert "timed out" in retry_event.message

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_retryable(self, scripted_service, ledger, settings):
        service = scripted_service([RuntimeError("socket closed"), analysis_payload()])
        orchestrator = _orchestrator(_scenes(DINER), service, ledger, settings)

        result = await orchestrator.run()

        assert result.scenes[0].status == SceneStatus.COMPLETED
        assert result.scenes[0].retry_count == 1

    @pytest.mark.asyncio
    async def test_manual_retry_with_instructions(self, scripted_service, ledger, settings):
        """Test a manual retry of an ERROR scene passes custom instructions through."""
        service = scripted_service([AnalysisServiceError("flaky"), analysis_payload()])
        policy = SceneRetryPolicy(max_attempts=3, auto_retry=False)
        orchestrator = _orchestrator(_scenes(DINER), service, ledger, settings, retry_policy=policy)

        result = await orchestrator.run()
        assert result.scenes[0].status == SceneStatus.ERROR
        assert orchestrator.events[-1].metadata["terminal"] is False

        scene = await orchestrator.retry_scene(1, custom_instructions="Favour close-ups on Marge")

        assert scene.status == SceneStatus.COMPLETED
        assert scene.retry_count == 1
        assert scene.error is None
        assert service.requests[-1].custom_instructions == "Favour close-ups on Marge"
        assert await ledger.balance("caller-1") == 9

    @pytest.mark.asyncio
    async def test_run_leaves_error_scenes_for_manual_retry(
        self, scripted_service, ledger, settings
    ):
        service = scripted_service([AnalysisServiceError("flaky"), analysis_payload()])
        policy = SceneRetryPolicy(max_attempts=3, auto_retry=False)
        orchestrator = _orchestrator(_scenes(DINER), service, ledger, settings, retry_policy=policy)
        await orchestrator.run()

        await orchestrator.run()

        assert orchestrator.get_scene(1).status == SceneStatus.ERROR
        assert service.calls == 1

    @pytest.mark.asyncio
    async def test_retry_requires_error_state(self, scripted_service, ledger, settings):
        orchestrator = _orchestrator(
            _scenes(DINER), scripted_service([analysis_payload()]), ledger, settings
        )
        await orchestrator.run()

        with pytest.raises(SceneStateError):
            await orchestrator.retry_scene(1)
        with pytest.raises(SceneStateError):
            await orchestrator.analyze_scene(1)


class TestBalance:
    """Test consumption and halting."""

    @pytest.mark.asyncio
    async def test_insufficient_balance_halts_and_leaves_scene_pending(
        self, scripted_service, settings
    ):
        """Test running out of balance halts the project before the unaffordable scene."""
        ledger = InMemoryLedger(balances={"caller-1": 1}, unlimited_callers=[])
        service = scripted_service([analysis_payload()])
        orchestrator = _orchestrator(_scenes(DINER, LOT, TRUCK), service, ledger, settings)

        result = await orchestrator.run()

        assert result.halted
        assert "Insufficient balance" in result.halt_reason
        assert [s.status for s in result.scenes] == [
            SceneStatus.COMPLETED,
            SceneStatus.PENDING,
            SceneStatus.PENDING,
        ]
        assert service.calls == 1
        assert orchestrator.events[-1].type == SceneEventType.HALTED
        assert orchestrator.events[-1].scene_number == 2

    @pytest.mark.asyncio
    async def test_resume_after_top_up(self, scripted_service, settings):
        ledger = InMemoryLedger(balances={"caller-1": 1}, unlimited_callers=[])
        service = scripted_service([analysis_payload()])
        orchestrator = _orchestrator(_scenes(DINER, LOT, TRUCK), service, ledger, settings)
        await orchestrator.run()

        await ledger.credit("caller-1", 5, "top-up")
        result = await orchestrator.run()

        assert not result.halted
        assert len(result.completed) == 3
        assert orchestrator.charged == 3
        assert await ledger.balance("caller-1") == 3

    @pytest.mark.asyncio
    async def test_failed_charge_returns_scene_to_pending(self, scripted_service, settings):
        ledger = AlwaysAffordableLedger(balances={"caller-1": 0}, unlimited_callers=[])
        service = scripted_service([analysis_payload()])
        orchestrator = _orchestrator(_scenes(DINER, LOT), service, ledger, settings)

        result = await orchestrator.run()

        scene = result.scenes[0]
        assert result.halted
        assert scene.status == SceneStatus.PENDING
        assert scene.analysis is None
        assert scene.started_at is None
        assert result.charged == 0
        assert service.calls == 1

    @pytest.mark.asyncio
    async def test_unlimited_caller_is_never_debited(self, scripted_service, settings):
        ledger = InMemoryLedger(balances={}, unlimited_callers=["caller-1"])
        service = scripted_service([analysis_payload()])
        orchestrator = _orchestrator(_scenes(DINER, LOT), service, ledger, settings)

        result = await orchestrator.run()

        assert len(result.completed) == 2
        assert await ledger.balance("caller-1") == 0
        assert all(entry.unlimited for entry in ledger.charges("caller-1"))


class TestStyleEventsAndControl:
    """Test visual style enforcement, events, progress and cancellation."""

    @pytest.mark.asyncio
    async def test_visual_style_reaches_every_image_prompt(
        self, scripted_service, ledger, settings
    ):
        service = scripted_service([analysis_payload(image_prompt="Wide shot of a diner")])
        orchestrator = _orchestrator(
            _scenes(DINER), service, ledger, settings, visual_style="1970s film noir"
        )

        result = await orchestrator.run()

        assert service.requests[0].visual_style == "1970s film noir"
        prompts = [shot.image_prompt for shot in result.scenes[0].analysis.shot_list]
        assert prompts
        assert all(p.startswith("1970s film noir. ") for p in prompts)

    @pytest.mark.asyncio
    async def test_progress_counts_completed_and_errored(
        self, scripted_service, ledger, settings
    ):
        failure = AnalysisServiceError("down")
        service = scripted_service([analysis_payload(), failure])
        orchestrator = _orchestrator(_scenes(DINER, LOT, "Hi."), service, ledger, settings)

        result = await orchestrator.run()

        progress = result.progress
        assert progress.completed_count == 1
        assert progress.error_count == 1
        assert progress.skipped_count == 1
        assert progress.progress_percent == pytest.approx(200 / 3)
        assert progress.remaining == 1

    @pytest.mark.asyncio
    async def test_events_reach_sync_and_async_listeners(
        self, scripted_service, ledger, settings
    ):
        seen = []

        async def async_listener(event):
            seen.append(("async", event.type))

        def broken_listener(event):
            raise RuntimeError("listener bug")

        orchestrator = _orchestrator(
            _scenes(DINER), scripted_service([analysis_payload()]), ledger, settings
        )
        orchestrator.add_listener(lambda event: seen.append(("sync", event.type)))
        orchestrator.add_listener(async_listener)
        orchestrator.add_listener(broken_listener)

        result = await orchestrator.run()

        assert result.scenes[0].status == SceneStatus.COMPLETED
        assert ("sync", SceneEventType.COMPLETED) in seen
        assert ("async", SceneEventType.STARTED) in seen

    @pytest.mark.asyncio
    async def test_event_serialisation(self, scripted_service, ledger, settings):
        orchestrator = _orchestrator(
            _scenes(DINER), scripted_service([analysis_payload()]), ledger, settings
        )
        await orchestrator.run()

        data = orchestrator.events[-1].to_dict()

        assert data["type"] == "completed"
        assert data["project_id"] == "project-1"
        assert data["metadata"]["shots"] == 5
        assert data["progress"]["completed_count"] == 1

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_scene(self, scripted_service, ledger, settings):
        orchestrator = _orchestrator(
            _scenes(DINER, LOT, TRUCK), scripted_service([analysis_payload()]), ledger, settings
        )

        def cancel_after_first(event):
            if event.type == SceneEventType.COMPLETED:
                orchestrator.cancel()

        orchestrator.add_listener(cancel_after_first)

        result = await orchestrator.run()

        assert result.cancelled
        assert [s.status for s in result.scenes] == [
            SceneStatus.COMPLETED,
            SceneStatus.PENDING,
            SceneStatus.PENDING,
        ]
        assert orchestrator.events[-1].type == SceneEventType.CANCELLED

    def test_scene_transitions_are_guarded(self):
        scene = _scenes(DINER)[0]

        with pytest.raises(SceneStateError):
            scene.transition(SceneStatus.COMPLETED)

    def test_screenplay_with_no_scenes_is_allowed(self, scripted_service, ledger, settings):
        screenplay = ParsedScreenplay(format=DocumentFormat.PLAIN_TEXT)

        orchestrator = SceneAnalysisOrchestrator.from_screenplay(
            screenplay, scripted_service([]), ledger, "caller-1", settings=settings
        )

        assert orchestrator.scenes == []
