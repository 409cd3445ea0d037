"""
Project progress and ETA.

Everything here is derived on demand from the current scene collection;
nothing is stored. progress_percent counts completed and errored scenes as
done, remaining is everything else, and the ETA multiplies remaining by the
average duration of completed scenes (or a fixed default before any scene
has completed).
"""

from typing import Iterable, List, Optional

from scenebreak.config import Settings, get_settings
from scenebreak.models import ProjectProgress, Scene, SceneStatus


def average_scene_time_ms(
    scenes: Iterable[Scene],
    default_ms: float,
    window: Optional[int] = None,
) -> float:
    """
    Rolling average of completed_at - started_at over completed scenes.

    Args:
        scenes: Scene collection
        default_ms: Value used when no scene has a measurable duration
        window: Only average the most recently completed N scenes
    """
    timed = sorted(
        (
            scene
            for scene in scenes
            if scene.status == SceneStatus.COMPLETED and scene.duration_ms is not None
        ),
        key=lambda scene: scene.completed_at,
    )
    if window is not None and window > 0:
        timed = timed[-window:]
    if not timed:
        return float(default_ms)
    return sum(max(scene.duration_ms, 0.0) for scene in timed) / len(timed)


def compute_progress(
    scenes: Iterable[Scene],
    default_scene_time_ms: float = 90_000,
    window: Optional[int] = None,
) -> ProjectProgress:
    scenes = list(scenes)
    total = len(scenes)
    counts = {status: 0 for status in SceneStatus}
    for scene in scenes:
        counts[scene.status] += 1

    average = average_scene_time_ms(scenes, default_scene_time_ms, window)
    done = counts[SceneStatus.COMPLETED] + counts[SceneStatus.ERROR]

    if total == 0:
        percent, remaining, eta = 0.0, 0, None
    else:
        percent = min(100.0 * done / total, 100.0)
        remaining = total - done
        eta = remaining * average

    return ProjectProgress(
        total_scenes=total,
        completed_count=counts[SceneStatus.COMPLETED],
        error_count=counts[SceneStatus.ERROR],
        skipped_count=counts[SceneStatus.SKIPPED],
        pending_count=counts[SceneStatus.PENDING],
        analyzing_count=counts[SceneStatus.ANALYZING],
        progress_percent=percent,
        remaining=remaining,
        average_scene_time_ms=average,
        eta_ms=eta,
    )


class ProgressTracker:
    """Stateless progress view over a scene collection."""

    def __init__(
        self,
        default_scene_time_ms: Optional[float] = None,
        window: Optional[int] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        if default_scene_time_ms is None:
            default_scene_time_ms = (settings or get_settings()).default_scene_time_ms
        self.default_scene_time_ms = default_scene_time_ms
        self.window = window

    def snapshot(self, scenes: List[Scene]) -> ProjectProgress:
        return compute_progress(scenes, self.default_scene_time_ms, self.window)

    @staticmethod
    def format_eta(eta_ms: Optional[float]) -> str:
        """Human-readable ETA such as '3m 20s'."""
        if eta_ms is None:
            return "unknown"
        seconds = int(round(eta_ms / 1000))
        hours, seconds = divmod(seconds, 3600)
        minutes, seconds = divmod(seconds, 60)
        if hours:
            return f"{hours}h {minutes}m"
        if minutes:
            return f"{minutes}m {seconds}s"
        return f"{seconds}s"
