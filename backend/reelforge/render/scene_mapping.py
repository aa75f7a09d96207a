"""Output timeline to source clip mapping.

Scenes with an explicit ``sourceStart``/``sourceEnd`` use it verbatim. The
rest get an evenly spaced slice of the source: scene ``i`` of ``N`` starts at
``i * D / N`` and runs for the scene's own duration, clamped to ``D``.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from reelforge.schemas.template import Scene

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SceneVideoMapping:
    """Source window displayed by one scene."""

    scene_index: int
    output_start: float
    output_end: float
    source_start: float
    source_end: float

    @property
    def output_duration(self) -> float:
        return self.output_end - self.output_start

    def contains(self, output_time: float) -> bool:
        return self.output_start <= output_time < self.output_end

    def source_time_at(self, output_time: float) -> float:
        """Map an output time inside this scene proportionally onto the source window."""
        duration = self.output_duration
        if duration <= 0:
            return self.source_start
        progress = min(max((output_time - self.output_start) / duration, 0.0), 1.0)
        return self.source_start + progress * (self.source_end - self.source_start)

    def progress_at(self, output_time: float) -> float:
        """Scene progress in 0..1."""
        duration = self.output_duration
        if duration <= 0:
            return 0.0
        return min(max((output_time - self.output_start) / duration, 0.0), 1.0)


def map_scenes(
    scenes: Sequence[Scene],
    source_duration: float | None,
    default_duration: float | None = None,
) -> list[SceneVideoMapping]:
    """Compute the source window of every scene.

    Args:
        scenes: Scenes in timeline order
        source_duration: Probed source duration in seconds (0/None = unknown)
        default_duration: Fallback duration when the source duration is unknown

    Returns:
        One mapping per scene, in input order
    """
    if not scenes:
        return []

    duration = source_duration if source_duration and source_duration > 0 else None
    if duration is None:
        duration = default_duration if default_duration and default_duration > 0 else None
        logger.warning(
            f"[MAPPING] Source duration unknown, using fallback "
            f"{duration if duration is not None else 'full-clip reuse'}"
        )

    count = len(scenes)
    mappings: list[SceneVideoMapping] = []
    for i, scene in enumerate(scenes):
        if scene.has_explicit_source:
            source_start = float(scene.source_start)
            source_end = float(scene.source_end)
        elif duration is None:
            # Nothing to distribute over: every scene replays the clip from the top
            source_start = 0.0
            source_end = scene.duration
        else:
            segment = duration / count
            source_start = i * segment
            source_end = min(source_start + scene.duration, duration)

        mappings.append(
            SceneVideoMapping(
                scene_index=i,
                output_start=scene.output_start,
                output_end=scene.output_end,
                source_start=source_start,
                source_end=source_end,
            )
        )
    return mappings


def find_scene(
    mappings: Sequence[SceneVideoMapping],
    output_time: float,
    hint: int | None = None,
) -> SceneVideoMapping | None:
    """Active scene at ``output_time``.

    The hinted scene is checked first and the linear search only runs when
    ``output_time`` has left that window. Scenes are tried in list order, so
    the earlier scene wins where windows overlap.
    """
    if hint is not None and 0 <= hint < len(mappings):
        cached = mappings[hint]
        if cached.contains(output_time):
            return cached
    for mapping in mappings:
        if mapping.contains(output_time):
            return mapping
    return None
