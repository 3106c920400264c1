"""Stage machine describing the legal shape of the magazine pipeline.

The machine is pure: it performs no I/O and holds no mutable state. The
workflow engine consults it on every transition decision.

Stage Flow::

    TOPIC_SELECTION -> CONTENT_WRITING -> [IMAGE_GENERATION] -> FIGMA_LAYOUT
        -> FINAL_OUTPUT -> COMPLETE

``IMAGE_GENERATION`` is only part of the flow when the machine is built with
``include_image_generation=True``. ``COMPLETE`` is the sole terminal stage.

Example:
    >>> machine = StageMachine()
    >>> machine.next_stage(Stage.CONTENT_WRITING)
    <Stage.FIGMA_LAYOUT: 'FIGMA_LAYOUT'>
    >>> machine.can_reject(Stage.FINAL_OUTPUT)
    False
"""

from enum import Enum


class Stage(str, Enum):
    """Named phase of the pipeline."""

    TOPIC_SELECTION = "TOPIC_SELECTION"
    CONTENT_WRITING = "CONTENT_WRITING"
    IMAGE_GENERATION = "IMAGE_GENERATION"
    FIGMA_LAYOUT = "FIGMA_LAYOUT"
    FINAL_OUTPUT = "FINAL_OUTPUT"
    COMPLETE = "COMPLETE"

    def __str__(self) -> str:
        return self.value


STAGE_LABELS: dict[Stage, str] = {
    Stage.TOPIC_SELECTION: "Topic selection",
    Stage.CONTENT_WRITING: "Content writing",
    Stage.IMAGE_GENERATION: "Image generation",
    Stage.FIGMA_LAYOUT: "Figma layout",
    Stage.FINAL_OUTPUT: "Final output",
    Stage.COMPLETE: "Complete",
}

# The last non-terminal stage can only be regenerated in place.
_NON_REJECTABLE = frozenset({Stage.FINAL_OUTPUT, Stage.COMPLETE})


def stage_label(stage: Stage | str) -> str:
    """Return the human-readable label for a stage, or the raw value if unknown."""
    try:
        return STAGE_LABELS[Stage(stage)]
    except ValueError:
        return str(stage)


def coerce_stage(value: Stage | str) -> Stage | None:
    """Convert a raw value to a Stage, returning None for unrecognized values."""
    try:
        return Stage(value)
    except ValueError:
        return None


class StageMachine:
    """Linear stage machine with an optional image-generation step.

    Attributes:
        stages: Ordered tuple of every stage in this machine, ending with COMPLETE.
    """

    def __init__(self, include_image_generation: bool = False) -> None:
        order = [Stage.TOPIC_SELECTION, Stage.CONTENT_WRITING]
        if include_image_generation:
            order.append(Stage.IMAGE_GENERATION)
        order.extend([Stage.FIGMA_LAYOUT, Stage.FINAL_OUTPUT, Stage.COMPLETE])

        self.include_image_generation = include_image_generation
        self.stages: tuple[Stage, ...] = tuple(order)
        self._transitions: dict[Stage, Stage] = dict(zip(self.stages, self.stages[1:], strict=False))

    def contains(self, stage: Stage | str) -> bool:
        """Check whether the stage is part of this machine's flow."""
        return coerce_stage(stage) in self.stages

    def next_stage(self, current: Stage | str) -> Stage | None:
        """Return the single successor of ``current``.

        Args:
            current: Stage the issue is in now.

        Returns:
            The next stage, or None if ``current`` is terminal, unrecognized
            or not part of this machine.
        """
        stage = coerce_stage(current)
        if stage is None:
            return None
        return self._transitions.get(stage)

    def can_reject(self, stage: Stage | str) -> bool:
        """Check whether the stage may be re-run through a rejection.

        True for every non-terminal stage of this machine except FINAL_OUTPUT.
        """
        coerced = coerce_stage(stage)
        if coerced is None or coerced not in self._transitions:
            return False
        return coerced not in _NON_REJECTABLE

    def is_terminal(self, stage: Stage | str) -> bool:
        """Check whether the stage is COMPLETE."""
        return coerce_stage(stage) == Stage.COMPLETE

    def resettable_stages(self) -> tuple[Stage, ...]:
        """Non-terminal stages an operator may reset an issue to."""
        return tuple(s for s in self.stages if not self.is_terminal(s))

    def __repr__(self) -> str:
        return f"StageMachine(include_image_generation={self.include_image_generation})"
