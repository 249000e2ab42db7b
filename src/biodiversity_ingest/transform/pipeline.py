"""Ordered, named transform steps with per-step failure attribution.

A pipeline threads a document through its steps. A step returns the next
document, or None to reject it. Rejection by a required step, or an exception
from any step, stops the pipeline and names the step responsible; an optional
step returning None is skipped and the previous document carries on.

Example:
    >>> pipeline = TransformPipeline(
    ...     "demo",
    ...     [
    ...         TransformStep("upper", lambda d: {**d, "name": d["name"].upper()}),
    ...         TransformStep("drop-empty", lambda d: d if d["name"] else None),
    ...     ],
    ... )
    >>> execute_pipeline(pipeline, {"name": "quercus"}).document
    {'name': 'QUERCUS'}
    >>> execute_pipeline(pipeline, {"name": ""}).failed_at
    'drop-empty'
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

Document = dict[str, Any]
StepFunction = Callable[[Document], Document | None]


@dataclass(frozen=True)
class TransformStep:
    """A single named transformation.

    Attributes:
        name: Identifier reported when this step rejects or fails a document
        fn: Function returning the next document, or None to reject
        optional: If True, a None result leaves the document unchanged
    """

    name: str
    fn: StepFunction
    optional: bool = False


@dataclass
class TransformPipeline:
    """A named, ordered list of steps."""

    name: str
    steps: list[TransformStep] = field(default_factory=list)

    @property
    def step_names(self) -> list[str]:
        return [step.name for step in self.steps]


@dataclass
class TransformResult:
    """Outcome of running a pipeline on one document.

    Attributes:
        success: True if every required step produced a document
        document: The final document, or None on failure
        failed_at: Name of the step that rejected or failed the document
        error: The exception raised by that step, if it raised
    """

    success: bool
    document: Document | None = None
    failed_at: str | None = None
    error: Exception | None = None

    @property
    def rejected(self) -> bool:
        """True if a step filtered the document out without raising."""
        return not self.success and self.error is None


def execute_pipeline(pipeline: TransformPipeline, document: Document) -> TransformResult:
    """Run ``document`` through every step of ``pipeline`` in order.

    Args:
        pipeline: Steps to apply
        document: Input document; steps are expected to clone before mutating

    Returns:
        TransformResult with the final document, or the failing step's name
    """
    current = document
    for step in pipeline.steps:
        try:
            result = step.fn(current)
        except Exception as e:
            logger.debug(f"{pipeline.name}: step {step.name} raised {type(e).__name__}: {e}")
            return TransformResult(success=False, failed_at=step.name, error=e)

        if result is None:
            if step.optional:
                continue
            return TransformResult(success=False, failed_at=step.name)
        current = result

    return TransformResult(success=True, document=current)


def compose(*fns: StepFunction) -> StepFunction:
    """Combine step functions into one that stops at the first None."""

    def composed(document: Document) -> Document | None:
        current: Document | None = document
        for fn in fns:
            if current is None:
                return None
            current = fn(current)
        return current

    return composed
