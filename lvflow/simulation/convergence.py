"""Bounded fixed-point iteration controller.

Shared termination policy for every iterative regulation procedure. The
controller owns the loop; the caller injects an ``evaluate`` callback that
performs one step (typically one solver pass) and reports:

- the next state to feed back
- a scalar metric compared with the tolerance (voltage change between
  passes, or voltage error against measurements)
- an optional hashable signature of the discrete state, used to detect
  oscillation (a signature seen again after a different one)

Termination:
  CONVERGED      metric <= tolerance
  NOT_CONVERGED  iteration ceiling reached, oscillation detected, or the
                 metric failed to improve on its best value for
                 ``patience`` consecutive steps

The report always carries the last and the best (lowest metric) step so the
caller can return a best-effort result when the loop does not converge.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Hashable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from lvflow.diagnostics import NULL_DIAGNOSTICS, Diagnostics

logger = logging.getLogger(__name__)

S = TypeVar("S")


class ConvergenceStatus(str, Enum):
    CONVERGED = "converged"
    NOT_CONVERGED = "not_converged"


class StopReason(str, Enum):
    TOLERANCE = "tolerance"
    MAX_ITERATIONS = "max_iterations"
    OSCILLATION = "oscillation"
    NO_PROGRESS = "no_progress"


@dataclass
class IterationStep(Generic[S]):
    """Outcome of one evaluate call."""
    state: S
    metric: float
    signature: Hashable | None = None
    payload: Any = None


@dataclass
class ConvergenceReport(Generic[S]):
    status: ConvergenceStatus
    reason: StopReason
    iterations: int
    last: IterationStep[S] | None
    best: IterationStep[S] | None
    history: list[float] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.status is ConvergenceStatus.CONVERGED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "reason": self.reason.value,
            "iterations": self.iterations,
            "metric": None if self.last is None else round(self.last.metric, 6),
            "best_metric": None if self.best is None else round(self.best.metric, 6),
        }


class ConvergenceController:
    """Runs an evaluate callback until convergence or a termination condition."""

    def __init__(
        self,
        max_iterations: int = 10,
        tolerance: float = 0.5,
        patience: int | None = 3,
        name: str = "fixed_point",
        diagnostics: Diagnostics | None = None,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if tolerance < 0:
            raise ValueError("tolerance must be non-negative")
        self.max_iterations = max_iterations
        self.tolerance = tolerance
        self.patience = patience
        self.name = name
        self.diagnostics = diagnostics or NULL_DIAGNOSTICS

    def run(
        self,
        initial: S,
        evaluate: Callable[[S, int], IterationStep[S]],
    ) -> ConvergenceReport[S]:
        """Iterate ``evaluate(state, iteration)`` starting from ``initial``."""
        state = initial
        history: list[float] = []
        seen: dict[Hashable, int] = {}
        last: IterationStep[S] | None = None
        best: IterationStep[S] | None = None
        stale = 0
        reason = StopReason.MAX_ITERATIONS
        iteration = 0

        for iteration in range(1, self.max_iterations + 1):
            step = evaluate(state, iteration)
            metric = step.metric if math.isfinite(step.metric) else math.inf
            history.append(metric)
            last = step

            self.diagnostics.emit(
                f"{self.name}.iteration",
                iteration=iteration,
                metric=metric,
                signature=step.signature,
            )

            if best is None or metric < best.metric:
                best = step
                stale = 0
            else:
                stale += 1

            if metric <= self.tolerance:
                reason = StopReason.TOLERANCE
                break

            if step.signature is not None:
                previous = seen.get(step.signature)
                if previous is not None and previous < iteration - 1:
                    reason = StopReason.OSCILLATION
                    break
                seen[step.signature] = iteration

            if self.patience is not None and stale >= self.patience:
                reason = StopReason.NO_PROGRESS
                break

            state = step.state

        status = ConvergenceStatus.CONVERGED if reason is StopReason.TOLERANCE else ConvergenceStatus.NOT_CONVERGED
        if status is ConvergenceStatus.NOT_CONVERGED:
            logger.info(
                "%s stopped without converging after %d iterations (%s)",
                self.name, iteration, reason.value,
                extra={"event": f"{self.name}.not_converged"},
            )
        self.diagnostics.emit(
            f"{self.name}.done",
            status=status.value,
            reason=reason.value,
            iterations=iteration,
        )
        return ConvergenceReport(
            status=status,
            reason=reason,
            iterations=iteration,
            last=last,
            best=best,
            history=history,
        )
