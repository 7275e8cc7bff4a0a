"""Exception types shared by the compiler, engine and ledger."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taskfactory.factory.validator import InvariantViolation


class CompileError(ValueError):
    """Definition could not be lowered into a state graph."""


class GraphValidationError(CompileError):
    """State graph failed one or more structural invariants."""

    def __init__(self, graph_id: str, violations: Sequence[InvariantViolation]) -> None:
        self.graph_id = graph_id
        self.violations = list(violations)
        details = "; ".join(f"{item.path}: {item.message}" for item in self.violations)
        super().__init__(f"Invalid factory `{graph_id}`: {details}")


class FatalRunError(RuntimeError):
    """Configuration or logic defect that fails the task without retry."""

    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        self.task_id = task_id
        super().__init__(message)


class LeaseLostError(RuntimeError):
    """Worker no longer owns the lease of the task it is advancing."""


class TransitionEventError(ValueError):
    """Transition event violates the reason code contract."""


class ReplayMismatchError(ValueError):
    """Ledger replay found a discontinuity it cannot explain."""


class FactoryLoadError(RuntimeError):
    """Factory import path could not be resolved."""
