"""Exception taxonomy shared by the coordinator, pipeline and DAG executor.

Capacity exhaustion and failed verification are not errors: the former is
signalled by a ``None``/falsy return, the latter by a failing ``QCResult``
that feeds the retry loop.
"""

from __future__ import annotations


class ForemanError(Exception):
    """Base class for foreman errors."""


class NotFoundError(ForemanError, LookupError):
    """Unknown task, DAG or node id."""

    def __init__(self, entity: str, identifier: str) -> None:
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity.capitalize()} {identifier} not found")


class InvalidStateTransitionError(ForemanError, ValueError):
    """A transition that the current state does not allow."""

    def __init__(self, entity: str, identifier: str, current: str, target: str) -> None:
        self.entity = entity
        self.identifier = identifier
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {entity} {identifier} from '{current}' to '{target}'")


class DagValidationError(ForemanError, ValueError):
    """A DAG definition or mutation that would produce an invalid graph."""


class VerifierUnavailableError(ForemanError, RuntimeError):
    """The Verifier could not run (missing tooling, crashed, unreachable)."""
