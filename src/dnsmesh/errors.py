"""
Error taxonomy for dnsmesh.

Reconciliation errors are returned to the dispatcher, which retries them
with backoff. None of them terminate the process.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dnsmesh.policy.models import PolicyIdentity


class DnsMeshError(Exception):
    """Base class for all dnsmesh errors."""


class ReconcileError(DnsMeshError):
    """A single reconciliation attempt failed and should be retried."""

    reason: str = "ReconcileFailed"


class ValidationError(ReconcileError):
    """Policy spec is invalid (operator-correctable)."""

    reason = "InvalidSpec"


class HashComputationError(ReconcileError):
    """Policy content could not be canonically encoded."""

    reason = "HashComputationFailed"


class DuplicateHashError(ReconcileError):
    """Another policy already owns the computed selector hash."""

    reason = "DuplicateHash"

    def __init__(
        self,
        selector_hash: str,
        owner: PolicyIdentity,
        claimant: PolicyIdentity,
    ) -> None:
        self.selector_hash = selector_hash
        self.owner = owner
        self.claimant = claimant
        super().__init__(
            f"selector hash {selector_hash} is already owned by policy {owner}"
        )


class PersistenceError(ReconcileError):
    """Writing an object back to the store failed (transient)."""

    reason = "PersistenceFailed"


class ServerError(DnsMeshError):
    """Query server could not bind, serve or shut down."""


class StoreError(DnsMeshError):
    """Object store operation failed."""


class NotFoundError(StoreError):
    """Object does not exist in the store."""


class ConflictError(StoreError):
    """Write was based on a stale resource version."""


class AlreadyExistsError(StoreError):
    """Object with the same identity already exists."""
