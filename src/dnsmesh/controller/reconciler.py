"""
Policy Reconciler.

Drives one DnsPolicy towards its indexed state per invocation. The
dispatcher calls reconcile() once per change notification; calls for the
same identity never overlap, calls for different identities may.

Lifecycle:

    ABSENT -> FINALIZER_PENDING -> VALIDATING -> (CONFLICT | INDEXED)
           -> DELETING -> ABSENT

The finalizer is added before a policy is ever indexed, and the index
entry is removed before the finalizer is cleared, so the index can always
be cleaned up when the object goes away.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, NoReturn

from dnsmesh.audit.models import EventType
from dnsmesh.config import DEFAULT_FINALIZER
from dnsmesh.controller.events import EventRecorder
from dnsmesh.controller.store import ObjectStore
from dnsmesh.errors import (
    DuplicateHashError,
    HashComputationError,
    NotFoundError,
    PersistenceError,
    ReconcileError,
    StoreError,
    ValidationError,
)
from dnsmesh.policy.fingerprint import selector_hash as compute_selector_hash
from dnsmesh.policy.fingerprint import spec_hash as compute_spec_hash
from dnsmesh.policy.index import PolicyIndex
from dnsmesh.policy.models import (
    CONDITION_READY,
    Condition,
    ConditionStatus,
    DnsPolicy,
    PolicyIdentity,
    find_condition,
    set_condition,
)


logger = logging.getLogger(__name__)


# Event and condition reasons
REASON_FINALIZER_ADDED = "FinalizerAdded"
REASON_FINALIZER_ADD_FAILED = "FinalizerAddFailed"
REASON_DELETED = "Deleted"
REASON_FINALIZER_REMOVAL_FAILED = "FinalizerRemovalFailed"
REASON_INVALID_SPEC = "InvalidSpec"
REASON_HASH_FAILED = "HashComputationFailed"
REASON_DUPLICATE_HASH = "DuplicateHash"
REASON_SELECTOR_HASH_UPDATED = "SelectorHashUpdated"
REASON_SPEC_HASH_UPDATED = "SpecHashUpdated"
REASON_INDEXED = "PolicyIndexed"
REASON_STATUS_UPDATE_FAILED = "StatusUpdateFailed"
REASON_RECONCILED = "Reconciled"


class Phase(str, Enum):
    """Where a policy stands in its lifecycle."""

    ABSENT = "Absent"
    FINALIZER_PENDING = "FinalizerPending"
    VALIDATING = "Validating"
    CONFLICT = "Conflict"
    INDEXED = "Indexed"
    DELETING = "Deleting"

    def __str__(self) -> str:
        return self.value


# Legal (observed phase -> outcome phase) moves within one invocation
TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.ABSENT: frozenset({Phase.ABSENT}),
    Phase.DELETING: frozenset({Phase.DELETING, Phase.ABSENT}),
    Phase.FINALIZER_PENDING: frozenset({Phase.VALIDATING}),
    Phase.VALIDATING: frozenset({Phase.VALIDATING, Phase.CONFLICT, Phase.INDEXED}),
}


def observe_phase(policy: DnsPolicy | None, finalizer: str = DEFAULT_FINALIZER) -> Phase:
    """
    Classify a fetched object into the phase its next step starts from.

    Args:
        policy: Object from the store, or None if it no longer exists
        finalizer: Finalizer this controller owns

    Returns:
        Observed phase
    """
    if policy is None:
        return Phase.ABSENT
    if policy.is_deleting:
        return Phase.DELETING
    if not policy.has_finalizer(finalizer):
        return Phase.FINALIZER_PENDING
    return Phase.VALIDATING


@dataclass
class ReconcileResult:
    """Outcome of one successful reconcile invocation."""

    identity: PolicyIdentity
    observed: Phase
    phase: Phase
    selector_hash: str | None = None
    spec_hash: str | None = None
    status_updated: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "identity": str(self.identity),
            "observed": self.observed.value,
            "phase": self.phase.value,
            "selector_hash": self.selector_hash,
            "spec_hash": self.spec_hash,
            "status_updated": self.status_updated,
        }


class Reconciler:
    """
    DnsPolicy reconciliation state machine.

    Owns no state of its own beyond its collaborators: the object store,
    the shared policy index and the event recorder.
    """

    def __init__(
        self,
        store: ObjectStore,
        index: PolicyIndex,
        recorder: EventRecorder | None = None,
        finalizer: str = DEFAULT_FINALIZER,
    ) -> None:
        """
        Initialize the reconciler.

        Args:
            store: Source of truth for policy objects
            index: Shared lookup index served to agents
            recorder: Event sink (defaults to a logging-only recorder)
            finalizer: Finalizer name this controller owns
        """
        self.store = store
        self.index = index
        self.recorder = recorder or EventRecorder()
        self.finalizer = finalizer

        # Phases of an object that exists; ABSENT has its own handler
        self._handlers: dict[Phase, Callable[[PolicyIdentity, DnsPolicy], ReconcileResult]] = {
            Phase.DELETING: self._handle_deleting,
            Phase.FINALIZER_PENDING: self._handle_finalizer_pending,
            Phase.VALIDATING: self._handle_validating,
        }

    def reconcile(self, identity: PolicyIdentity) -> ReconcileResult:
        """
        Run one reconciliation pass for a policy.

        Args:
            identity: Policy to reconcile

        Returns:
            ReconcileResult describing the phase reached

        Raises:
            ReconcileError: On any failure; the caller retries with backoff
        """
        try:
            policy: DnsPolicy | None = self.store.get(identity)
        except NotFoundError:
            policy = None
        except StoreError as e:
            logger.error("Failed to get DnsPolicy %s: %s", identity, e)
            raise PersistenceError(f"Failed to get DnsPolicy {identity}: {e}") from e

        observed = observe_phase(policy, self.finalizer)
        logger.debug("Reconciling %s (phase %s)", identity, observed)
        if policy is None:
            return self._handle_absent(identity)
        return self._handlers[observed](identity, policy)

    def _transition(self, identity: PolicyIdentity, observed: Phase, outcome: Phase) -> None:
        if outcome not in TRANSITIONS[observed]:
            raise RuntimeError(f"Illegal transition for {identity}: {observed} -> {outcome}")
        if outcome != observed:
            logger.debug("%s: %s -> %s", identity, observed, outcome)

    def _result(
        self,
        identity: PolicyIdentity,
        observed: Phase,
        outcome: Phase,
        **kwargs,
    ) -> ReconcileResult:
        self._transition(identity, observed, outcome)
        return ReconcileResult(identity=identity, observed=observed, phase=outcome, **kwargs)

    # =========================================================================
    # Phase handlers
    # =========================================================================

    def _handle_absent(self, identity: PolicyIdentity) -> ReconcileResult:
        """Object is gone: make sure nothing is left in the index."""
        if self.index.delete(identity):
            logger.info("DnsPolicy %s deleted, removed from index", identity)
        return self._result(identity, Phase.ABSENT, Phase.ABSENT)

    def _handle_deleting(self, identity: PolicyIdentity, policy: DnsPolicy) -> ReconcileResult:
        """Deletion requested: drop the index entry, then release the object."""
        if not policy.has_finalizer(self.finalizer):
            # Waiting on other finalizers; our cleanup is already done
            return self._result(identity, Phase.DELETING, Phase.DELETING)

        logger.info("DnsPolicy %s being deleted, removing from index", identity)
        self.index.delete(identity)
        self.recorder.normal(policy, REASON_DELETED, "DnsPolicy removed from index")

        policy.remove_finalizer(self.finalizer)
        try:
            self.store.update(policy)
        except StoreError as e:
            logger.error("Failed to remove finalizer from %s: %s", identity, e)
            self.recorder.warning(
                policy,
                REASON_FINALIZER_REMOVAL_FAILED,
                f"Failed to remove finalizer: {e}",
            )
            raise PersistenceError(f"Failed to remove finalizer from {identity}: {e}") from e

        outcome = Phase.DELETING if policy.metadata.finalizers else Phase.ABSENT
        return self._result(identity, Phase.DELETING, outcome)

    def _handle_finalizer_pending(
        self,
        identity: PolicyIdentity,
        policy: DnsPolicy,
    ) -> ReconcileResult:
        """Attach the finalizer; indexing waits for the next invocation."""
        policy.add_finalizer(self.finalizer)
        try:
            self.store.update(policy)
        except StoreError as e:
            logger.error("Failed to add finalizer to %s: %s", identity, e)
            self.recorder.warning(
                policy,
                REASON_FINALIZER_ADD_FAILED,
                f"Failed to add finalizer: {e}",
            )
            raise PersistenceError(f"Failed to add finalizer to {identity}: {e}") from e

        self.recorder.normal(policy, REASON_FINALIZER_ADDED, "Finalizer added to DnsPolicy")
        return self._result(identity, Phase.FINALIZER_PENDING, Phase.VALIDATING)

    def _handle_validating(self, identity: PolicyIdentity, policy: DnsPolicy) -> ReconcileResult:
        """Validate, fingerprint, check for conflicts and commit to the index."""
        spec = policy.spec

        if not spec.has_selection_key():
            self._transition(identity, Phase.VALIDATING, Phase.VALIDATING)
            self._fail(
                policy,
                ValidationError("targetSelector or subject cannot be empty"),
            )

        try:
            selector_hash = compute_selector_hash(spec.selection_key())
        except HashComputationError as e:
            self._fail(policy, e, f"Failed to compute selector hash: {e}")

        existing = self.index.get(selector_hash)
        if existing is not None and existing.identity != identity:
            self._transition(identity, Phase.VALIDATING, Phase.CONFLICT)
            self._fail(policy, DuplicateHashError(selector_hash, existing.identity, identity))

        try:
            spec_hash = compute_spec_hash(spec)
        except HashComputationError as e:
            self._fail(policy, e, f"Failed to compute spec hash: {e}")

        return self._commit(identity, policy, selector_hash, spec_hash)

    def _commit(
        self,
        identity: PolicyIdentity,
        policy: DnsPolicy,
        selector_hash: str,
        spec_hash: str,
    ) -> ReconcileResult:
        """Record hashes on the status, index the policy, persist status."""
        previous = policy.status
        generation = policy.metadata.generation

        selector_changed = previous.selector_hash != selector_hash
        spec_changed = previous.spec_hash != spec_hash
        ready = find_condition(previous.conditions, CONDITION_READY)
        needs_status_update = (
            selector_changed
            or spec_changed
            or previous.observed_generation != generation
            or ready is None
            or ready.status != ConditionStatus.TRUE
        )

        # The snapshot carries the new status so readers see the hashes
        snapshot = policy.copy()
        if needs_status_update:
            snapshot.status.selector_hash = selector_hash
            snapshot.status.spec_hash = spec_hash
            snapshot.status.observed_generation = generation
            self._set_ready(snapshot, ConditionStatus.TRUE, REASON_RECONCILED,
                            "DnsPolicy successfully reconciled")

        try:
            self.index.upsert(snapshot, selector_hash)
        except DuplicateHashError as e:
            # Another identity claimed the hash since the conflict check
            self._transition(identity, Phase.VALIDATING, Phase.CONFLICT)
            self._fail(policy, e)

        if selector_changed:
            logger.info(
                "Selector hash changed for %s: %r -> %r",
                identity, previous.selector_hash, selector_hash,
            )
            self.recorder.normal(
                policy,
                REASON_SELECTOR_HASH_UPDATED,
                f"Selector hash updated to {selector_hash}",
            )
        if spec_changed:
            logger.info(
                "Spec hash changed for %s: %r -> %r",
                identity, previous.spec_hash, spec_hash,
            )
            self.recorder.normal(
                policy,
                REASON_SPEC_HASH_UPDATED,
                f"Spec hash updated to {spec_hash}",
            )

        logger.info(
            "DnsPolicy %s indexed (selectorHash=%s, specHash=%s)",
            identity, selector_hash, spec_hash,
        )
        self.recorder.normal(policy, REASON_INDEXED, "DnsPolicy successfully indexed and ready")

        if needs_status_update:
            try:
                self.store.update_status(snapshot)
            except StoreError as e:
                logger.error("Failed to update status of %s: %s", identity, e)
                self.recorder.warning(
                    policy,
                    REASON_STATUS_UPDATE_FAILED,
                    f"Failed to update status: {e}",
                )
                raise PersistenceError(f"Failed to update status of {identity}: {e}") from e
            self.recorder.normal(policy, REASON_RECONCILED, "DnsPolicy successfully reconciled")

        return self._result(
            identity,
            Phase.VALIDATING,
            Phase.INDEXED,
            selector_hash=selector_hash,
            spec_hash=spec_hash,
            status_updated=needs_status_update,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _set_ready(
        self,
        policy: DnsPolicy,
        status: ConditionStatus,
        reason: str,
        message: str,
    ) -> bool:
        return set_condition(
            policy.status.conditions,
            Condition(
                type=CONDITION_READY,
                status=status,
                reason=reason,
                message=message,
                observed_generation=policy.metadata.generation,
            ),
        )

    def _fail(self, policy: DnsPolicy, error: ReconcileError, message: str | None = None) -> NoReturn:
        """
        Record a standing failure on the policy and raise it.

        The Ready=False condition is persisted when it changed, so the
        failure stays visible until the operator fixes the policy. A
        failure to persist it is logged; the original error still wins.
        """
        message = message or str(error)
        logger.error("DnsPolicy %s: %s: %s", policy.identity, error.reason, message)
        self.recorder.event(policy, EventType.WARNING, error.reason, message)

        if self._set_ready(policy, ConditionStatus.FALSE, error.reason, message):
            try:
                self.store.update_status(policy)
            except StoreError as e:
                logger.warning(
                    "Failed to record %s condition on %s: %s",
                    error.reason, policy.identity, e,
                )
        raise error
