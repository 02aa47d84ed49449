"""
Tests for the policy reconciler state machine.
"""

from __future__ import annotations

import pytest

from conftest import make_policy
from dnsmesh.config import DEFAULT_FINALIZER
from dnsmesh.controller.events import EventRecorder
from dnsmesh.controller.reconciler import (
    TRANSITIONS,
    Phase,
    Reconciler,
    observe_phase,
)
from dnsmesh.controller.store import InMemoryObjectStore
from dnsmesh.errors import (
    ConflictError,
    DuplicateHashError,
    HashComputationError,
    PersistenceError,
    StoreError,
    ValidationError,
)
from dnsmesh.policy.fingerprint import selector_hash, spec_hash
from dnsmesh.policy.index import PolicyIndex
from dnsmesh.policy.models import (
    CONDITION_READY,
    ConditionStatus,
    DnsPolicy,
    PolicyIdentity,
    find_condition,
    utc_now,
)


class FlakyStore(InMemoryObjectStore):
    """Object store whose writes can be made to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_get = False
        self.fail_update = False
        self.fail_update_status = False
        self.status_writes = 0

    def get(self, identity: PolicyIdentity) -> DnsPolicy:
        if self.fail_get:
            raise StoreError("store unavailable")
        return super().get(identity)

    def update(self, policy: DnsPolicy) -> DnsPolicy:
        if self.fail_update:
            raise ConflictError("injected conflict")
        return super().update(policy)

    def update_status(self, policy: DnsPolicy) -> DnsPolicy:
        if self.fail_update_status:
            raise ConflictError("injected conflict")
        self.status_writes += 1
        return super().update_status(policy)


@pytest.fixture
def flaky_store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture
def flaky_reconciler(flaky_store: FlakyStore, index: PolicyIndex, recorder: EventRecorder) -> Reconciler:
    return Reconciler(store=flaky_store, index=index, recorder=recorder)


def ready_condition(store: InMemoryObjectStore, identity: PolicyIdentity):
    return find_condition(store.get(identity).status.conditions, CONDITION_READY)


def create_indexed(store: InMemoryObjectStore, reconciler: Reconciler, policy: DnsPolicy) -> PolicyIdentity:
    """Create a policy and run it through finalizer and indexing passes."""
    store.create(policy)
    reconciler.reconcile(policy.identity)
    reconciler.reconcile(policy.identity)
    return policy.identity


class TestObservePhase:
    """Tests for phase classification."""

    def test_absent(self) -> None:
        assert observe_phase(None) == Phase.ABSENT

    def test_finalizer_pending(self) -> None:
        assert observe_phase(make_policy()) == Phase.FINALIZER_PENDING

    def test_validating(self) -> None:
        policy = make_policy()
        policy.add_finalizer(DEFAULT_FINALIZER)
        assert observe_phase(policy) == Phase.VALIDATING

    def test_deleting_wins(self) -> None:
        """Test a deletion marker takes precedence over everything else."""
        policy = make_policy()
        policy.metadata.deletion_timestamp = utc_now()
        assert observe_phase(policy) == Phase.DELETING
        policy.add_finalizer(DEFAULT_FINALIZER)
        assert observe_phase(policy) == Phase.DELETING

    def test_other_finalizer_only(self) -> None:
        """Test foreign finalizers do not count as ours."""
        policy = make_policy()
        policy.add_finalizer("example.com/other")
        assert observe_phase(policy) == Phase.FINALIZER_PENDING

    def test_transition_table_covers_observable_phases(self) -> None:
        """Test every observable phase has legal outcomes."""
        for phase in (Phase.ABSENT, Phase.DELETING, Phase.FINALIZER_PENDING, Phase.VALIDATING):
            assert TRANSITIONS[phase]
        assert Phase.INDEXED in TRANSITIONS[Phase.VALIDATING]
        assert Phase.CONFLICT in TRANSITIONS[Phase.VALIDATING]
        assert Phase.INDEXED not in TRANSITIONS[Phase.FINALIZER_PENDING]

    def test_handlers_cover_existing_object_phases(self, reconciler: Reconciler) -> None:
        """Test every phase of a fetched object has a handler and ABSENT has none."""
        assert set(reconciler._handlers) == set(TRANSITIONS) - {Phase.ABSENT}


class TestReconcileLifecycle:
    """Tests for the happy path through the lifecycle."""

    def test_absent_object(self, reconciler: Reconciler, index: PolicyIndex) -> None:
        """Test a missing object is a no-op that clears the index."""
        result = reconciler.reconcile(PolicyIdentity("default", "ghost"))
        assert result.observed == Phase.ABSENT
        assert result.phase == Phase.ABSENT
        assert index.size() == 0

    def test_object_vanishing_between_passes(
        self,
        store: InMemoryObjectStore,
        reconciler: Reconciler,
        index: PolicyIndex,
    ) -> None:
        """Test an object erased after indexing is handled without its body."""
        identity = create_indexed(store, reconciler, make_policy("web", target_selector={"app": "web"}))
        current = store.get(identity)
        current.remove_finalizer(DEFAULT_FINALIZER)
        store.update(current)
        store.delete(identity)
        assert not store.exists(identity)

        result = reconciler.reconcile(identity)

        assert result.observed == Phase.ABSENT
        assert result.phase == Phase.ABSENT
        assert index.size() == 0

    def test_absent_object_removes_stale_entry(self, reconciler: Reconciler, index: PolicyIndex) -> None:
        """Test an index entry for a vanished object is garbage collected."""
        index.upsert(make_policy("ghost"), "h1")
        reconciler.reconcile(PolicyIdentity("default", "ghost"))
        assert index.get("h1") is None

    def test_first_pass_adds_finalizer_only(
        self,
        store: InMemoryObjectStore,
        reconciler: Reconciler,
        index: PolicyIndex,
        recorder: EventRecorder,
    ) -> None:
        """Test the finalizer is added before anything is indexed."""
        policy = make_policy("web", target_selector={"app": "web"}, block_list=["ads.example"])
        store.create(policy)

        result = reconciler.reconcile(policy.identity)

        assert result.observed == Phase.FINALIZER_PENDING
        assert result.phase == Phase.VALIDATING
        assert store.get(policy.identity).has_finalizer(DEFAULT_FINALIZER)
        assert index.size() == 0
        assert recorder.reasons(policy.identity) == ["FinalizerAdded"]

    def test_second_pass_indexes(
        self,
        store: InMemoryObjectStore,
        reconciler: Reconciler,
        index: PolicyIndex,
        recorder: EventRecorder,
    ) -> None:
        """Test the second pass fingerprints, indexes and records status."""
        policy = make_policy("web", target_selector={"app": "web"}, block_list=["ads.example"])
        store.create(policy)
        reconciler.reconcile(policy.identity)

        result = reconciler.reconcile(policy.identity)

        expected_selector = selector_hash({"app": "web"})
        expected_spec = spec_hash(policy.spec)
        assert result.phase == Phase.INDEXED
        assert result.selector_hash == expected_selector
        assert result.spec_hash == expected_spec
        assert result.status_updated is True

        stored = store.get(policy.identity)
        assert stored.status.selector_hash == expected_selector
        assert stored.status.spec_hash == expected_spec
        assert stored.status.observed_generation == 1
        ready = find_condition(stored.status.conditions, CONDITION_READY)
        assert ready.status == ConditionStatus.TRUE
        assert ready.reason == "Reconciled"

        indexed = index.get(expected_selector)
        assert indexed.identity == policy.identity
        assert indexed.status.selector_hash == expected_selector

        assert recorder.reasons(policy.identity) == [
            "FinalizerAdded",
            "SelectorHashUpdated",
            "SpecHashUpdated",
            "PolicyIndexed",
            "Reconciled",
        ]

    def test_steady_state_skips_status_write(
        self,
        store: InMemoryObjectStore,
        reconciler: Reconciler,
    ) -> None:
        """Test an unchanged policy does not write status again."""
        identity = create_indexed(store, reconciler, make_policy("web", target_selector={"app": "web"}))
        version = store.get(identity).metadata.resource_version

        result = reconciler.reconcile(identity)

        assert result.phase == Phase.INDEXED
        assert result.status_updated is False
        assert store.get(identity).metadata.resource_version == version

    def test_subject_selection(self, store: InMemoryObjectStore, reconciler: Reconciler, index: PolicyIndex) -> None:
        """Test a subject-only policy is indexed by its subject mapping."""
        identity = create_indexed(store, reconciler, make_policy("svc", subject={"team": "data"}))
        assert index.owner_of(selector_hash({"team": "data"})) == identity

    def test_selector_preferred_over_subject(
        self,
        store: InMemoryObjectStore,
        reconciler: Reconciler,
        index: PolicyIndex,
    ) -> None:
        """Test the label selector wins when both forms are set."""
        policy = make_policy("both", target_selector={"app": "web"}, subject={"team": "data"})
        create_indexed(store, reconciler, policy)
        assert index.get(selector_hash({"app": "web"})) is not None
        assert index.get(selector_hash({"team": "data"})) is None

    def test_spec_change_reindexes(
        self,
        store: InMemoryObjectStore,
        reconciler: Reconciler,
        index: PolicyIndex,
        recorder: EventRecorder,
    ) -> None:
        """Test a block list change updates the spec hash and snapshot."""
        identity = create_indexed(
            store, reconciler, make_policy("web", target_selector={"app": "web"}, block_list=["a.example"])
        )
        current = store.get(identity)
        current.spec.block_list = ["a.example", "b.example"]
        store.update(current)

        result = reconciler.reconcile(identity)

        stored = store.get(identity)
        assert result.status_updated is True
        assert stored.metadata.generation == 2
        assert stored.status.observed_generation == 2
        assert stored.status.spec_hash == spec_hash(stored.spec)
        assert index.get(selector_hash({"app": "web"})).spec.block_list == ["a.example", "b.example"]
        reasons = recorder.reasons(identity)
        assert reasons.count("SpecHashUpdated") == 2
        assert reasons.count("SelectorHashUpdated") == 1

    def test_selector_change_rekeys(
        self,
        store: InMemoryObjectStore,
        reconciler: Reconciler,
        index: PolicyIndex,
    ) -> None:
        """Test changing the selection key moves the index entry."""
        identity = create_indexed(store, reconciler, make_policy("web", target_selector={"app": "web"}))
        current = store.get(identity)
        current.spec.target_selector = {"app": "web2"}
        store.update(current)

        reconciler.reconcile(identity)

        assert index.get(selector_hash({"app": "web"})) is None
        assert index.owner_of(selector_hash({"app": "web2"})) == identity
        assert index.size() == 1
        assert store.get(identity).status.selector_hash == selector_hash({"app": "web2"})


class TestReconcileDeletion:
    """Tests for the deletion path."""

    def test_delete_removes_from_index_and_store(
        self,
        store: InMemoryObjectStore,
        reconciler: Reconciler,
        index: PolicyIndex,
        recorder: EventRecorder,
    ) -> None:
        """Test the index is cleaned up before the finalizer is released."""
        identity = create_indexed(store, reconciler, make_policy("web", target_selector={"app": "web"}))
        store.delete(identity)
        assert store.exists(identity)

        result = reconciler.reconcile(identity)

        assert result.observed == Phase.DELETING
        assert result.phase == Phase.ABSENT
        assert index.size() == 0
        assert not store.exists(identity)
        assert recorder.reasons(identity)[-1] == "Deleted"

        # Follow-up notification for the erased object
        assert reconciler.reconcile(identity).phase == Phase.ABSENT

    def test_delete_waits_for_other_finalizers(
        self,
        store: InMemoryObjectStore,
        reconciler: Reconciler,
        index: PolicyIndex,
    ) -> None:
        """Test foreign finalizers keep the object after our cleanup."""
        identity = create_indexed(store, reconciler, make_policy("web", target_selector={"app": "web"}))
        current = store.get(identity)
        current.add_finalizer("example.com/other")
        store.update(current)
        store.delete(identity)

        result = reconciler.reconcile(identity)

        assert result.phase == Phase.DELETING
        assert index.size() == 0
        stored = store.get(identity)
        assert stored.metadata.finalizers == ["example.com/other"]

        again = reconciler.reconcile(identity)
        assert again.phase == Phase.DELETING

    def test_size_decreases_by_one(
        self,
        store: InMemoryObjectStore,
        reconciler: Reconciler,
        index: PolicyIndex,
    ) -> None:
        """Test deleting one of several policies removes exactly one entry."""
        create_indexed(store, reconciler, make_policy("a", target_selector={"app": "a"}))
        identity = create_indexed(store, reconciler, make_policy("b", target_selector={"app": "b"}))
        create_indexed(store, reconciler, make_policy("c", target_selector={"app": "c"}))
        assert index.size() == 3

        store.delete(identity)
        reconciler.reconcile(identity)

        assert index.size() == 2
        assert index.get(selector_hash({"app": "b"})) is None


class TestReconcileFailures:
    """Tests for failure handling."""

    def test_invalid_spec(
        self,
        store: InMemoryObjectStore,
        reconciler: Reconciler,
        index: PolicyIndex,
        recorder: EventRecorder,
    ) -> None:
        """Test an empty selection key is a standing InvalidSpec condition."""
        policy = make_policy("empty", block_list=["ads.example"])
        store.create(policy)
        reconciler.reconcile(policy.identity)

        with pytest.raises(ValidationError):
            reconciler.reconcile(policy.identity)

        ready = ready_condition(store, policy.identity)
        assert ready.status == ConditionStatus.FALSE
        assert ready.reason == "InvalidSpec"
        assert index.size() == 0
        assert recorder.reasons(policy.identity)[-1] == "InvalidSpec"

    def test_repeated_failure_does_not_rewrite_status(
        self,
        flaky_store: FlakyStore,
        flaky_reconciler: Reconciler,
    ) -> None:
        """Test an unchanged failure condition is persisted only once."""
        policy = make_policy("empty")
        flaky_store.create(policy)
        flaky_reconciler.reconcile(policy.identity)

        for _ in range(3):
            with pytest.raises(ValidationError):
                flaky_reconciler.reconcile(policy.identity)

        assert flaky_store.status_writes == 1

    def test_invalid_then_fixed(
        self,
        store: InMemoryObjectStore,
        reconciler: Reconciler,
        index: PolicyIndex,
    ) -> None:
        """Test fixing the spec flips Ready back to True."""
        policy = make_policy("late")
        store.create(policy)
        reconciler.reconcile(policy.identity)
        with pytest.raises(ValidationError):
            reconciler.reconcile(policy.identity)

        current = store.get(policy.identity)
        current.spec.target_selector = {"app": "late"}
        store.update(current)
        reconciler.reconcile(policy.identity)

        ready = ready_condition(store, policy.identity)
        assert ready.status == ConditionStatus.TRUE
        assert ready.reason == "Reconciled"
        assert index.owner_of(selector_hash({"app": "late"})) == policy.identity

    def test_duplicate_hash(
        self,
        store: InMemoryObjectStore,
        reconciler: Reconciler,
        index: PolicyIndex,
        recorder: EventRecorder,
    ) -> None:
        """Test the second policy claiming a hash fails and the first keeps it."""
        first = create_indexed(store, reconciler, make_policy("first", target_selector={"app": "web"}))

        second = make_policy("second", namespace="other", target_selector={"app": "web"})
        store.create(second)
        reconciler.reconcile(second.identity)

        with pytest.raises(DuplicateHashError) as exc_info:
            reconciler.reconcile(second.identity)

        fp = selector_hash({"app": "web"})
        assert exc_info.value.owner == first
        assert index.owner_of(fp) == first
        assert index.size() == 1
        ready = ready_condition(store, second.identity)
        assert ready.status == ConditionStatus.FALSE
        assert ready.reason == "DuplicateHash"
        assert "DuplicateHash" in recorder.reasons(second.identity)
        assert store.get(second.identity).status.selector_hash == ""

    def test_duplicate_resolves_after_owner_deleted(
        self,
        store: InMemoryObjectStore,
        reconciler: Reconciler,
        index: PolicyIndex,
    ) -> None:
        """Test a blocked policy is indexed once the owner goes away."""
        first = create_indexed(store, reconciler, make_policy("first", target_selector={"app": "web"}))
        second = make_policy("second", target_selector={"app": "web"})
        store.create(second)
        reconciler.reconcile(second.identity)
        with pytest.raises(DuplicateHashError):
            reconciler.reconcile(second.identity)

        store.delete(first)
        reconciler.reconcile(first)
        result = reconciler.reconcile(second.identity)

        assert result.phase == Phase.INDEXED
        assert index.owner_of(selector_hash({"app": "web"})) == second.identity
        assert ready_condition(store, second.identity).status == ConditionStatus.TRUE

    def test_hash_computation_failure(
        self,
        store: InMemoryObjectStore,
        reconciler: Reconciler,
        index: PolicyIndex,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test an encoding failure sets HashComputationFailed."""
        policy = make_policy("web", target_selector={"app": "web"})
        store.create(policy)
        reconciler.reconcile(policy.identity)

        def broken(selection):
            raise HashComputationError("cannot encode")

        monkeypatch.setattr("dnsmesh.controller.reconciler.compute_selector_hash", broken)

        with pytest.raises(HashComputationError):
            reconciler.reconcile(policy.identity)

        assert ready_condition(store, policy.identity).reason == "HashComputationFailed"
        assert index.size() == 0

    def test_spec_hash_failure(
        self,
        store: InMemoryObjectStore,
        reconciler: Reconciler,
        index: PolicyIndex,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test a spec hash failure leaves the index untouched."""
        policy = make_policy("web", target_selector={"app": "web"})
        store.create(policy)
        reconciler.reconcile(policy.identity)

        def broken(spec):
            raise HashComputationError("cannot encode")

        monkeypatch.setattr("dnsmesh.controller.reconciler.compute_spec_hash", broken)

        with pytest.raises(HashComputationError):
            reconciler.reconcile(policy.identity)

        assert ready_condition(store, policy.identity).reason == "HashComputationFailed"
        assert index.size() == 0

    def test_finalizer_add_failure(
        self,
        flaky_store: FlakyStore,
        flaky_reconciler: Reconciler,
        index: PolicyIndex,
        recorder: EventRecorder,
    ) -> None:
        """Test a failed finalizer write is a PersistenceError."""
        policy = make_policy("web", target_selector={"app": "web"})
        flaky_store.create(policy)
        flaky_store.fail_update = True

        with pytest.raises(PersistenceError):
            flaky_reconciler.reconcile(policy.identity)

        assert not flaky_store.get(policy.identity).has_finalizer(DEFAULT_FINALIZER)
        assert recorder.reasons(policy.identity) == ["FinalizerAddFailed"]
        assert index.size() == 0

    def test_finalizer_removal_failure_keeps_finalizer(
        self,
        flaky_store: FlakyStore,
        flaky_reconciler: Reconciler,
        index: PolicyIndex,
        recorder: EventRecorder,
    ) -> None:
        """Test deletion stays pending when the finalizer cannot be cleared."""
        identity = create_indexed(flaky_store, flaky_reconciler, make_policy("web", target_selector={"app": "web"}))
        flaky_store.delete(identity)
        flaky_store.fail_update = True

        with pytest.raises(PersistenceError):
            flaky_reconciler.reconcile(identity)

        assert index.size() == 0
        assert flaky_store.get(identity).has_finalizer(DEFAULT_FINALIZER)
        assert recorder.reasons(identity)[-1] == "FinalizerRemovalFailed"

        # Retry succeeds once the store recovers
        flaky_store.fail_update = False
        assert flaky_reconciler.reconcile(identity).phase == Phase.ABSENT
        assert not flaky_store.exists(identity)

    def test_status_update_failure(
        self,
        flaky_store: FlakyStore,
        flaky_reconciler: Reconciler,
        index: PolicyIndex,
        recorder: EventRecorder,
    ) -> None:
        """Test a failed status write is reported and retried."""
        policy = make_policy("web", target_selector={"app": "web"})
        flaky_store.create(policy)
        flaky_reconciler.reconcile(policy.identity)
        flaky_store.fail_update_status = True

        with pytest.raises(PersistenceError):
            flaky_reconciler.reconcile(policy.identity)

        assert recorder.reasons(policy.identity)[-1] == "StatusUpdateFailed"
        assert flaky_store.get(policy.identity).status.selector_hash == ""
        # Index commit happens before the status write
        assert index.owner_of(selector_hash({"app": "web"})) == policy.identity

        flaky_store.fail_update_status = False
        result = flaky_reconciler.reconcile(policy.identity)
        assert result.status_updated is True
        assert flaky_store.get(policy.identity).status.selector_hash == selector_hash({"app": "web"})

    def test_fetch_failure(
        self,
        flaky_store: FlakyStore,
        flaky_reconciler: Reconciler,
    ) -> None:
        """Test a store read error surfaces as PersistenceError."""
        flaky_store.fail_get = True
        with pytest.raises(PersistenceError):
            flaky_reconciler.reconcile(PolicyIdentity("default", "web"))
