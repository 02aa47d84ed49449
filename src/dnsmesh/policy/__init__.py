"""
Policy layer.

DnsPolicy data model, deterministic fingerprinting, manifest parsing and
the concurrent lookup index served to enforcement agents.
"""

from dnsmesh.policy.fingerprint import (
    PolicyFingerprint,
    canonical_json,
    fingerprint_policy,
    labels_from_pairs,
    selector_hash,
    spec_hash,
)
from dnsmesh.policy.index import PolicyIndex, ReadWriteLock
from dnsmesh.policy.models import (
    Condition,
    ConditionStatus,
    DnsPolicy,
    ObjectMeta,
    PolicyIdentity,
    PolicySpec,
    PolicyStatus,
    find_condition,
    set_condition,
)
from dnsmesh.policy.parser import (
    PolicyParseError,
    load_manifests,
    parse_manifests,
    parse_policy,
    validate_manifests,
    validate_policy,
)

__all__ = [
    # Fingerprinting
    "PolicyFingerprint",
    "canonical_json",
    "fingerprint_policy",
    "labels_from_pairs",
    "selector_hash",
    "spec_hash",
    # Index
    "PolicyIndex",
    "ReadWriteLock",
    # Models
    "Condition",
    "ConditionStatus",
    "DnsPolicy",
    "ObjectMeta",
    "PolicyIdentity",
    "PolicySpec",
    "PolicyStatus",
    "find_condition",
    "set_condition",
    # Parser
    "PolicyParseError",
    "load_manifests",
    "parse_manifests",
    "parse_policy",
    "validate_manifests",
    "validate_policy",
]
