"""
Policy Fingerprinting.

Generates deterministic fingerprints for policy content. The selector
hash is the lookup key enforcement agents use: an agent hashes its own
workload labels with the same algorithm and queries the index by the
result. The spec hash lets agents detect that a policy body changed.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Mapping

from dnsmesh.errors import HashComputationError
from dnsmesh.policy.models import PolicySpec


@dataclass(frozen=True)
class PolicyFingerprint:
    """Selector and spec hashes computed together."""

    selector_hash: str
    spec_hash: str

    def to_dict(self) -> dict[str, str]:
        """Convert to dictionary for serialization."""
        return {
            "selectorHash": self.selector_hash,
            "specHash": self.spec_hash,
        }


def canonical_json(value: Any) -> bytes:
    """
    Encode a value as canonical JSON.

    Keys are sorted, separators are compact and non-ASCII text is kept
    verbatim, so equal content always yields identical bytes.

    Raises:
        HashComputationError: If the value cannot be encoded
    """
    try:
        text = json.dumps(
            value,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except (TypeError, ValueError) as e:
        raise HashComputationError(f"Failed to encode policy content: {e}") from e
    return text.encode("utf-8")


def _digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _sorted_mapping(mapping: Mapping[str, str] | None) -> dict[str, str]:
    if not mapping:
        return {}
    return {key: mapping[key] for key in sorted(mapping)}


def selector_hash(selection: Mapping[str, str] | None) -> str:
    """
    Compute the fingerprint of a selection mapping.

    Args:
        selection: Label selector or subject mapping

    Returns:
        Lowercase hex SHA-256 digest, or "" when the mapping is empty
    """
    if not selection:
        return ""
    return _digest(canonical_json(_sorted_mapping(selection)))


def spec_hash(spec: PolicySpec) -> str:
    """
    Compute the fingerprint of a whole policy body.

    The block list is sorted first, so reordering entries does not
    change the result.

    Args:
        spec: Policy spec to fingerprint

    Returns:
        Lowercase hex SHA-256 digest
    """
    normalized = {
        "targetSelector": _sorted_mapping(spec.target_selector),
        "subject": _sorted_mapping(spec.subject),
        "blockList": sorted(spec.block_list),
    }
    return _digest(canonical_json(normalized))


def fingerprint_policy(spec: PolicySpec) -> PolicyFingerprint:
    """
    Compute both fingerprints for a policy spec.

    The selector hash comes from the label selector when present,
    otherwise from the subject mapping.
    """
    return PolicyFingerprint(
        selector_hash=selector_hash(spec.selection_key()),
        spec_hash=spec_hash(spec),
    )


def labels_from_pairs(pairs: list[str]) -> dict[str, str]:
    """
    Parse 'key=value' strings into a mapping.

    Raises:
        ValueError: If a pair has no '=' or an empty key
    """
    labels: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid label '{pair}', expected key=value")
        labels[key.strip()] = value.strip()
    return labels
