"""
Policy manifest parser.

Parses YAML manifests (one or more documents per file) into DnsPolicy
objects.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from dnsmesh.errors import DnsMeshError
from dnsmesh.policy.fingerprint import selector_hash
from dnsmesh.policy.models import API_VERSION, KIND, DnsPolicy


MANIFEST_SUFFIXES = (".yaml", ".yml")


class PolicyParseError(DnsMeshError):
    """Error parsing policy manifest."""

    pass


def load_manifests(path: str | Path) -> list[DnsPolicy]:
    """
    Load policies from a YAML file or a directory of YAML files.

    Args:
        path: Manifest file or directory

    Returns:
        Parsed policies, in file then document order

    Raises:
        FileNotFoundError: If path doesn't exist
        PolicyParseError: If a manifest is invalid
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Manifest path not found: {path}")

    if path.is_dir():
        files = sorted(
            p for p in path.iterdir()
            if p.is_file() and p.suffix in MANIFEST_SUFFIXES
        )
    else:
        files = [path]

    policies: list[DnsPolicy] = []
    for file in files:
        with open(file) as f:
            text = f.read()
        try:
            policies.extend(parse_manifests(text))
        except PolicyParseError as e:
            raise PolicyParseError(f"{file}: {e}") from e

    return policies


def parse_manifests(text: str) -> list[DnsPolicy]:
    """
    Parse every DnsPolicy document in a YAML string.

    Empty documents are skipped.
    """
    try:
        documents = list(yaml.safe_load_all(text))
    except yaml.YAMLError as e:
        raise PolicyParseError(f"Invalid YAML: {e}") from e

    policies = []
    for i, document in enumerate(documents):
        if document is None:
            continue
        try:
            policies.append(parse_policy(document))
        except Exception as e:
            raise PolicyParseError(f"Error parsing document {i}: {e}") from e
    return policies


def parse_policy(data: dict[str, Any]) -> DnsPolicy:
    """
    Parse a single policy document.

    Args:
        data: Dictionary with manifest data

    Returns:
        DnsPolicy object
    """
    if not isinstance(data, dict):
        raise PolicyParseError("Manifest must be a dictionary")

    kind = data.get("kind")
    if kind != KIND:
        raise PolicyParseError(f"Unsupported kind: {kind}")

    api_version = data.get("apiVersion")
    if api_version is not None and api_version != API_VERSION:
        raise PolicyParseError(f"Unsupported apiVersion: {api_version}")

    spec = data.get("spec") or {}
    if not isinstance(spec, dict):
        raise PolicyParseError("'spec' must be a dictionary")
    for key in ("targetSelector", "subject"):
        if key in spec and spec[key] is not None and not isinstance(spec[key], dict):
            raise PolicyParseError(f"'spec.{key}' must be a mapping")
    if "blockList" in spec and spec["blockList"] is not None and not isinstance(spec["blockList"], list):
        raise PolicyParseError("'spec.blockList' must be a list")

    try:
        return DnsPolicy.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise PolicyParseError(str(e)) from e


def validate_policy(policy: DnsPolicy) -> list[str]:
    """
    Validate a policy and return list of errors/warnings.

    Args:
        policy: Policy to validate

    Returns:
        List of error/warning messages
    """
    errors: list[str] = []
    spec = policy.spec

    if not spec.has_selection_key():
        errors.append(f"{policy.identity}: targetSelector or subject cannot be empty")

    if spec.target_selector and spec.subject:
        errors.append(
            f"Warning: {policy.identity}: both targetSelector and subject are set; "
            "targetSelector takes precedence"
        )

    if not spec.block_list:
        errors.append(f"Warning: {policy.identity}: blockList is empty")

    seen: set[str] = set()
    for pattern in spec.block_list:
        if not pattern.strip():
            errors.append(f"{policy.identity}: blockList contains an empty pattern")
        elif pattern in seen:
            errors.append(f"Warning: {policy.identity}: duplicate blockList entry '{pattern}'")
        seen.add(pattern)

    return errors


def validate_manifests(policies: list[DnsPolicy]) -> list[str]:
    """
    Validate a set of manifests, including cross-policy selector clashes.
    """
    errors: list[str] = []
    owners: dict[str, str] = {}
    identities: set[str] = set()

    for policy in policies:
        errors.extend(validate_policy(policy))

        identity = str(policy.identity)
        if identity in identities:
            errors.append(f"{identity}: declared more than once")
        identities.add(identity)

        fingerprint = selector_hash(policy.spec.selection_key())
        if not fingerprint:
            continue
        if fingerprint in owners and owners[fingerprint] != identity:
            errors.append(
                f"{identity}: selector hash {fingerprint} duplicates {owners[fingerprint]}"
            )
        owners.setdefault(fingerprint, identity)

    return errors
