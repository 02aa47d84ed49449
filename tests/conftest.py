"""
Pytest configuration and shared fixtures for dnsmesh tests.
"""

from __future__ import annotations

import tempfile
import time
from pathlib import Path
from typing import Callable, Generator

import pytest
import yaml

from dnsmesh.audit.database import AuditDatabase
from dnsmesh.config import DEFAULT_FINALIZER
from dnsmesh.controller.events import EventRecorder
from dnsmesh.controller.reconciler import Reconciler
from dnsmesh.controller.store import InMemoryObjectStore
from dnsmesh.policy.index import PolicyIndex
from dnsmesh.policy.models import DnsPolicy, ObjectMeta, PolicySpec


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_config(temp_dir: Path) -> Path:
    """Create a sample configuration file."""
    config_path = temp_dir / "dnsmesh.yaml"
    config_data = {
        "daemon": {
            "log_level": "debug",
        },
        "controller": {
            "workers": 2,
            "backoff_base": 0.01,
            "backoff_max": 1.0,
        },
        "manifests": {
            "path": str(temp_dir / "policies"),
            "hot_reload": True,
            "poll_interval": 0.5,
        },
        "database": {
            "path": str(temp_dir / "events.db"),
        },
        "api": {
            "host": "127.0.0.1",
            "port": 18080,
        },
    }
    with open(config_path, "w") as f:
        yaml.dump(config_data, f)
    return config_path


def policy_document(
    name: str,
    namespace: str = "default",
    target_selector: dict | None = None,
    subject: dict | None = None,
    block_list: list | None = None,
) -> dict:
    """Build a DnsPolicy manifest document."""
    spec: dict = {}
    if target_selector is not None:
        spec["targetSelector"] = target_selector
    if subject is not None:
        spec["subject"] = subject
    if block_list is not None:
        spec["blockList"] = block_list
    return {
        "apiVersion": "dns.dnspolicies.io/v1alpha1",
        "kind": "DnsPolicy",
        "metadata": {"name": name, "namespace": namespace},
        "spec": spec,
    }


@pytest.fixture
def sample_manifests(temp_dir: Path) -> Path:
    """Create a directory with two manifest files."""
    manifest_dir = temp_dir / "policies"
    manifest_dir.mkdir()

    with open(manifest_dir / "web.yaml", "w") as f:
        yaml.safe_dump_all(
            [
                policy_document(
                    "web",
                    target_selector={"app": "web", "tier": "frontend"},
                    block_list=["*.ads.example", "tracker.example.com"],
                ),
                policy_document(
                    "batch",
                    namespace="jobs",
                    subject={"team": "data"},
                    block_list=["*.social.example"],
                ),
            ],
            f,
        )

    with open(manifest_dir / "api.yml", "w") as f:
        yaml.safe_dump(
            policy_document(
                "api",
                target_selector={"app": "api"},
                block_list=["malware.example"],
            ),
            f,
        )

    # Non-manifest files are ignored
    (manifest_dir / "README.txt").write_text("not a manifest")
    return manifest_dir


def make_policy(
    name: str = "web",
    namespace: str = "default",
    target_selector: dict[str, str] | None = None,
    subject: dict[str, str] | None = None,
    block_list: list[str] | None = None,
    dry_run: bool = False,
) -> DnsPolicy:
    """Build a DnsPolicy object."""
    return DnsPolicy(
        metadata=ObjectMeta(name=name, namespace=namespace),
        spec=PolicySpec(
            target_selector=dict(target_selector or {}),
            subject=dict(subject or {}),
            block_list=list(block_list or []),
            dry_run=dry_run,
        ),
    )


@pytest.fixture
def store() -> InMemoryObjectStore:
    """Empty object store."""
    return InMemoryObjectStore()


@pytest.fixture
def index() -> PolicyIndex:
    """Empty policy index."""
    return PolicyIndex()


@pytest.fixture
def recorder() -> EventRecorder:
    """In-memory event recorder."""
    return EventRecorder()


@pytest.fixture
def reconciler(
    store: InMemoryObjectStore,
    index: PolicyIndex,
    recorder: EventRecorder,
) -> Reconciler:
    """Reconciler wired to the store, index and recorder fixtures."""
    return Reconciler(store=store, index=index, recorder=recorder, finalizer=DEFAULT_FINALIZER)


@pytest.fixture
def test_db(temp_dir: Path) -> Generator[AuditDatabase, None, None]:
    """Audit database in a temporary directory."""
    db = AuditDatabase(temp_dir / "events.db")
    yield db
    db.close()


def wait_for(condition: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll until condition() is true or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(interval)
    return condition()
