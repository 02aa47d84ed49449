"""
Pydantic schemas for the policy query API.

Field names are snake_case in Python and camelCase on the wire, matching
the DnsPolicy wire shape. Empty fields are left unset so that responses
serialized with exclude_none omit them.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for camelCase wire models."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Policy Schemas
# ============================================================================


class ConditionSchema(WireModel):
    """Status condition."""

    type: str
    status: str
    reason: str
    message: str | None = None
    observed_generation: int | None = None
    last_transition_time: str | None = None


class ObjectMetaSchema(WireModel):
    """Object metadata."""

    name: str
    namespace: str
    generation: int | None = None
    resource_version: str | None = None
    creation_timestamp: str | None = None
    deletion_timestamp: str | None = None
    finalizers: list[str] | None = None
    labels: dict[str, str] | None = None


class PolicySpecSchema(WireModel):
    """Desired state of a policy."""

    target_selector: dict[str, str] | None = None
    subject: dict[str, str] | None = None
    block_list: list[str] | None = None
    dry_run: bool | None = None


class PolicyStatusSchema(WireModel):
    """Observed state of a policy."""

    selector_hash: str | None = None
    spec_hash: str | None = None
    observed_generation: int | None = None
    conditions: list[ConditionSchema] | None = None


class PolicyResponse(WireModel):
    """A complete DnsPolicy object as served to enforcement agents."""

    api_version: str
    kind: str
    metadata: ObjectMetaSchema
    spec: PolicySpecSchema = Field(default_factory=PolicySpecSchema)
    status: PolicyStatusSchema | None = None

    @classmethod
    def from_policy_dict(cls, data: dict[str, Any]) -> PolicyResponse:
        """Build from DnsPolicy.to_dict() output."""
        return cls.model_validate(data)


# ============================================================================
# Health and Error Schemas
# ============================================================================


class HealthCheck(BaseModel):
    """Liveness response."""

    status: str = "ok"
    indexed_policies: int = Field(..., ge=0)


class ErrorResponse(BaseModel):
    """Error response."""

    detail: str
