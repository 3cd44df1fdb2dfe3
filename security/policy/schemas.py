"""
Pydantic schemas for the declarative policy configuration.

These schemas handle:
1. Shape validation of the YAML/JSON policy document
2. camelCase keys (entityType, predicateName, ...) as written by policy authors
3. Normalisation of classification and operation names

Semantic checks that need the whole document (undeclared fields, unknown
predicate names, conflicting guards) live in `security.policy.loader`.

Example:
    entityTypes:
      - entityType: Incident
        fields:
          - {name: title, classification: public}
          - {name: owner, classification: personal}
        grants:
          - role: support
            operations: [update]
            predicateName: ownerIsCallerOrUnassigned
        guards:
          - operation: update
            conditionName: stateIs
            conditionArgs: {value: closed}
            requiredRole: admin
            message: "Can't modify a closed incident"
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from security.models import Operation
from security.policy.classification import Classification


class _ConfigModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)


class FieldConfig(_ConfigModel):
    """One declared field and its classification (default public)."""
    name: str = Field(..., min_length=1)
    classification: str = Field("public", description="public | personal | sensitive")

    @field_validator('classification')
    def validate_classification(cls, v):
        return Classification.from_string(v).value


class GrantConfig(_ConfigModel):
    role: str = Field(..., min_length=1)
    operations: List[str] = Field(..., min_length=1)
    predicate_name: Optional[str] = Field(None, alias="predicateName")
    predicate_args: Dict[str, Any] = Field(default_factory=dict, alias="predicateArgs")

    @field_validator('operations')
    def validate_operations(cls, v):
        return [Operation.from_string(op).value for op in v]


class GuardConfig(_ConfigModel):
    operation: str
    condition_name: str = Field(..., alias="conditionName", min_length=1)
    condition_args: Dict[str, Any] = Field(default_factory=dict, alias="conditionArgs")
    required_role: str = Field(..., alias="requiredRole", min_length=1)
    message: str = Field(..., min_length=1, description="Deny reason shown to the caller")

    @field_validator('operation')
    def validate_operation(cls, v):
        return Operation.from_string(v).value


class HookConfig(_ConfigModel):
    """Create-time enrichment hook reference."""
    hook_name: str = Field(..., alias="hookName", min_length=1)
    hook_args: Dict[str, Any] = Field(default_factory=dict, alias="hookArgs")


class EntityTypeConfig(_ConfigModel):
    entity_type: str = Field(..., alias="entityType", min_length=1)
    field_list: List[FieldConfig] = Field(default_factory=list, alias="fields")
    grants: List[GrantConfig] = Field(default_factory=list)
    guards: List[GuardConfig] = Field(default_factory=list)
    on_create: List[HookConfig] = Field(default_factory=list, alias="onCreate")


class PolicyDocument(_ConfigModel):
    """
    Root of a policy file.

    `roles`, when present, is the closed list of role names grants and
    guards may refer to.
    """
    roles: Optional[List[str]] = None
    entity_types: List[EntityTypeConfig] = Field(..., alias="entityTypes", min_length=1)
