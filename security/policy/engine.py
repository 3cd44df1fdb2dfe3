"""
Policy evaluation engine.

Evaluation order for one request (caller, operation, entity type,
instance, proposed change):

  1. Collect grants for (entity type, operation) held by any caller role.
     None -> Deny("no role grants this operation").
  2. A grant without predicate is satisfied outright; otherwise its
     predicate is evaluated against (caller, instance).
  3. Any satisfied grant provisionally allows the operation. Roles are a
     union: a restrictive grant never weakens a permissive one.
  4. Every guard scoped to (entity type, operation) whose condition holds
     vetoes the request unless the caller holds the guard's required role.
  5. Nothing vetoed -> Allow.
  6. No grant satisfied -> Deny("instance-level predicate not satisfied").

Guards only ever turn an Allow into a Deny. A predicate or condition that
raises is converted into Deny("policy evaluation error"); the engine never
lets an exception escape.

The engine holds no per-request state and performs no I/O beyond logging
evaluation failures.
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Iterable, Optional

from loguru import logger

from security.models import Caller, EntityInstance, Operation, ProposedChange
from security.policy.rbac import Grant, PolicyModel

NO_GRANT = "no role grants this operation"
PREDICATE_NOT_SATISFIED = "instance-level predicate not satisfied"
EVALUATION_ERROR = "policy evaluation error"


class Outcome(Enum):
    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True)
class Decision:
    """
    Result of one evaluation.

    Attributes:
        outcome: Allow or Deny
        reason: Deny reason, safe to return to the caller
        required_roles: Roles that would have been needed (Deny only)
        error: True when the Deny stems from a failing predicate/condition
        rule: Grant or guard that decided the outcome, for diagnostics
    """
    outcome: Outcome
    reason: Optional[str] = None
    required_roles: FrozenSet[str] = frozenset()
    error: bool = False
    rule: Optional[str] = None

    @classmethod
    def allow(cls, rule: Optional[str] = None) -> 'Decision':
        return cls(Outcome.ALLOW, rule=rule)

    @classmethod
    def deny(cls, reason: str, required_roles: Iterable[str] = (), error: bool = False,
             rule: Optional[str] = None) -> 'Decision':
        return cls(Outcome.DENY, reason=reason, required_roles=frozenset(required_roles),
                   error=error, rule=rule)

    @property
    def allowed(self) -> bool:
        return self.outcome is Outcome.ALLOW


class PolicyEngine:
    """Evaluates requests against an immutable PolicyModel."""

    def __init__(self, model: PolicyModel):
        self.model = model

    def evaluate(
        self,
        caller: Caller,
        operation: Operation,
        entity_type: str,
        instance: EntityInstance,
        proposed_change: Optional[ProposedChange] = None,
    ) -> Decision:
        """
        Decide whether `caller` may perform `operation` on `instance`.

        Args:
            caller: Verified caller identity and roles
            operation: Requested operation
            entity_type: Entity type name
            instance: Current snapshot (prospective instance for Create)
            proposed_change: Requested field changes, if any

        Returns:
            Decision (never raises)
        """
        change = proposed_change or ProposedChange.none(operation)
        granting_roles = self.model.roles_granting(entity_type, operation)

        grants = [g for g in self.model.grants_for(entity_type, operation) if g.role in caller.roles]
        if not grants:
            return Decision.deny(NO_GRANT, required_roles=granting_roles)

        try:
            satisfied = self._first_satisfied(caller, instance, grants)
        except Exception as e:
            return self._evaluation_error(e, caller, operation, entity_type, instance, "predicate")

        if satisfied is None:
            return Decision.deny(PREDICATE_NOT_SATISFIED, required_roles=granting_roles,
                                 rule=", ".join(g.describe() for g in grants))

        for guard in self.model.guards_for(entity_type, operation):
            try:
                fired = bool(guard.condition(instance, change))
            except Exception as e:
                return self._evaluation_error(e, caller, operation, entity_type, instance, "guard condition")
            if fired and not caller.has_role(guard.required_role):
                return Decision.deny(guard.deny_message, required_roles={guard.required_role},
                                     rule=guard.describe())

        return Decision.allow(rule=satisfied.describe())

    @staticmethod
    def _first_satisfied(caller: Caller, instance: EntityInstance, grants: Iterable[Grant]) -> Optional[Grant]:
        grants = list(grants)
        for grant in grants:
            if grant.unconditional:
                return grant
        for grant in grants:
            if grant.predicate(caller, instance):
                return grant
        return None

    @staticmethod
    def _evaluation_error(error: Exception, caller: Caller, operation: Operation, entity_type: str,
                          instance: EntityInstance, what: str) -> Decision:
        logger.warning(
            f"Policy {what} failed for {caller.id} {operation.value} {entity_type}/{instance.id}: "
            f"{type(error).__name__}: {error}"
        )
        return Decision.deny(EVALUATION_ERROR, error=True, rule=what)
