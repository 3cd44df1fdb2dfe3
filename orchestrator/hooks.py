"""
Create-time enrichment hooks.

Entity types may list hooks under `onCreate`; they run after the policy
engine allowed a Create and before the record is written, so the stored
record and its audit trail both carry the enriched values.

Hooks:
  - assignToCaller(field="owner", when=None, roles=None)
      Sets the owner field to the creating caller when it is unset, the
      caller holds one of `roles` (if given) and every `when` field of the
      proposal matches.
  - escalateOnKeyword(keyword="urgent", field="title", target="urgency", value="high")
      Sets `target` to `value` when `field` contains `keyword` (case-insensitive).
"""

from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from loguru import logger

from security.models import Caller, ProposedChange
from security.policy.predicates import CheckSpec
from security.policy.rbac import EntityType

Hook = Callable[[Caller, Dict[str, Any]], Dict[str, Any]]

HOOKS: Dict[str, CheckSpec] = {}


def _hook(name: str, fields: Iterable[str] = (), mappings: Iterable[str] = ()):
    def decorator(factory):
        HOOKS[name] = CheckSpec(name, factory, tuple(fields), tuple(mappings))
        return factory
    return decorator


@_hook("assignToCaller", fields=("field",), mappings=("when",))
def assign_to_caller(field: str = "owner", when: Optional[Mapping[str, Any]] = None,
                     roles: Optional[Iterable[str]] = None) -> Hook:
    if not isinstance(field, str) or not field:
        raise ValueError("'field' must be a non-empty field name")
    if when is not None and not isinstance(when, Mapping):
        raise ValueError("'when' must be a mapping of field -> value")
    if isinstance(roles, str):
        raise ValueError("'roles' must be a list")
    roles = frozenset(roles or ())
    when = dict(when or {})

    def apply(caller: Caller, fields: Dict[str, Any]) -> Dict[str, Any]:
        if fields.get(field) is not None:
            return fields
        if roles and not (roles & caller.roles):
            return fields
        if any(fields.get(name) != expected for name, expected in when.items()):
            return fields
        logger.info(f"Auto-assigned new record to {caller.id}")
        return {**fields, field: caller.id}
    return apply


@_hook("escalateOnKeyword", fields=("field", "target"))
def escalate_on_keyword(keyword: str = "urgent", field: str = "title", target: str = "urgency",
                        value: Any = "high") -> Hook:
    if not isinstance(keyword, str) or not keyword:
        raise ValueError("'keyword' must be a non-empty string")
    needle = keyword.lower()

    def apply(caller: Caller, fields: Dict[str, Any]) -> Dict[str, Any]:
        text = fields.get(field)
        if isinstance(text, str) and needle in text.lower():
            return {**fields, target: value}
        return fields
    return apply


def apply_create_hooks(entity_type: Optional[EntityType], caller: Caller, change: ProposedChange) -> ProposedChange:
    """Run the entity type's onCreate hooks over a proposed Create."""
    if entity_type is None or not entity_type.on_create:
        return change

    fields = dict(change.fields)
    for spec in entity_type.on_create:
        hook = HOOKS[spec.name].build(spec.args)
        fields = hook(caller, fields)
    return change.with_fields(fields)
