"""
Closed set of named predicates and guard conditions.

Configuration refers to these by name only (`predicateName` /
`conditionName` plus keyword arguments); nothing in a policy file is ever
evaluated as code.

Grant predicates: (caller, instance) -> bool
  - ownerIsCaller(field="owner")
  - ownerIsCallerOrUnassigned(field="owner")
  - fieldEquals(field, value)
  - fieldIn(field, values)
  - stateIs(value, field="state")
  - stateNotIn(values, field="state")

Guard conditions: (instance, change) -> bool
  - always()
  - stateIs(value, field="state", on="current")
  - fieldEquals(field, value, on="current")
  - fieldIn(field, values, on="current")
  - transitionsTo(field, value)
  - transitionsToWhere(field, value, where, on="proposed")

`on` selects the state a condition looks at: "current" (the stored
snapshot), "proposed" (snapshot with the change applied) or "either".

All functions are pure: no I/O, no clock.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Tuple

from security.models import Caller, EntityInstance, ProposedChange

Predicate = Callable[[Caller, EntityInstance], bool]
Condition = Callable[[EntityInstance, ProposedChange], bool]

STATES = ("current", "proposed", "either")


@dataclass(frozen=True)
class CheckSpec:
    """A registered factory plus the names of its arguments that denote fields."""
    name: str
    factory: Callable[..., Callable]
    field_args: Tuple[str, ...] = ()
    mapping_args: Tuple[str, ...] = ()

    def build(self, args: Mapping[str, Any]) -> Callable:
        return self.factory(**dict(args or {}))

    def referenced_fields(self, args: Mapping[str, Any]) -> List[str]:
        """Field names an argument set refers to, including defaults."""
        args = dict(args or {})
        names: List[str] = []
        defaults = _defaults(self.factory)
        for arg in self.field_args:
            value = args.get(arg, defaults.get(arg))
            if isinstance(value, str):
                names.append(value)
        for arg in self.mapping_args:
            value = args.get(arg) or {}
            if isinstance(value, Mapping):
                names.extend(str(k) for k in value.keys())
        return names


def _defaults(func: Callable) -> Dict[str, Any]:
    code = func.__code__
    defaults = func.__defaults__ or ()
    names = code.co_varnames[:code.co_argcount]
    return dict(zip(names[len(names) - len(defaults):], defaults))


PREDICATES: Dict[str, CheckSpec] = {}
CONDITIONS: Dict[str, CheckSpec] = {}


def _register(table: Dict[str, CheckSpec], name: str, fields: Iterable[str] = (), mappings: Iterable[str] = ()):
    def decorator(factory):
        table[name] = CheckSpec(name, factory, tuple(fields), tuple(mappings))
        return factory
    return decorator


def _require_field(value: Any, arg: str = "field") -> str:
    if not isinstance(value, str) or not value:
        raise ValueError(f"'{arg}' must be a non-empty field name")
    return value


def _require_list(values: Any, arg: str = "values") -> tuple:
    if isinstance(values, (str, bytes)) or not isinstance(values, Iterable):
        raise ValueError(f"'{arg}' must be a list")
    return tuple(values)


def _require_state(on: str) -> str:
    if on not in STATES:
        raise ValueError(f"'on' must be one of {list(STATES)}, got {on!r}")
    return on


def _states(instance: EntityInstance, change: ProposedChange, on: str) -> List[EntityInstance]:
    if on == "current":
        return [instance]
    proposed = instance.merged(change.fields)
    if on == "proposed":
        return [proposed]
    return [instance, proposed]


# ==================== GRANT PREDICATES ====================

@_register(PREDICATES, "ownerIsCaller", fields=("field",))
def owner_is_caller(field: str = "owner") -> Predicate:
    _require_field(field)

    def check(caller: Caller, instance: EntityInstance) -> bool:
        return instance.get(field) == caller.id
    return check


@_register(PREDICATES, "ownerIsCallerOrUnassigned", fields=("field",))
def owner_is_caller_or_unassigned(field: str = "owner") -> Predicate:
    _require_field(field)

    def check(caller: Caller, instance: EntityInstance) -> bool:
        owner = instance.get(field)
        return owner is None or owner == caller.id
    return check


@_register(PREDICATES, "fieldEquals", fields=("field",))
def field_equals(field: str, value: Any) -> Predicate:
    _require_field(field)

    def check(caller: Caller, instance: EntityInstance) -> bool:
        return instance.get(field) == value
    return check


@_register(PREDICATES, "fieldIn", fields=("field",))
def field_in(field: str, values: Any) -> Predicate:
    _require_field(field)
    allowed = _require_list(values)

    def check(caller: Caller, instance: EntityInstance) -> bool:
        return instance.get(field) in allowed
    return check


@_register(PREDICATES, "stateIs", fields=("field",))
def state_is(value: Any, field: str = "state") -> Predicate:
    return field_equals(field, value)


@_register(PREDICATES, "stateNotIn", fields=("field",))
def state_not_in(values: Any, field: str = "state") -> Predicate:
    _require_field(field)
    excluded = _require_list(values)

    def check(caller: Caller, instance: EntityInstance) -> bool:
        return instance.get(field) not in excluded
    return check


# ==================== GUARD CONDITIONS ====================

@_register(CONDITIONS, "always")
def always() -> Condition:
    def check(instance: EntityInstance, change: ProposedChange) -> bool:
        return True
    return check


@_register(CONDITIONS, "fieldEquals", fields=("field",))
def field_equals_on(field: str, value: Any, on: str = "current") -> Condition:
    _require_field(field)
    _require_state(on)

    def check(instance: EntityInstance, change: ProposedChange) -> bool:
        return any(state.get(field) == value for state in _states(instance, change, on))
    return check


@_register(CONDITIONS, "stateIs", fields=("field",))
def state_is_on(value: Any, field: str = "state", on: str = "current") -> Condition:
    return field_equals_on(field, value, on)


@_register(CONDITIONS, "fieldIn", fields=("field",))
def field_in_on(field: str, values: Any, on: str = "current") -> Condition:
    _require_field(field)
    _require_state(on)
    allowed = _require_list(values)

    def check(instance: EntityInstance, change: ProposedChange) -> bool:
        return any(state.get(field) in allowed for state in _states(instance, change, on))
    return check


@_register(CONDITIONS, "transitionsTo", fields=("field",))
def transitions_to(field: str, value: Any) -> Condition:
    _require_field(field)

    def check(instance: EntityInstance, change: ProposedChange) -> bool:
        return change.fields.get(field, instance.get(field)) == value and instance.get(field) != value
    return check


@_register(CONDITIONS, "transitionsToWhere", fields=("field",), mappings=("where",))
def transitions_to_where(field: str, value: Any, where: Mapping[str, Any], on: str = "proposed") -> Condition:
    if not isinstance(where, Mapping) or not where:
        raise ValueError("'where' must be a non-empty mapping of field -> value")
    _require_state(on)
    transition = transitions_to(field, value)
    where = dict(where)

    def check(instance: EntityInstance, change: ProposedChange) -> bool:
        if not transition(instance, change):
            return False
        return any(
            all(state.get(name) == expected for name, expected in where.items())
            for state in _states(instance, change, on)
        )
    return check
