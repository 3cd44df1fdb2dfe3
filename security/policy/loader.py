"""
Policy configuration loader.

Turns a declarative policy document (YAML file, dict, or the bare list of
entity types) into an immutable PolicyModel.

Validation happens here, once, at load time:
  - schema shape (pydantic)
  - predicate / condition / hook names resolve against the closed sets
  - predicate / condition arguments are accepted by their factories
  - every field an argument refers to is declared on the entity type
  - roles are declared (when the document lists roles)
  - guards only target Update/Delete
  - no duplicate or conflicting guards

Any problem raises ConfigurationError listing everything that is wrong;
a model that loads never produces configuration errors at request time.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Union

import yaml
from loguru import logger
from pydantic import ValidationError

from security.errors import ConfigurationError
from security.models import Operation
from security.policy.classification import Classification
from security.policy.predicates import CONDITIONS, PREDICATES, CheckSpec
from security.policy.rbac import (
    GUARDED_OPERATIONS, EntityType, Grant, HookSpec, PolicyModel, TransitionGuard
)
from security.policy.schemas import EntityTypeConfig, PolicyDocument

PolicySource = Union[str, Path, Mapping[str, Any], List[Any]]


def load_policy_file(path: Union[str, Path], hooks: Optional[Mapping[str, CheckSpec]] = None) -> PolicyModel:
    """
    Load and validate a YAML policy file.

    Args:
        path: Path to the YAML document
        hooks: Closed set of create-time hooks entity types may reference

    Returns:
        PolicyModel

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid
    """
    path = Path(path)
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        logger.error(f"Policy file not found: {path}")
        raise ConfigurationError([f"policy file not found: {path}"])
    except yaml.YAMLError as e:
        raise ConfigurationError([f"policy file {path} is not valid YAML: {e}"])

    model = build_policy(data, hooks=hooks)
    logger.info(f"Loaded policy from {path}: {model!r}")
    return model


def load_policy(source: PolicySource, hooks: Optional[Mapping[str, CheckSpec]] = None) -> PolicyModel:
    """Load a policy from a file path or an already parsed document."""
    if isinstance(source, (str, Path)):
        return load_policy_file(source, hooks=hooks)
    return build_policy(source, hooks=hooks)


def build_policy(data: Any, hooks: Optional[Mapping[str, CheckSpec]] = None) -> PolicyModel:
    if data is None:
        raise ConfigurationError(["policy document is empty"])
    if isinstance(data, list):
        data = {"entityTypes": data}

    try:
        document = PolicyDocument.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError([_format_validation_error(err) for err in e.errors()])

    builder = _PolicyBuilder(document, hooks or {})
    return builder.build()


def _format_validation_error(err: Mapping[str, Any]) -> str:
    location = ".".join(str(part) for part in err.get("loc", ()))
    return f"{location}: {err.get('msg')}"


def _canonical(args: Mapping[str, Any]) -> str:
    return json.dumps(dict(args or {}), sort_keys=True, default=str)


class _PolicyBuilder:
    """Collects problems across the whole document before failing."""

    def __init__(self, document: PolicyDocument, hooks: Mapping[str, CheckSpec]):
        self.document = document
        self.hooks = hooks
        self.declared_roles: Optional[Set[str]] = set(document.roles) if document.roles is not None else None
        self.problems: List[str] = []

    def build(self) -> PolicyModel:
        entity_types: List[EntityType] = []
        grants: List[Grant] = []
        guards: List[TransitionGuard] = []
        seen_types: Set[str] = set()

        for config in self.document.entity_types:
            name = config.entity_type
            if name in seen_types:
                self.problems.append(f"{name}: entity type declared more than once")
                continue
            seen_types.add(name)

            fields = self._fields(config)
            entity_types.append(EntityType(name=name, fields=fields, on_create=self._hooks(config, fields)))
            grants.extend(self._grants(config, fields))
            guards.extend(self._guards(config, fields))

        if self.problems:
            raise ConfigurationError(self.problems)

        return PolicyModel(entity_types, grants, guards, roles=self.declared_roles)

    # ==================== SECTIONS ====================

    def _fields(self, config: EntityTypeConfig) -> Dict[str, Classification]:
        fields: Dict[str, Classification] = {}
        for field in config.field_list:
            if field.name in fields:
                self.problems.append(f"{config.entity_type}.{field.name}: field declared more than once")
                continue
            fields[field.name] = Classification.from_string(field.classification)
        return fields

    def _grants(self, config: EntityTypeConfig, fields: Mapping[str, Classification]) -> List[Grant]:
        grants = []
        for index, grant in enumerate(config.grants):
            where = f"{config.entity_type}.grants[{index}]"
            self._check_role(where, grant.role)

            predicate = None
            if grant.predicate_name is not None:
                predicate = self._resolve(where, PREDICATES, "predicate", grant.predicate_name,
                                          grant.predicate_args, fields)
                if predicate is None:
                    continue
            elif grant.predicate_args:
                self.problems.append(f"{where}: predicateArgs given without predicateName")
                continue

            grants.append(Grant(
                entity_type=config.entity_type,
                role=grant.role,
                operations=frozenset(Operation(op) for op in grant.operations),
                predicate=predicate,
                predicate_name=grant.predicate_name,
                predicate_args=dict(grant.predicate_args),
            ))
        return grants

    def _guards(self, config: EntityTypeConfig, fields: Mapping[str, Classification]) -> List[TransitionGuard]:
        guards = []
        seen: Dict[Tuple[Operation, str, str], str] = {}
        for index, guard in enumerate(config.guards):
            where = f"{config.entity_type}.guards[{index}]"
            operation = Operation(guard.operation)
            if operation not in GUARDED_OPERATIONS:
                self.problems.append(f"{where}: guards only apply to update or delete, not {operation.value}")
                continue
            self._check_role(where, guard.required_role)

            key = (operation, guard.condition_name, _canonical(guard.condition_args))
            if key in seen:
                if seen[key] == guard.required_role:
                    self.problems.append(f"{where}: duplicate guard {guard.condition_name} on {operation.value}")
                else:
                    self.problems.append(
                        f"{where}: conflicts with another guard {guard.condition_name} on {operation.value} "
                        f"(requires {guard.required_role}, other requires {seen[key]})"
                    )
                continue
            seen[key] = guard.required_role

            condition = self._resolve(where, CONDITIONS, "condition", guard.condition_name,
                                      guard.condition_args, fields)
            if condition is None:
                continue

            guards.append(TransitionGuard(
                entity_type=config.entity_type,
                applies_to=operation,
                condition=condition,
                required_role=guard.required_role,
                deny_message=guard.message,
                condition_name=guard.condition_name,
                condition_args=dict(guard.condition_args),
            ))
        return guards

    def _hooks(self, config: EntityTypeConfig, fields: Mapping[str, Classification]) -> Tuple[HookSpec, ...]:
        specs = []
        for index, hook in enumerate(config.on_create):
            where = f"{config.entity_type}.onCreate[{index}]"
            if self._resolve(where, self.hooks, "hook", hook.hook_name, hook.hook_args, fields) is None:
                continue
            for role in hook.hook_args.get("roles", None) or ():
                self._check_role(where, role)
            specs.append(HookSpec(name=hook.hook_name, args=dict(hook.hook_args)))
        return tuple(specs)

    # ==================== HELPERS ====================

    def _resolve(self, where: str, table: Mapping[str, CheckSpec], kind: str, name: str,
                 args: Mapping[str, Any], fields: Mapping[str, Classification]):
        spec = table.get(name)
        if spec is None:
            self.problems.append(f"{where}: unknown {kind} '{name}' (known: {sorted(table)})")
            return None
        try:
            built = spec.build(args)
        except (TypeError, ValueError) as e:
            self.problems.append(f"{where}: invalid arguments for {kind} '{name}': {e}")
            return None
        for field_name in spec.referenced_fields(args):
            if field_name not in fields:
                self.problems.append(f"{where}: {kind} '{name}' refers to undeclared field '{field_name}'")
                built = None
        return built

    def _check_role(self, where: str, role: str) -> None:
        if self.declared_roles is not None and role not in self.declared_roles:
            self.problems.append(f"{where}: role '{role}' is not declared in roles")
