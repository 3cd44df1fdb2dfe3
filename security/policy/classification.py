"""
Field classification registry.

Classifications:
  - Public: no audit obligation
  - Personal: changes audited in clear text
  - Sensitive: reads and changes audited, values always masked

Unknown (entity type, field) pairs classify as Public. This only affects
auditing; access decisions never fall back to anything permissive.

Classes:
  - Classification: Sensitivity tag
  - ClassificationRegistry: Immutable (entity type, field) -> Classification lookup
"""

from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Tuple


class Classification(Enum):
    """Field sensitivity tags."""
    PUBLIC = "public"
    PERSONAL = "personal"
    SENSITIVE = "sensitive"

    @classmethod
    def from_string(cls, value: str) -> 'Classification':
        """Parse a classification name case-insensitively."""
        try:
            return cls(value.strip().lower())
        except (ValueError, AttributeError):
            raise ValueError(f"Unknown classification: {value!r}")

    @property
    def is_classified(self) -> bool:
        return self is not Classification.PUBLIC


class ClassificationRegistry:
    """
    Static mapping from (entity type, field name) to Classification.

    Built once from configuration and read-only afterwards, so it can be
    shared across concurrent requests without locking.
    """

    def __init__(self, entries: Mapping[Tuple[str, str], Classification] = None):
        self._entries: Mapping[Tuple[str, str], Classification] = MappingProxyType(dict(entries or {}))

    @classmethod
    def from_fields(cls, fields_by_type: Mapping[str, Mapping[str, Classification]]) -> 'ClassificationRegistry':
        entries: Dict[Tuple[str, str], Classification] = {}
        for entity_type, fields in fields_by_type.items():
            for name, classification in fields.items():
                entries[(entity_type, name)] = classification
        return cls(entries)

    def classify(self, entity_type: str, field_name: str) -> Classification:
        return self._entries.get((entity_type, field_name), Classification.PUBLIC)

    def partition(self, entity_type: str, field_names: Iterable[str]) -> Dict[Classification, list]:
        """
        Group field names by classification, preserving input order.

        Args:
            entity_type: Entity type the fields belong to
            field_names: Field names to classify

        Returns:
            Dict with one (possibly empty) list per Classification
        """
        groups: Dict[Classification, list] = {c: [] for c in Classification}
        for name in field_names:
            groups[self.classify(entity_type, name)].append(name)
        return groups

    def classified_fields(self, entity_type: str) -> Dict[str, Classification]:
        """All non-public fields declared for an entity type."""
        return {
            name: classification
            for (etype, name), classification in self._entries.items()
            if etype == entity_type and classification.is_classified
        }

    def __len__(self) -> int:
        return len(self._entries)
