"""Lookup indices over the system record set."""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Sequence

from src.engine.models import CanonicalRecord, ColumnMapping

DEFAULT_LOOKUP_FIELDS = ("transactionId", "referenceNumber")


@dataclass
class RecordIndex:
    """
    Multi-valued lookups of system records by one or more record fields.

    Each key maps to the records sharing it, in the order they were given,
    which is the order candidates are tried during matching.
    """
    keys: Dict[str, Dict[Any, List[CanonicalRecord]]] = field(default_factory=dict)
    size: int = 0

    @classmethod
    def build(
        cls,
        records: Iterable[CanonicalRecord],
        fields: Sequence[str] = DEFAULT_LOOKUP_FIELDS,
    ) -> "RecordIndex":
        attrs = {name: ColumnMapping.FIELDS[name] for name in fields}
        keys: Dict[str, Dict[Any, List[CanonicalRecord]]] = {
            name: defaultdict(list) for name in attrs
        }
        size = 0
        for record in records:
            for name, attr in attrs.items():
                keys[name][getattr(record, attr)].append(record)
            size += 1
        return cls(keys={name: dict(values) for name, values in keys.items()}, size=size)

    def candidates(self, field_name: str, value: Any) -> List[CanonicalRecord]:
        """
        Records whose ``field_name`` equals ``value``.

        Raises:
            KeyError: If the index was not built over ``field_name``.
        """
        if field_name not in self.keys:
            raise KeyError(f"Index has no lookup on {field_name!r}")
        return self.keys[field_name].get(value, [])

