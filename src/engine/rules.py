"""
Matching rule configuration.

Rules are data: the engine reads which rules are enabled and which tolerance
applies from a ``MatchingRules`` object, so tolerances can be changed without
touching the matching logic.

Example YAML::

    version: 2
    exact_match:
      fields: [referenceNumber, amount]
    partial_match:
      fields: [transactionId]
      amount_tolerance: 0.05
    duplicate:
      enabled: false
"""

import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, Tuple

import yaml

from src.engine.models import ColumnMapping

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = Decimal("0.02")


def _to_tolerance(value: Any) -> Decimal:
    tolerance = Decimal(str(value))
    if not tolerance.is_finite() or tolerance < 0 or tolerance > 1:
        raise ValueError(f"Amount tolerance must be between 0 and 1, got {value!r}")
    return tolerance


def _check_fields(rule: str, fields: Iterable[str], allow_empty: bool = False) -> Tuple[str, ...]:
    if isinstance(fields, str):
        fields = (fields,)
    fields = tuple(fields or ())
    unknown = [f for f in fields if f not in ColumnMapping.FIELDS]
    if unknown:
        raise ValueError(f"Unknown field(s) in {rule} rule: {', '.join(map(str, unknown))}")
    if not fields and not allow_empty:
        raise ValueError(f"The {rule} rule needs at least one field")
    return fields


@dataclass(frozen=True)
class DuplicateRule:
    enabled: bool = True
    description: str = "Same Transaction ID occurs more than once in uploaded data"
    fields: Tuple[str, ...] = ("transactionId",)

    def __post_init__(self):
        object.__setattr__(self, "fields", _check_fields("duplicate", self.fields))


@dataclass(frozen=True)
class ExactMatchRule:
    """All fields must be equal. Candidates are looked up on the first non-amount field."""
    enabled: bool = True
    description: str = "Transaction ID and Amount must match exactly"
    fields: Tuple[str, ...] = ("transactionId", "amount")

    def __post_init__(self):
        fields = _check_fields("exact_match", self.fields)
        if all(f == "amount" for f in fields):
            raise ValueError(
                "The exact_match rule needs a field other than amount to look up candidates"
            )
        object.__setattr__(self, "fields", fields)

    @property
    def lookup_field(self) -> str:
        return next(f for f in self.fields if f != "amount")


@dataclass(frozen=True)
class PartialMatchRule:
    enabled: bool = True
    description: str = "Reference Number matches with amount variance within tolerance"
    fields: Tuple[str, ...] = ("referenceNumber",)
    amount_tolerance: Decimal = DEFAULT_TOLERANCE
    # Fields reported in mismatched_fields, in this order
    compared_fields: Tuple[str, ...] = ("transactionId", "amount", "date")

    def __post_init__(self):
        fields = _check_fields("partial_match", self.fields)
        if "amount" in fields:
            raise ValueError(
                "The partial_match rule compares amount by tolerance; remove it from fields"
            )
        object.__setattr__(self, "fields", fields)
        object.__setattr__(
            self, "compared_fields", _check_fields("partial_match", self.compared_fields, allow_empty=True)
        )
        object.__setattr__(self, "amount_tolerance", _to_tolerance(self.amount_tolerance))

    @property
    def lookup_field(self) -> str:
        return self.fields[0]


@dataclass(frozen=True)
class MatchingRules:
    """Versioned rule cascade: duplicate, then exact, then partial."""
    version: int = 1
    duplicate: DuplicateRule = field(default_factory=DuplicateRule)
    exact_match: ExactMatchRule = field(default_factory=ExactMatchRule)
    partial_match: PartialMatchRule = field(default_factory=PartialMatchRule)

    @property
    def tolerance(self) -> Decimal:
        return self.partial_match.amount_tolerance

    def with_tolerance(self, tolerance: Any) -> "MatchingRules":
        """Return a copy with a different partial-match amount tolerance."""
        return replace(
            self,
            partial_match=replace(self.partial_match, amount_tolerance=_to_tolerance(tolerance)),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MatchingRules":
        duplicate = data.get("duplicate") or {}
        exact = data.get("exact_match") or {}
        partial = data.get("partial_match") or {}

        def _fields(section: Dict[str, Any], default: Tuple[str, ...]) -> Tuple[str, ...]:
            return section.get("fields", default)

        return cls(
            version=int(data.get("version", 1)),
            duplicate=DuplicateRule(
                enabled=bool(duplicate.get("enabled", True)),
                description=duplicate.get("description", DuplicateRule.description),
                fields=_fields(duplicate, DuplicateRule.fields),
            ),
            exact_match=ExactMatchRule(
                enabled=bool(exact.get("enabled", True)),
                description=exact.get("description", ExactMatchRule.description),
                fields=_fields(exact, ExactMatchRule.fields),
            ),
            partial_match=PartialMatchRule(
                enabled=bool(partial.get("enabled", True)),
                description=partial.get("description", PartialMatchRule.description),
                fields=_fields(partial, PartialMatchRule.fields),
                amount_tolerance=partial.get("amount_tolerance", DEFAULT_TOLERANCE),
                compared_fields=partial.get("compared_fields", PartialMatchRule.compared_fields),
            ),
        )


def load_rules(path: str | Path | None = None) -> MatchingRules:
    """
    Load matching rules from a YAML file.

    ``None`` yields the default rules. So does a missing file, with a warning.

    Raises:
        ValueError: If a rule names an unknown field or the tolerance is out of range.
    """
    if path is None:
        return MatchingRules()
    path = Path(path)
    if not path.exists():
        logger.warning("Rules file %s not found, using default matching rules", path)
        return MatchingRules()
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return MatchingRules.from_dict(data)
