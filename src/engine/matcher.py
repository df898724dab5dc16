"""Core reconciliation matching engine."""

import logging
from collections import Counter
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Tuple

from src.engine.index import RecordIndex
from src.engine.models import (
    CanonicalRecord,
    ColumnMapping,
    MismatchedField,
    OutcomeStatus,
    ReconciliationOutcome,
)
from src.engine.rules import MatchingRules

logger = logging.getLogger(__name__)

# Boundary field name -> CanonicalRecord attribute
FIELD_ATTRS: Dict[str, str] = ColumnMapping.FIELDS


class ReconciliationEngine:
    """
    Classifies uploaded records against the system record set.

    Rule cascade, first applicable rule wins (default fields in brackets):
    1. Duplicate: duplicate key [transaction id] occurs more than once within the uploaded job
    2. Exact Match: every exact field equal [transaction id, amount]
    3. Partial Match: every partial field equal [reference number], amount within
       tolerance of the system amount
    4. Not Matched: none of the above

    Candidates are tried in index order and the first qualifying one is linked.
    """

    def __init__(self, rules: Optional[MatchingRules] = None):
        """
        Initialize the reconciliation engine.

        Args:
            rules: Rule configuration. Defaults to all rules enabled with 2% tolerance.
        """
        self.rules = rules or MatchingRules()

    @property
    def lookup_fields(self) -> Tuple[str, ...]:
        """Fields the system record index must be built over for the enabled rules."""
        fields: List[str] = []
        for rule in (self.rules.exact_match, self.rules.partial_match):
            if rule.enabled and rule.lookup_field not in fields:
                fields.append(rule.lookup_field)
        return tuple(fields)

    @staticmethod
    def _same(fields, uploaded: CanonicalRecord, candidate: CanonicalRecord) -> bool:
        return all(
            getattr(uploaded, FIELD_ATTRS[name]) == getattr(candidate, FIELD_ATTRS[name])
            for name in fields
        )

    def match(
        self,
        job_id: str,
        uploaded_records: List[CanonicalRecord],
        index: RecordIndex,
    ) -> List[ReconciliationOutcome]:
        """
        Produce one outcome per uploaded record, in input order.

        Args:
            job_id: Ingestion job the uploaded records belong to.
            uploaded_records: Persisted uploaded records (must carry ids).
            index: Index over the system records.

        Returns:
            List of reconciliation outcomes.
        """
        duplicate_counts = self._count_duplicate_keys(uploaded_records)
        outcomes: List[ReconciliationOutcome] = []

        for uploaded in uploaded_records:
            outcome = (
                self._check_duplicate(job_id, uploaded, duplicate_counts)
                or self._find_exact_match(job_id, uploaded, index)
                or self._find_partial_match(job_id, uploaded, index)
                or ReconciliationOutcome(
                    uploaded_record_id=uploaded.id,
                    ingestion_job_id=job_id,
                    status=OutcomeStatus.NOT_MATCHED,
                )
            )
            outcomes.append(outcome)

        logger.debug("Classified %d uploaded records for job %s", len(outcomes), job_id)
        return outcomes

    def _duplicate_key(self, record: CanonicalRecord) -> Tuple:
        return tuple(getattr(record, FIELD_ATTRS[f]) for f in self.rules.duplicate.fields)

    def _count_duplicate_keys(self, records: List[CanonicalRecord]) -> Counter:
        """Count occurrences of each duplicate key within the uploaded batch only."""
        if not self.rules.duplicate.enabled:
            return Counter()
        return Counter(self._duplicate_key(r) for r in records)

    def _check_duplicate(
        self,
        job_id: str,
        uploaded: CanonicalRecord,
        counts: Counter,
    ) -> Optional[ReconciliationOutcome]:
        """Flag every occurrence of a repeated key, not just the later ones."""
        if not self.rules.duplicate.enabled:
            return None
        if counts[self._duplicate_key(uploaded)] <= 1:
            return None
        return ReconciliationOutcome(
            uploaded_record_id=uploaded.id,
            ingestion_job_id=job_id,
            status=OutcomeStatus.DUPLICATE,
        )

    def _find_exact_match(
        self,
        job_id: str,
        uploaded: CanonicalRecord,
        index: RecordIndex,
    ) -> Optional[ReconciliationOutcome]:
        """Every exact field equal; amounts compare numerically, zero tolerance."""
        rule = self.rules.exact_match
        if not rule.enabled:
            return None

        key = rule.lookup_field
        for candidate in index.candidates(key, getattr(uploaded, FIELD_ATTRS[key])):
            if self._same(rule.fields, uploaded, candidate):
                return ReconciliationOutcome(
                    uploaded_record_id=uploaded.id,
                    ingestion_job_id=job_id,
                    status=OutcomeStatus.MATCHED,
                    system_record_id=candidate.id,
                    match_score=100,
                )
        return None

    def _find_partial_match(
        self,
        job_id: str,
        uploaded: CanonicalRecord,
        index: RecordIndex,
    ) -> Optional[ReconciliationOutcome]:
        """Every partial field equal with amount inside the tolerance band of the system amount."""
        rule = self.rules.partial_match
        if not rule.enabled:
            return None

        key = rule.lookup_field
        for candidate in index.candidates(key, getattr(uploaded, FIELD_ATTRS[key])):
            if not self._same(rule.fields, uploaded, candidate):
                continue

            amount_diff = abs(candidate.amount - uploaded.amount)
            max_variance = candidate.amount * rule.amount_tolerance

            if amount_diff > max_variance:
                continue

            return ReconciliationOutcome(
                uploaded_record_id=uploaded.id,
                ingestion_job_id=job_id,
                status=OutcomeStatus.PARTIALLY_MATCHED,
                system_record_id=candidate.id,
                mismatched_fields=self._mismatched_fields(uploaded, candidate),
                match_score=self._partial_score(amount_diff, candidate.amount),
            )
        return None

    def _mismatched_fields(
        self,
        uploaded: CanonicalRecord,
        system: CanonicalRecord,
    ) -> List[MismatchedField]:
        mismatches: List[MismatchedField] = []
        for name in self.rules.partial_match.compared_fields:
            attr = FIELD_ATTRS[name]
            uploaded_value = getattr(uploaded, attr)
            system_value = getattr(system, attr)
            if uploaded_value != system_value:
                mismatches.append(MismatchedField(
                    field=name,
                    uploaded_value=uploaded_value,
                    system_value=system_value,
                ))
        return mismatches

    @staticmethod
    def _partial_score(amount_diff: Decimal, system_amount: Decimal) -> int:
        """Score = round((1 - diff / max(system amount, 1)) * 100), floored at 0."""
        denominator = max(system_amount, Decimal("1"))
        score = ((Decimal("1") - amount_diff / denominator) * 100).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        return max(0, int(score))
