"""
Data Quality Service for MLS listings

Scores each canonical record for completeness, accuracy and consistency
using configurable rules and per-property-type / per-state plausibility
ranges.

overall = completeness * 0.4 + accuracy * 0.4 + consistency * 0.2 (rounded)
"""

import copy
import logging
import re
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .models import CanonicalPropertyRecord, QualityReport, QualityScore

logger = logging.getLogger(__name__)

ZIP_PATTERN = re.compile(r'^\d{5}(-\d{4})?$')

COMPLETENESS_WEIGHT = 0.4
ACCURACY_WEIGHT = 0.4
CONSISTENCY_WEIGHT = 0.2

# (min, max) list price by property type
PRICE_RANGES: Dict[str, Tuple[float, float]] = {
    'single_family': (50_000, 10_000_000),
    'condo': (30_000, 5_000_000),
    'townhouse': (40_000, 3_000_000),
    'multi_family': (100_000, 20_000_000),
    'land': (10_000, 5_000_000),
    'commercial': (50_000, 50_000_000),
    'default': (10_000, 100_000_000),
}

# (min, max) living area in square feet by property type
SQUARE_FEET_RANGES: Dict[str, Tuple[float, float]] = {
    'single_family': (500, 15_000),
    'condo': (300, 5_000),
    'townhouse': (600, 6_000),
    'multi_family': (1_000, 50_000),
    'commercial': (500, 500_000),
    'default': (100, 100_000),
}

# (min, max) price per square foot by state
PRICE_PER_SQFT_BANDS: Dict[str, Tuple[float, float]] = {
    'CA': (200, 2_000),
    'NY': (150, 1_500),
    'TX': (80, 400),
    'FL': (100, 600),
    'default': (50, 1_000),
}

PRICE_RANGE_DEDUCTION = 15
SQUARE_FEET_RANGE_DEDUCTION = 10
YEAR_BUILT_DEDUCTION = 10
BATH_BED_RATIO_DEDUCTION = 5
ZIP_FORMAT_DEDUCTION = 8
PRICE_PER_SQFT_DEDUCTION = 10
DATE_ORDER_DEDUCTION = 5
PRIMARY_MEDIA_DEDUCTION = 5
MISSING_PRIMARY_MEDIA_DEDUCTION = 3
STORIES_DEDUCTION = 5
MAX_SINGLE_FAMILY_STORIES = 3

MIN_YEAR_BUILT = 1800
MAX_BATH_BED_RATIO = 3


@dataclass
class CompletenessRule:
    """A required field and the points deducted when it is missing"""
    field_name: str  # dotted path on CanonicalPropertyRecord
    rule_type: str  # 'required' (non-empty) or 'positive' (> 0)
    deduction: int
    message: str
    severity: str = "issue"  # "issue" or "recommendation"

    def is_satisfied(self, record: CanonicalPropertyRecord) -> bool:
        value = _resolve(record, self.field_name)
        if self.rule_type == 'positive':
            try:
                return float(value or 0) > 0
            except (TypeError, ValueError):
                return False
        if isinstance(value, (list, tuple, dict)):
            return bool(value)
        return bool(str(value).strip()) if value is not None else False


DEFAULT_COMPLETENESS_RULES = [
    CompletenessRule('address.street_name', 'required', 15, "Missing street address"),
    CompletenessRule('address.city', 'required', 10, "Missing city"),
    CompletenessRule('address.state', 'required', 10, "Missing state"),
    CompletenessRule('address.zip_code', 'required', 5, "Add ZIP code for better location accuracy", "recommendation"),
    CompletenessRule('price', 'positive', 20, "Missing or invalid price"),
    CompletenessRule('details.bedrooms', 'positive', 8, "Missing bedroom count"),
    CompletenessRule('details.bathrooms', 'positive', 8, "Missing bathroom count"),
    CompletenessRule('details.square_feet', 'positive', 10, "Missing square footage"),
    CompletenessRule('agent.name', 'required', 3, "Add listing agent information", "recommendation"),
    CompletenessRule('media', 'required', 5, "Add property photos", "recommendation"),
    CompletenessRule('details.description', 'required', 2, "Add a property description", "recommendation"),
]


def _resolve(record: Any, path: str) -> Any:
    value = record
    for part in path.split('.'):
        value = getattr(value, part, None)
        if value is None:
            return None
    return value


def _clamp(score: float) -> int:
    return int(max(0, min(100, round(score))))


class DataQualityValidator:
    """
    Validator for canonical MLS records.

    Scores are always within 0..100. Issues describe quality defects;
    recommendations are advisory and never block ingestion.
    """

    def __init__(self, min_quality_score: int = 60,
                 completeness_rules: Optional[List[CompletenessRule]] = None):
        self.min_quality_score = min_quality_score
        self.completeness_rules = list(completeness_rules or copy.deepcopy(DEFAULT_COMPLETENESS_RULES))

    def get_validation_rules(self) -> List[CompletenessRule]:
        return copy.deepcopy(self.completeness_rules)

    def update_validation_rules(self, rules: List[CompletenessRule]):
        """Replace the completeness rules used for subsequent validations"""
        for rule in rules:
            if rule.rule_type not in ('required', 'positive'):
                raise ValueError(f"Unknown completeness rule type: {rule.rule_type}")
            if rule.deduction < 0:
                raise ValueError(f"Rule deduction must be non-negative: {rule.field_name}")
        self.completeness_rules = list(rules)
        logger.info(f"Loaded {len(rules)} completeness rules")

    def validate_record(self, record: CanonicalPropertyRecord) -> QualityScore:
        """
        Score a single record.

        Args:
            record: Canonical record to validate

        Returns:
            QualityScore with overall and per-dimension scores in 0..100
        """
        issues: List[str] = []
        recommendations: List[str] = []

        completeness = self._score_completeness(record, issues, recommendations)
        accuracy = self._score_accuracy(record, issues)
        consistency = self._score_consistency(record, issues, recommendations)

        overall = _clamp(
            completeness * COMPLETENESS_WEIGHT
            + accuracy * ACCURACY_WEIGHT
            + consistency * CONSISTENCY_WEIGHT
        )

        return QualityScore(
            overall=overall,
            completeness=completeness,
            accuracy=accuracy,
            consistency=consistency,
            issues=issues,
            recommendations=recommendations,
        )

    def validate_batch(self, records: List[CanonicalPropertyRecord]) -> List[QualityScore]:
        """Score records in input order"""
        return [self.validate_record(record) for record in records]

    def _score_completeness(self, record: CanonicalPropertyRecord,
                            issues: List[str], recommendations: List[str]) -> int:
        score = 100
        for rule in self.completeness_rules:
            if not rule.is_satisfied(record):
                score -= rule.deduction
                if rule.severity == "recommendation":
                    recommendations.append(rule.message)
                else:
                    issues.append(rule.message)

        return _clamp(score)

    def _score_accuracy(self, record: CanonicalPropertyRecord, issues: List[str]) -> int:
        score = 100
        property_type = record.property_type or 'default'
        details = record.details

        if record.price > 0:
            low, high = PRICE_RANGES.get(property_type, PRICE_RANGES['default'])
            if not low <= record.price <= high:
                score -= PRICE_RANGE_DEDUCTION
                issues.append(f"Price ${record.price:,.0f} outside expected range for {property_type}")

        if details.square_feet > 0 and property_type != 'land':
            low, high = SQUARE_FEET_RANGES.get(property_type, SQUARE_FEET_RANGES['default'])
            if not low <= details.square_feet <= high:
                score -= SQUARE_FEET_RANGE_DEDUCTION
                issues.append(f"Square footage {details.square_feet:,.0f} outside expected range for {property_type}")

        if details.year_built:
            current_year = datetime.now().year
            if not MIN_YEAR_BUILT <= details.year_built <= current_year + 1:
                score -= YEAR_BUILT_DEDUCTION
                issues.append(f"Implausible year built: {details.year_built}")

        if details.bedrooms > 0 and details.bathrooms / details.bedrooms > MAX_BATH_BED_RATIO:
            score -= BATH_BED_RATIO_DEDUCTION
            issues.append("Unusual bathroom to bedroom ratio")

        zip_code = record.address.zip_code
        if zip_code and not ZIP_PATTERN.match(zip_code):
            score -= ZIP_FORMAT_DEDUCTION
            issues.append(f"Invalid ZIP code format: {zip_code}")

        return _clamp(score)

    def _score_consistency(self, record: CanonicalPropertyRecord,
                           issues: List[str], recommendations: List[str]) -> int:
        score = 100

        if record.property_type == 'single_family' and record.details.stories > MAX_SINGLE_FAMILY_STORIES:
            score -= STORIES_DEDUCTION
            issues.append("Single family home with unusual number of stories")

        if record.price > 0 and record.details.square_feet > 0:
            price_per_sqft = record.price / record.details.square_feet
            state = record.address.state.upper()
            low, high = PRICE_PER_SQFT_BANDS.get(state, PRICE_PER_SQFT_BANDS['default'])
            if not low <= price_per_sqft <= high:
                score -= PRICE_PER_SQFT_DEDUCTION
                issues.append(f"Price per square foot ${price_per_sqft:,.0f} unusual for {state or 'unknown state'}")

        dates = record.dates
        if dates.listed and dates.updated and dates.listed > dates.updated:
            score -= DATE_ORDER_DEDUCTION
            issues.append("Listed date is after last updated date")

        if record.media:
            primary_count = sum(1 for item in record.media if item.is_primary)
            if primary_count > 1:
                score -= PRIMARY_MEDIA_DEDUCTION
                issues.append("Multiple primary photos")
            elif primary_count == 0:
                score -= MISSING_PRIMARY_MEDIA_DEDUCTION
                recommendations.append("Mark one photo as primary")

        return _clamp(score)

    def generate_quality_report(self, records: List[CanonicalPropertyRecord],
                                scores: Optional[List[QualityScore]] = None,
                                top_issues: int = 10) -> QualityReport:
        """
        Summarise the quality of a batch.

        Args:
            records: Records the scores belong to
            scores: Precomputed scores (validated here when omitted)
            top_issues: Number of most common issues to include

        Returns:
            QualityReport with averages and the most common issues
        """
        if scores is None:
            scores = self.validate_batch(records)
        if not scores:
            return QualityReport()

        total = len(scores)
        issue_counts = Counter(issue for score in scores for issue in score.issues)

        report = QualityReport(
            total_records=total,
            average_overall=round(sum(s.overall for s in scores) / total, 2),
            average_completeness=round(sum(s.completeness for s in scores) / total, 2),
            average_accuracy=round(sum(s.accuracy for s in scores) / total, 2),
            average_consistency=round(sum(s.consistency for s in scores) / total, 2),
            below_threshold=sum(1 for s in scores if not s.passes(self.min_quality_score)),
            common_issues=issue_counts.most_common(top_issues),
        )

        logger.info(f"Quality report: {total} records, average {report.average_overall}, "
                    f"{report.below_threshold} below {self.min_quality_score}")
        return report
