"""Tests for the data quality validator."""

from datetime import timedelta

import pytest

from services.data_quality_service import CompletenessRule, DataQualityValidator
from services.models import CanonicalPropertyRecord, Media, QualityReport
from tests.factories import LISTED, make_record


@pytest.fixture
def validator() -> DataQualityValidator:
    return DataQualityValidator()


class TestCompleteness:
    """Required-field deductions."""

    def test_complete_record_scores_full_marks(self, validator) -> None:
        score = validator.validate_record(make_record())

        assert (score.overall, score.completeness, score.accuracy, score.consistency) == (100, 100, 100, 100)
        assert score.issues == []
        assert score.recommendations == []

    def test_missing_location_agent_media_and_description(self, validator) -> None:
        record = make_record(street_name="", city="", state="", agent_name="", media=[], description="")

        score = validator.validate_record(record)

        assert score.completeness == 55
        assert score.completeness <= 55
        assert "Missing street address" in score.issues
        assert "Missing city" in score.issues
        assert "Missing state" in score.issues
        assert "Add listing agent information" in score.recommendations
        assert "Add property photos" in score.recommendations
        assert score.overall == 82

    def test_zero_numeric_fields_count_as_missing(self, validator) -> None:
        record = make_record(price=0, bedrooms=0, bathrooms=0, square_feet=0)

        score = validator.validate_record(record)

        assert score.completeness == 100 - 20 - 8 - 8 - 10
        assert "Missing or invalid price" in score.issues

    def test_scores_are_clamped_to_bounds(self) -> None:
        harsh = DataQualityValidator(completeness_rules=[
            CompletenessRule('price', 'positive', 150, "Missing or invalid price"),
        ])

        score = harsh.validate_record(CanonicalPropertyRecord(mls_id="X", provider_id="p"))

        assert score.completeness == 0
        for value in (score.overall, score.completeness, score.accuracy, score.consistency):
            assert 0 <= value <= 100

    def test_empty_record_stays_in_range(self, validator) -> None:
        score = validator.validate_record(CanonicalPropertyRecord(mls_id="X", provider_id="p"))

        assert 0 <= score.overall <= 100
        assert score.completeness == 4


class TestAccuracy:
    """Plausibility-range deductions."""

    @pytest.mark.parametrize("overrides,expected", [
        ({'zip_code': '1234'}, 92),
        ({'year_built': 1700}, 90),
        ({'bathrooms': 10}, 95),
    ])
    def test_single_defect_deductions(self, validator, overrides, expected) -> None:
        score = validator.validate_record(make_record(**overrides))

        assert score.accuracy == expected
        assert score.consistency == 100

    def test_price_outside_type_range_also_skews_price_per_sqft(self, validator) -> None:
        score = validator.validate_record(make_record(price=20_000_000))

        assert score.accuracy == 85
        assert score.consistency == 90
        assert any("outside expected range" in issue for issue in score.issues)

    def test_square_footage_range_is_skipped_for_land(self, validator) -> None:
        score = validator.validate_record(
            make_record(property_type="land", square_feet=200_000, price=4_000_000))

        assert score.accuracy == 100

    def test_zip_plus_four_is_valid(self, validator) -> None:
        assert validator.validate_record(make_record(zip_code="62704-1234")).accuracy == 100


class TestConsistency:
    """Cross-field deductions."""

    def test_tall_single_family_home(self, validator) -> None:
        assert validator.validate_record(make_record(stories=4)).consistency == 95

    def test_listed_after_updated(self, validator) -> None:
        score = validator.validate_record(make_record(updated=LISTED - timedelta(days=1)))

        assert score.consistency == 95
        assert "Listed date is after last updated date" in score.issues

    def test_multiple_primary_photos(self, validator) -> None:
        media = [Media(url="https://p/1.jpg", is_primary=True), Media(url="https://p/2.jpg", is_primary=True)]

        assert validator.validate_record(make_record(media=media)).consistency == 95

    def test_no_primary_photo_is_a_recommendation(self, validator) -> None:
        score = validator.validate_record(make_record(media=[Media(url="https://p/1.jpg")]))

        assert score.consistency == 97
        assert "Mark one photo as primary" in score.recommendations
        assert score.issues == []

    def test_state_specific_price_per_sqft_band(self, validator) -> None:
        # 250k over 1500 sqft is cheap for California
        assert validator.validate_record(make_record(state="CA")).consistency == 90
        assert validator.validate_record(make_record(state="TX")).consistency == 100


class TestRules:
    """Rule management."""

    def test_rules_can_be_replaced(self, validator) -> None:
        validator.update_validation_rules([CompletenessRule('details.year_built', 'positive', 30, "Missing year")])

        score = validator.validate_record(make_record(year_built=0, city=""))

        assert score.completeness == 70
        assert score.issues == ["Missing year"]

    @pytest.mark.parametrize("rule", [
        CompletenessRule('price', 'regex', 10, "bad type"),
        CompletenessRule('price', 'positive', -1, "negative"),
    ])
    def test_invalid_rules_are_rejected(self, validator, rule) -> None:
        with pytest.raises(ValueError):
            validator.update_validation_rules([rule])

    def test_get_validation_rules_returns_copies(self, validator) -> None:
        rules = validator.get_validation_rules()
        rules[0].deduction = 99

        assert validator.completeness_rules[0].deduction == 15


class TestReporting:
    """Batch validation and reports."""

    def test_batch_preserves_order(self, validator) -> None:
        records = [make_record("A"), make_record("B", city=""), make_record("C")]

        scores = validator.validate_batch(records)

        assert [s.completeness for s in scores] == [100, 90, 100]

    def test_quality_report(self) -> None:
        validator = DataQualityValidator(min_quality_score=90)
        records = [
            make_record("A"),
            make_record("B", street_name="", city="", state="", agent_name="", media=[], description=""),
        ]

        report = validator.generate_quality_report(records)

        assert report.total_records == 2
        assert report.average_overall == 91.0
        assert report.average_completeness == 77.5
        assert report.below_threshold == 1
        assert ("Missing street address", 1) in report.common_issues

    def test_empty_report(self, validator) -> None:
        assert validator.generate_quality_report([]) == QualityReport()

    def test_passes_threshold(self, validator) -> None:
        score = validator.validate_record(make_record())

        assert score.passes(validator.min_quality_score)
        assert not score.passes(101)
