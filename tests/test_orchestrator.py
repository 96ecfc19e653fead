"""
Unit tests for CalculationOrchestrator with in-memory fakes for every
external collaborator (dose parser, identity normalizer, catalog, advisor).

Covers:
- Happy path and each failure category (validation, external, business, internal).
- Known-package path and candidate search fallback order.
- Advisory override acceptance / rejection and Scenario E (advisor timeout).
"""
import threading
import unittest
from typing import Dict, List, Optional

from app.core.errors import ExternalServiceError, GENERIC_ERROR_MESSAGE, ValidationError
from app.core.orchestrator import CalculationOrchestrator
from app.models.schemas import (
    AdvisoryOverriddenSelection,
    DeterministicSelection,
    DoseSpecification,
    DrugIdentity,
    LifecycleStatus,
    PackageCandidate,
    Severity,
    WarningCategory,
)


def _pkg(identifier: str, size: float, active: bool = True, generic: Optional[str] = None) -> PackageCandidate:
    return PackageCandidate(
        identifier=identifier,
        size=size,
        unit="tablet",
        lifecycle_status=LifecycleStatus.ACTIVE if active else LifecycleStatus.INACTIVE,
        source_metadata=generic,
    )


def _dose(amount: float = 1, freq: float = 2) -> DoseSpecification:
    return DoseSpecification(dose_amount=amount, dose_unit="tablet", frequency_per_day=freq, route="oral")


class FakeParser:
    def __init__(self, dose: Optional[DoseSpecification] = None, error: Optional[Exception] = None):
        self.dose = dose or _dose()
        self.error = error
        self.calls: List[str] = []

    def parse(self, free_text: str) -> DoseSpecification:
        self.calls.append(free_text)
        if self.error:
            raise self.error
        return self.dose


class FakeNormalizer:
    def __init__(self, identity: Optional[DrugIdentity] = None, package: Optional[PackageCandidate] = None):
        self.identity = identity or DrugIdentity(canonical_id="314076", display_name="lisinopril 10 MG")
        self.package = package
        self.calls: List[str] = []

    def normalize(self, name: str) -> DrugIdentity:
        self.calls.append(name)
        return self.identity

    def validate_known_package(self, identifier: str) -> Optional[PackageCandidate]:
        self.calls.append(identifier)
        return self.package


class FakeCatalog:
    def __init__(self, by_key: Dict[str, List[PackageCandidate]], failing: tuple = ()):
        self.by_key = by_key
        self.failing = failing
        self.calls: List[str] = []

    def fetch_candidates(self, canonical_id: str) -> List[PackageCandidate]:
        self.calls.append(canonical_id)
        if canonical_id in self.failing:
            raise ExternalServiceError("Failed to retrieve NDC data from FDA")
        return list(self.by_key.get(canonical_id, []))


class FakeAdvisor:
    def __init__(self, response=None, error: Optional[Exception] = None, block: Optional[threading.Event] = None):
        self.response = response
        self.error = error
        self.block = block
        self.calls = 0

    def advise(self, requirement, candidates):
        self.calls += 1
        if self.block is not None:
            self.block.wait(5)
        if self.error:
            raise self.error
        return self.response


REQUEST = {"drugName": "lisinopril", "sig": "Take 1 tablet twice daily", "daysSupply": 30}


def _orchestrator(parser=None, normalizer=None, catalog=None, advisor=None, config=None, **kwargs):
    return CalculationOrchestrator(
        dose_parser=parser or FakeParser(),
        normalizer=normalizer or FakeNormalizer(),
        catalog=catalog or FakeCatalog({"314076": [_pkg("A", 30), _pkg("B", 60)]}),
        advisor=advisor,
        config=config,
        **kwargs,
    )


class PipelineTests(unittest.TestCase):
    def test_scenario_a_end_to_end(self):
        catalog = FakeCatalog({"314076": [_pkg("A", 30)]})
        result = _orchestrator(catalog=catalog).calculate(REQUEST)

        self.assertTrue(result.success)
        self.assertEqual(result.requirement.total_quantity, 60)
        self.assertIsInstance(result.selection, DeterministicSelection)
        self.assertEqual(result.selection.lines[0].package_count, 2)
        self.assertEqual([w.category for w in result.warnings], [WarningCategory.MULTIPLE_PACKAGES])
        self.assertEqual(result.identity.canonical_id, "314076")
        self.assertIsNone(result.rationale)
        self.assertIsNone(result.error_code)

    def test_scenario_d_zero_requirement(self):
        advisor = FakeAdvisor(response={})
        result = _orchestrator(parser=FakeParser(_dose(amount=0)), advisor=advisor).calculate(REQUEST)

        self.assertTrue(result.success)
        self.assertEqual(result.selection.lines, [])
        self.assertEqual(result.warnings, [])
        self.assertEqual(advisor.calls, 0)

    def test_accepts_request_model_and_snake_case(self):
        result = _orchestrator().calculate({"drug_name": "lisinopril", "sig": "1 bid", "days_supply": 30})
        self.assertTrue(result.success)

    def test_inactive_only_is_success_with_error_warning(self):
        advisor = FakeAdvisor(response={})
        catalog = FakeCatalog({"314076": [_pkg("A", 60, active=False)]})
        result = _orchestrator(catalog=catalog, advisor=advisor).calculate(REQUEST)

        self.assertTrue(result.success)
        self.assertTrue(result.selection.is_empty)
        self.assertEqual([w.category for w in result.warnings], [WarningCategory.INACTIVE_ONLY])
        self.assertEqual(advisor.calls, 0)


class FailureTests(unittest.TestCase):
    def test_validation_failure_stops_pipeline(self):
        parser = FakeParser()
        result = _orchestrator(parser=parser).calculate({"drugName": "lisinopril", "daysSupply": 30})

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "VALIDATION_ERROR")
        self.assertEqual(result.message, "SIG (prescription directions) is required")
        self.assertFalse(result.retryable)
        self.assertEqual(parser.calls, [])

    def test_days_supply_out_of_range(self):
        result = _orchestrator().calculate({**REQUEST, "daysSupply": 400})
        self.assertEqual(result.error_code, "VALIDATION_ERROR")
        self.assertEqual(result.message, "Days supply must be between 1 and 365")

    def test_days_supply_not_a_number(self):
        result = _orchestrator().calculate({**REQUEST, "daysSupply": "thirty"})
        self.assertEqual(result.error_code, "VALIDATION_ERROR")
        self.assertEqual(result.message, "Days supply must be a whole number of days")

    def test_non_object_body(self):
        result = _orchestrator().calculate(["not", "a", "dict"])
        self.assertEqual(result.error_code, "VALIDATION_ERROR")

    def test_injected_validator(self):
        def reject(request, config):
            raise ValidationError("Controlled substances are not supported")

        result = _orchestrator(validator=reject).calculate(REQUEST)
        self.assertEqual(result.error_code, "VALIDATION_ERROR")
        self.assertEqual(result.message, "Controlled substances are not supported")

    def test_dose_parser_exhaustion_is_external(self):
        parser = FakeParser(error=ExternalServiceError("Failed to parse prescription directions"))
        result = _orchestrator(parser=parser).calculate(REQUEST)

        self.assertEqual(result.error_code, "EXTERNAL_SERVICE_ERROR")
        self.assertTrue(result.retryable)
        self.assertEqual(result.message, "Failed to parse prescription directions")

    def test_unexpected_error_is_internal_and_generic(self):
        parser = FakeParser(error=KeyError("secret internal detail"))
        result = _orchestrator(parser=parser).calculate(REQUEST)

        self.assertEqual(result.error_code, "INTERNAL_ERROR")
        self.assertEqual(result.message, GENERIC_ERROR_MESSAGE)
        self.assertNotIn("secret", result.message)

    def test_no_candidates_is_business_rule(self):
        result = _orchestrator(catalog=FakeCatalog({})).calculate(REQUEST)

        self.assertEqual(result.error_code, "BUSINESS_RULE_ERROR")
        self.assertEqual(result.message, "No matching packages found for this medication")
        self.assertFalse(result.retryable)

    def test_catalog_failure_everywhere_is_external(self):
        catalog = FakeCatalog({}, failing=("314076", "lisinopril 10 MG", "lisinopril"))
        result = _orchestrator(catalog=catalog).calculate(REQUEST)
        self.assertEqual(result.error_code, "EXTERNAL_SERVICE_ERROR")


class IdentityAndFetchTests(unittest.TestCase):
    def test_fetch_fallback_order(self):
        catalog = FakeCatalog({"lisinopril": [_pkg("A", 60)]})
        result = _orchestrator(catalog=catalog).calculate(REQUEST)

        self.assertTrue(result.success)
        self.assertEqual(catalog.calls, ["314076", "lisinopril 10 MG", "lisinopril"])

    def test_fetch_skips_duplicate_keys(self):
        normalizer = FakeNormalizer(DrugIdentity(canonical_id="lisinopril", display_name="lisinopril"))
        catalog = FakeCatalog({})
        _orchestrator(normalizer=normalizer, catalog=catalog).calculate(REQUEST)
        self.assertEqual(catalog.calls, ["lisinopril"])

    def test_fetch_continues_after_external_failure(self):
        catalog = FakeCatalog({"lisinopril 10 MG": [_pkg("A", 60)]}, failing=("314076",))
        result = _orchestrator(catalog=catalog).calculate(REQUEST)
        self.assertTrue(result.success)

    def test_known_package_path(self):
        known = _pkg("00093-7214-01", 30, generic="lisinopril")
        normalizer = FakeNormalizer(package=known)
        catalog = FakeCatalog({"lisinopril": [known, _pkg("00093-7214-10", 90)]})
        result = _orchestrator(normalizer=normalizer, catalog=catalog).calculate(
            {"ndc": "00093-7214-01", "sig": "1 bid", "daysSupply": 30}
        )

        self.assertTrue(result.success)
        self.assertEqual(result.identity.display_name, "lisinopril")
        self.assertEqual(catalog.calls, ["lisinopril"])
        self.assertEqual(result.selection.lines[0].package_identifier, "00093-7214-10")

    def test_known_package_with_empty_search_is_business_rule(self):
        known = _pkg("00093-7214-01", 60, generic="lisinopril")
        result = _orchestrator(normalizer=FakeNormalizer(package=known), catalog=FakeCatalog({})).calculate(
            {"ndc": "00093-7214-01", "sig": "1 bid", "daysSupply": 30}
        )

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "BUSINESS_RULE_ERROR")
        self.assertEqual(result.message, "No matching packages found for this medication")
        self.assertIsNone(result.selection)

    def test_known_package_with_catalog_down_is_external(self):
        known = _pkg("00093-7214-01", 60, generic="lisinopril")
        catalog = FakeCatalog({}, failing=("lisinopril",))
        result = _orchestrator(normalizer=FakeNormalizer(package=known), catalog=catalog).calculate(
            {"ndc": "00093-7214-01", "sig": "1 bid", "daysSupply": 30}
        )

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "EXTERNAL_SERVICE_ERROR")
        self.assertTrue(result.retryable)
        self.assertEqual(catalog.calls, ["lisinopril"])

    def test_inactive_known_package_is_validation(self):
        catalog = FakeCatalog({})
        normalizer = FakeNormalizer(package=_pkg("00093-7214-01", 30, active=False))
        result = _orchestrator(normalizer=normalizer, catalog=catalog).calculate(
            {"ndc": "00093-7214-01", "sig": "1 bid", "daysSupply": 30}
        )

        self.assertEqual(result.error_code, "VALIDATION_ERROR")
        self.assertEqual(result.message, "Invalid or inactive NDC provided")
        self.assertEqual(catalog.calls, [])

    def test_unknown_package_is_validation(self):
        result = _orchestrator(normalizer=FakeNormalizer(package=None)).calculate(
            {"ndc": "00093-7214-01", "sig": "1 bid", "daysSupply": 30}
        )
        self.assertEqual(result.error_code, "VALIDATION_ERROR")


class AdvisoryTests(unittest.TestCase):
    # kebutuhan 35: deterministik memilih B (60), overfill 25
    SHORT_REQUEST = {"drugName": "lisinopril", "sig": "1 daily", "daysSupply": 35}

    def _run(self, advisor, config=None):
        parser = FakeParser(_dose(amount=1, freq=1))
        catalog = FakeCatalog({"314076": [_pkg("A", 30), _pkg("B", 60), _pkg("C", 40, active=False)]})
        return _orchestrator(parser=parser, catalog=catalog, advisor=advisor, config=config).calculate(
            self.SHORT_REQUEST
        )

    def assertDeterministic(self, result):
        self.assertTrue(result.success)
        self.assertIsInstance(result.selection, DeterministicSelection)
        self.assertEqual(result.selection.lines[0].package_identifier, "B")
        self.assertIsNone(result.rationale)

    def test_accepted_override_replaces_lines_and_appends_warnings(self):
        advisor = FakeAdvisor(response={
            "lines": [{"packageIdentifier": "A", "packageCount": 2, "suppliedQuantity": 60}],
            "rationale": "Two bottles of 30 are stocked more widely",
            "warnings": [{"category": "ADVISORY", "message": "Check stock", "severity": "INFO"}],
        })
        result = self._run(advisor)

        self.assertTrue(result.success)
        self.assertIsInstance(result.selection, AdvisoryOverriddenSelection)
        self.assertEqual(result.selection.provenance, "advisory")
        self.assertEqual(result.selection.lines[0].package_identifier, "A")
        self.assertEqual(result.selection.total_supplied, 60)
        self.assertEqual(result.selection.total_waste, 25)
        self.assertEqual(result.rationale, "Two bottles of 30 are stocked more widely")
        self.assertEqual(
            [w.category for w in result.warnings],
            [WarningCategory.OVERFILL, WarningCategory.ADVISORY],
        )

    def test_serialized_provenance(self):
        advisor = FakeAdvisor(response={
            "lines": [{"packageIdentifier": "B", "packageCount": 1}],
            "rationale": "Single bottle",
        })
        data = self._run(advisor).model_dump(mode="json")
        self.assertEqual(data["selection"]["provenance"], "advisory")
        self.assertEqual(data["selection"]["rationale"], "Single bottle")

    def test_rejects_unknown_package(self):
        advisor = FakeAdvisor(response={"lines": [{"packageIdentifier": "Z", "packageCount": 1}], "rationale": "x"})
        self.assertDeterministic(self._run(advisor))

    def test_rejects_inactive_package(self):
        advisor = FakeAdvisor(response={"lines": [{"packageIdentifier": "C", "packageCount": 1}], "rationale": "x"})
        self.assertDeterministic(self._run(advisor))

    def test_rejects_underfill(self):
        advisor = FakeAdvisor(response={"lines": [{"packageIdentifier": "A", "packageCount": 1}], "rationale": "x"})
        self.assertDeterministic(self._run(advisor))

    def test_rejects_excessive_overfill(self):
        # 90 - 35 = 55 > 25 × 1.2
        advisor = FakeAdvisor(response={"lines": [{"packageIdentifier": "A", "packageCount": 3}], "rationale": "x"})
        self.assertDeterministic(self._run(advisor))

    def _run_units(self, advisor, packages):
        catalog = FakeCatalog({"314076": packages})
        return _orchestrator(catalog=catalog, advisor=advisor).calculate(REQUEST)

    def test_rejects_other_unit_when_required_unit_is_stocked(self):
        packages = [_pkg("T90", 90), PackageCandidate(identifier="ML60", size=60, unit="ml")]
        advisor = FakeAdvisor(response={"lines": [{"packageIdentifier": "ML60", "packageCount": 1}], "rationale": "x"})
        result = self._run_units(advisor, packages)

        self.assertIsInstance(result.selection, DeterministicSelection)
        self.assertEqual(result.selection.lines[0].package_identifier, "T90")
        self.assertEqual(result.selection.lines[0].unit, "tablet")

    def test_accepts_interchangeable_unit_when_required_unit_missing(self):
        packages = [
            PackageCandidate(identifier="C30", size=30, unit="capsule"),
            PackageCandidate(identifier="C60", size=60, unit="capsule"),
        ]
        advisor = FakeAdvisor(response={"lines": [{"packageIdentifier": "C30", "packageCount": 2}], "rationale": "x"})
        result = self._run_units(advisor, packages)

        self.assertIsInstance(result.selection, AdvisoryOverriddenSelection)
        self.assertEqual(result.selection.total_supplied, 60)

    def test_rejects_schema_invalid(self):
        for response in (
            {"lines": [], "rationale": "x"},
            {"lines": [{"packageIdentifier": "A", "packageCount": 2}]},
            {"lines": [{"packageIdentifier": "A", "packageCount": 0}], "rationale": "x"},
            {"lines": [{"packageIdentifier": "A", "packageCount": 2}], "rationale": "x",
             "warnings": [{"category": "MADE_UP", "message": "?", "severity": "INFO"}]},
            "not json",
        ):
            with self.subTest(response=response):
                self.assertDeterministic(self._run(FakeAdvisor(response=response)))

    def test_advisor_error_degrades_silently(self):
        result = self._run(FakeAdvisor(error=ExternalServiceError("Failed to select optimal NDC")))
        self.assertDeterministic(result)
        self.assertIsNone(result.error_code)

    def test_scenario_e_advisor_timeout(self):
        release = threading.Event()
        advisor = FakeAdvisor(response={
            "lines": [{"packageIdentifier": "A", "packageCount": 2}],
            "rationale": "late answer",
        }, block=release)
        try:
            result = self._run(advisor, config={"timeouts": {"advisory": 0.05}})
        finally:
            release.set()

        self.assertDeterministic(result)
        self.assertEqual([w.category for w in result.warnings], [WarningCategory.OVERFILL])

    def test_advisory_disabled(self):
        advisor = FakeAdvisor(response={})
        self.assertDeterministic(self._run(advisor, config={"advisory": {"enabled": False}}))
        self.assertEqual(advisor.calls, 0)


class UnitConversionTests(unittest.TestCase):
    def _capsules(self, unit: str) -> FakeCatalog:
        package = PackageCandidate(identifier="C", size=60, unit=unit)
        return FakeCatalog({"314076": [package]})

    def test_interchangeable_unit_is_info(self):
        result = _orchestrator(catalog=self._capsules("capsule")).calculate(REQUEST)

        self.assertTrue(result.success)
        categories = [w.category for w in result.warnings]
        self.assertEqual(categories, [WarningCategory.NO_UNIT_MATCH, WarningCategory.UNIT_CONVERSION])
        self.assertEqual(result.warnings[-1].severity, Severity.INFO)
        self.assertIn("60 capsule", result.warnings[-1].message)

    def test_unconvertible_unit_is_warning(self):
        result = _orchestrator(catalog=self._capsules("ml")).calculate(REQUEST)

        self.assertTrue(result.success)
        self.assertEqual(result.warnings[-1].category, WarningCategory.UNIT_CONVERSION)
        self.assertEqual(result.warnings[-1].severity, Severity.WARNING)

    def test_same_unit_adds_nothing(self):
        result = _orchestrator(catalog=FakeCatalog({"314076": [_pkg("A", 60)]})).calculate(REQUEST)
        self.assertEqual(result.warnings, [])

    def test_dispense_quantity_rounded_up_for_tablets(self):
        parser = FakeParser(_dose(amount=0.5, freq=3))
        result = _orchestrator(parser=parser).calculate({**REQUEST, "daysSupply": 7})

        self.assertEqual(result.requirement.total_quantity, 10.5)
        self.assertEqual(result.dispense_quantity, 11)


if __name__ == "__main__":
    unittest.main()
