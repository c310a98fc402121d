import copy
import dataclasses
import json

import pytest

from services.legacy_detect import LEGACY_V1, UNKNOWN
from services.legacy_mapper import run_legacy_dry_run, run_legacy_dry_run_from_json
from services.workspace_state import STATS_ORDER


def create_legacy_seed():
    return {
        "settings": {
            "startMonth": "2025-01",
            "openingBalance": "12.345,67",
            "vatPreview": {"deShareDefault": "0,8"},
        },
        "productCategories": [{"name": "Gadgets"}],
        "suppliers": [{"name": "Lieferant A"}],
        "products": [{"sku": "SKU-1", "alias": "Produkt 1", "month": "01-2025"}],
        "monthlyActuals": {"01-2025": {"realRevenueEUR": "1.234,56"}},
        "forecast": {"forecastManual": {"SKU-1": {"01-2025": 12}}},
        "inventory": {
            "snapshots": [
                {"month": "01-2025", "items": [{"sku": "SKU-1", "units": "1.000,00"}]}
            ],
            "settings": {"projectionMonths": "12"},
        },
        "unknownTopLevelField": {"keep": True},
    }


def section(report, name):
    return next(entry for entry in report.sections if entry.section == name)


def test_dry_run_maps_legacy_seed():
    bundle = run_legacy_dry_run(create_legacy_seed())
    report = bundle.report
    mapped = bundle.mapped_state

    assert report.source_version == LEGACY_V1
    assert report.target_version == "v2"
    assert report.can_apply is True
    assert [entry.section for entry in report.sections] == list(STATS_ORDER)

    product = mapped["products"][0]
    assert product["month"] == "2025-01"
    assert product["id"].startswith("prod-")
    assert mapped["productCategories"][0]["id"].startswith("cat-")
    assert mapped["suppliers"][0]["id"].startswith("sup-")

    assert mapped["monthlyActuals"] == {"2025-01": {"realRevenueEUR": 1234.56}}
    assert mapped["forecast"]["forecastManual"] == {"SKU-1": {"2025-01": 12}}
    assert mapped["forecast"]["forecastImport"] == {}

    snapshot = mapped["inventory"]["snapshots"][0]
    assert snapshot["month"] == "2025-01"
    assert snapshot["items"] == [{"sku": "SKU-1", "units": 1000}]
    assert mapped["inventory"]["settings"] == {"projectionMonths": 12}

    assert mapped["settings"]["openingBalance"] == "12.345,67"
    assert mapped["schemaVersion"] == 2
    assert mapped["legacyMeta"]["unmapped"] == {"unknownTopLevelField": {"keep": True}}
    assert mapped["legacyMeta"]["importHistory"] == []


def test_dry_run_section_statistics():
    report = run_legacy_dry_run(create_legacy_seed()).report

    products = section(report, "products")
    assert (products.total, products.mapped, products.normalized, products.skipped) == (1, 1, 2, 0)

    actuals = section(report, "monthlyActuals")
    assert (actuals.total, actuals.mapped, actuals.normalized) == (1, 1, 2)

    inventory = section(report, "inventory")
    assert (inventory.total, inventory.mapped, inventory.normalized) == (1, 1, 3)

    assert section(report, "settings").mapped == 1
    assert section(report, "forecast").mapped == 1
    assert section(report, "pos").total == 0


def test_dry_run_reports_issues_with_codes():
    report = run_legacy_dry_run(create_legacy_seed()).report

    unmapped = report.issues_by_code("UNMAPPED_ROOT_FIELD")
    assert [issue.entity_id for issue in unmapped] == ["unknownTopLevelField"]
    assert unmapped[0].severity == "info"

    month_issues = report.issues_by_code("MONTH_KEY_NORMALIZED")
    entity_types = {issue.entity_type for issue in month_issues}
    assert {"products", "monthlyActuals", "forecastManual", "inventory.snapshots"} <= entity_types

    generated = report.issues_by_code("ID_GENERATED")
    assert {issue.entity_type for issue in generated} == {"productCategories", "suppliers", "products"}


def test_dry_run_is_idempotent_and_does_not_mutate_input():
    seed = create_legacy_seed()
    pristine = copy.deepcopy(seed)

    first = run_legacy_dry_run(seed)
    second = run_legacy_dry_run(seed)

    assert seed == pristine
    assert first.report.to_dict() == second.report.to_dict()
    assert first.mapped_state == second.mapped_state


def test_mapped_state_is_independent_of_source():
    seed = create_legacy_seed()
    bundle = run_legacy_dry_run(seed)
    bundle.mapped_state["legacyMeta"]["unmapped"]["unknownTopLevelField"]["keep"] = False
    assert seed["unknownTopLevelField"] == {"keep": True}


def test_existing_ids_are_preserved():
    bundle = run_legacy_dry_run({"products": [{"id": "p-1", "sku": "SKU-1"}]})
    assert bundle.mapped_state["products"] == [{"id": "p-1", "sku": "SKU-1"}]
    assert bundle.report.issues_by_code("ID_GENERATED") == []


def test_generated_ids_depend_on_position():
    bundle = run_legacy_dry_run({"suppliers": [{"name": "Same"}, {"name": "Same"}]})
    first, second = bundle.mapped_state["suppliers"]
    assert first["id"] != second["id"]


def test_partial_failure_keeps_valid_records():
    payload = {
        "products": [
            {"sku": "A"},
            "oops",
            {"alias": "no sku"},
            {"sku": "B", "id": "p-b"},
        ]
    }
    report = run_legacy_dry_run(payload).report
    products = section(report, "products")

    assert (products.total, products.mapped, products.skipped, products.blocked) == (4, 2, 2, 1)
    assert report.can_apply is True

    not_object = report.issues_by_code("ENTRY_NOT_OBJECT")
    assert [(issue.entity_type, issue.entity_id) for issue in not_object] == [("products", "1")]
    missing = report.issues_by_code("MISSING_REQUIRED_FIELD")
    assert [(issue.entity_id, issue.severity) for issue in missing] == [("2", "error")]


def test_blocked_required_fields_use_falsy_values():
    payload = {"productCategories": [{"name": ""}, {"name": None}, {"name": "Ok"}]}
    report = run_legacy_dry_run(payload).report
    categories = section(report, "productCategories")
    assert (categories.mapped, categories.blocked) == (1, 2)


def test_malformed_section_is_skipped_with_warning():
    payload = {"products": "not a list", "suppliers": [{"name": "A"}]}
    bundle = run_legacy_dry_run(payload)

    products = section(bundle.report, "products")
    assert (products.total, products.skipped, products.mapped) == (1, 1, 0)
    warning = bundle.report.issues_by_code("ENTRY_NOT_OBJECT")[0]
    assert warning.entity_type == "products"
    assert warning.entity_id is None
    assert bundle.mapped_state["products"] == []
    assert bundle.report.can_apply is True


def test_malformed_inventory_keeps_counts_consistent():
    bundle = run_legacy_dry_run({"inventory": "bad", "suppliers": [{"name": "A"}]})

    inventory = section(bundle.report, "inventory")
    assert (inventory.total, inventory.skipped, inventory.mapped) == (1, 1, 0)
    assert inventory.skipped <= inventory.total
    assert bundle.mapped_state["inventory"] == {"snapshots": [], "settings": {}}
    warning = bundle.report.issues_by_code("ENTRY_NOT_OBJECT")[0]
    assert (warning.entity_type, warning.entity_id) == ("inventory", None)


def test_inventory_items_without_sku_are_blocked():
    payload = {
        "inventory": {
            "snapshots": [
                {"month": "2025-02", "items": [{"units": 5}, "bad", {"sku": "X", "units": "3"}]}
            ]
        }
    }
    bundle = run_legacy_dry_run(payload)
    inventory = section(bundle.report, "inventory")

    assert bundle.mapped_state["inventory"]["snapshots"][0]["items"] == [{"sku": "X", "units": 3}]
    assert (inventory.skipped, inventory.blocked) == (2, 1)
    missing = bundle.report.issues_by_code("MISSING_REQUIRED_FIELD")
    assert [(issue.entity_type, issue.entity_id) for issue in missing] == [
        ("inventory.snapshots.items", "0.0")
    ]
    not_object = bundle.report.issues_by_code("ENTRY_NOT_OBJECT")
    assert [issue.entity_id for issue in not_object] == ["0.1"]


def test_fixcost_overrides_month_keys_are_normalized():
    payload = {"fixcostOverrides": {"fix-1": {"03-2025": {"amount": "100"}}, "fix-2": "bad"}}
    bundle = run_legacy_dry_run(payload)
    overrides = bundle.mapped_state["fixcostOverrides"]

    assert overrides == {"fix-1": {"2025-03": {"amount": "100"}}}
    stats = section(bundle.report, "fixcostOverrides")
    assert (stats.total, stats.mapped, stats.skipped) == (2, 1, 1)


def test_numeric_fields_that_do_not_parse_are_left_alone():
    bundle = run_legacy_dry_run({"incomings": [{"month": "2025-01", "units": "lots"}]})
    record = bundle.mapped_state["incomings"][0]
    assert record["units"] == "lots"
    assert section(bundle.report, "incomings").normalized == 1  # generated id only


def test_empty_object_cannot_be_applied():
    bundle = run_legacy_dry_run({})
    assert bundle.report.can_apply is False
    assert bundle.report.source_version == UNKNOWN
    assert bundle.report.issues == ()


def test_empty_sections_cannot_be_applied():
    bundle = run_legacy_dry_run({"settings": {}, "forecast": {}, "products": []})
    assert bundle.report.can_apply is False


@pytest.mark.parametrize("payload", [[1, 2], "text", 5, None])
def test_non_object_root_is_fatal(payload):
    bundle = run_legacy_dry_run(payload)
    assert bundle.report.can_apply is False
    codes = [issue.code for issue in bundle.report.issues]
    assert codes == ["INVALID_JSON_ROOT"]
    assert bundle.report.issues[0].severity == "error"
    assert len(bundle.report.sections) == len(STATS_ORDER)


def test_from_json_runs_dry_run():
    bundle = run_legacy_dry_run_from_json(json.dumps(create_legacy_seed()))
    assert bundle.report.can_apply is True
    assert bundle.source_state == create_legacy_seed()


def test_from_json_accepts_bytes():
    bundle = run_legacy_dry_run_from_json(json.dumps({"suppliers": [{"name": "A"}]}).encode("utf-8"))
    assert bundle.report.can_apply is True


@pytest.mark.parametrize("text", ["{not json", "", "NaN", '{"a": Infinity}'])
def test_invalid_json_is_reported(text):
    bundle = run_legacy_dry_run_from_json(text)
    report = bundle.report

    assert report.can_apply is False
    assert report.sections == ()
    assert [issue.code for issue in report.issues] == ["INVALID_JSON"]
    assert bundle.source_state is None
    assert bundle.mapped_state["schemaVersion"] == 2


def test_deeply_nested_json_is_reported_as_invalid():
    bundle = run_legacy_dry_run_from_json("[" * 100000)

    assert bundle.report.can_apply is False
    assert [issue.code for issue in bundle.report.issues] == ["INVALID_JSON"]
    assert bundle.source_state is None


def test_report_statistics_are_frozen():
    report = run_legacy_dry_run(create_legacy_seed()).report
    with pytest.raises(dataclasses.FrozenInstanceError):
        report.sections[0].total = 99


def test_report_serializes_with_camel_case_keys():
    payload = run_legacy_dry_run(create_legacy_seed()).report.to_dict()
    assert set(payload) == {"sourceVersion", "targetVersion", "sections", "issues", "canApply"}
    assert set(payload["sections"][0]) == {"section", "total", "mapped", "normalized", "skipped", "blocked"}
    issue = payload["issues"][0]
    assert {"code", "severity", "entityType", "message"} <= set(issue)
