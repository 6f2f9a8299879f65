"""
Tests for blueprint materialization against confirmed ERP field mappings.
"""

import pytest

from models.royalty import DimensionType, FieldMapping
from services.royalty.blueprint_materializer import (
    BlueprintMaterializer,
    blueprint_rule,
    extract_dimensions,
    require_fully_mapped,
)
from services.royalty.errors import MappingIncompleteError


@pytest.fixture
def materializer():
    return BlueprintMaterializer()


@pytest.fixture
def beer_mapping():
    return FieldMapping(
        id=1, original_term="Beer", original_value="Beer",
        erp_field_name="item_class_code", confidence=0.95,
    )


@pytest.fixture
def territory_mapping():
    return FieldMapping(
        id=2, original_term="United States", original_value="US", erp_field_name="region_code",
    )


@pytest.fixture
def beer_us_rule(make_rule):
    return make_rule(id=11, rule_name="Beer US", product_categories=["Beer"], territories=["US"])


def test_partially_mapped_rule_lists_unmapped_dimensions(materializer, beer_us_rule, beer_mapping):
    blueprint = materializer.materialize_rule(beer_us_rule, [beer_mapping])

    assert blueprint.is_fully_mapped is False
    assert blueprint.unmapped_fields == ["territory: US"]
    assert blueprint.erp_field_bindings == {"product": "item_class_code"}
    with pytest.raises(MappingIncompleteError, match="territory: US"):
        require_fully_mapped(blueprint)


def test_fully_mapped_rule(materializer, beer_us_rule, beer_mapping, territory_mapping):
    blueprint = materializer.materialize_rule(beer_us_rule, [beer_mapping, territory_mapping])

    assert blueprint.is_fully_mapped is True
    assert blueprint.royalty_rule_id == 11
    assert blueprint.erp_field_bindings == {"product": "item_class_code", "territory": "region_code"}
    assert blueprint.dual_terminology_map == {
        "Beer": "Beer (ERP: item_class_code)",
        "US": "US (ERP: region_code)",
    }
    assert blueprint.dimensions[0].confidence == 0.95
    assert require_fully_mapped(blueprint) is blueprint


def test_rule_without_dimensions_is_never_fully_mapped(materializer, make_rule):
    blueprint = materializer.materialize_rule(make_rule(id=12), [])

    assert blueprint.dimensions == []
    assert blueprint.is_fully_mapped is False
    with pytest.raises(MappingIncompleteError, match="no dimensions"):
        require_fully_mapped(blueprint)


def test_pending_mappings_are_ignored(materializer, make_rule):
    pending = FieldMapping(original_term="Beer", erp_field_name="item_class_code", status="pending")

    blueprint = materializer.materialize_rule(make_rule(product_categories=["Beer"]), [pending])

    assert blueprint.unmapped_fields == ["product: Beer"]


def test_formula_fields_outside_sales_schema_become_dimensions(make_rule):
    rule = make_rule(
        rule_type="formula",
        base_rate=None,
        formula_definition={
            "kind": "binary", "op": "*",
            "left": {"kind": "field", "field": "quantity"},
            "right": {"kind": "field", "field": "freight_charge"},
        },
    )

    dimensions = extract_dimensions(rule)

    assert [(d.dimension_type, d.match_value) for d in dimensions] == [
        (DimensionType.SALES_FIELD, "freight_charge")
    ]


def test_container_rule_binds_rate_card_sizes(make_rule):
    rule = make_rule(
        rule_type="container_size_tiered",
        base_rate=None,
        container_size_rates=[{"size": "1-gallon", "base_rate": "1.25"}, {"size": "5-gallon", "base_rate": "5"}],
    )

    assert [d.match_value for d in extract_dimensions(rule)] == ["1-gallon", "5-gallon"]


def test_unchanged_rule_keeps_previous_version(materializer, beer_us_rule, beer_mapping):
    previous = materializer.materialize_rule(beer_us_rule, [beer_mapping]).model_copy(update={"id": 10})

    again = materializer.materialize_rule(beer_us_rule, [beer_mapping], previous)

    assert again is previous


def test_changed_mappings_create_new_version(materializer, beer_us_rule, beer_mapping, territory_mapping):
    previous = materializer.materialize_rule(beer_us_rule, [beer_mapping]).model_copy(update={"id": 10})

    updated = materializer.materialize_rule(beer_us_rule, [beer_mapping, territory_mapping], previous)

    assert updated.id is None
    assert updated.version == 2
    assert updated.predecessor_id == 10
    assert updated.is_fully_mapped is True


def test_blueprint_rehydrates_source_rule(materializer, beer_us_rule, beer_mapping):
    blueprint = materializer.materialize_rule(beer_us_rule, [beer_mapping])

    assert blueprint_rule(blueprint).model_dump() == beer_us_rule.model_dump()


def test_materialize_contract_summary(materializer, make_rule, beer_mapping, territory_mapping):
    fully = make_rule(id=11, rule_name="Beer US", product_categories=["Beer"], territories=["US"])
    partial = make_rule(id=12, rule_name="Wine", product_categories=["Wine"])
    wildcard = make_rule(id=13, rule_name="Everything Else", priority=99)
    retired = make_rule(id=14, rule_name="Retired", is_active=False)
    mappings = [beer_mapping, territory_mapping]

    existing = {11: materializer.materialize_rule(fully, mappings).model_copy(update={"id": 100})}
    summary = materializer.materialize_contract(7, [fully, partial, wildcard, retired], mappings, existing)

    assert summary.contract_id == 7
    assert summary.unchanged == 1
    assert summary.blueprints_created == 2
    assert summary.fully_mapped == 1
    assert summary.partially_mapped == 1
    assert [b.name for b in summary.blueprints] == ["Beer US", "Wine", "Everything Else"]
    assert summary.blueprints[0].id == 100
