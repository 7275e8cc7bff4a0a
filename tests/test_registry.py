from __future__ import annotations

import allure
import pytest

from taskfactory.errors import FactoryLoadError, GraphValidationError
from taskfactory.factories import build_review_draft
from taskfactory.factory import FactoryDefinition, end, step
from taskfactory.runner.registry import FactoryRegistry, check_factories, load_factory_objects

pytestmark = [
    allure.epic("Factory Compiler"),
    allure.feature("Factory Registry"),
]


def _definition(factory_id: str = "tiny", *, target: str = "done") -> FactoryDefinition:
    return FactoryDefinition(
        id=factory_id,
        start="work",
        states={
            "work": step(lambda payload: {"status": "done"}, on={"done": target, "failed": "done"}),
            "done": end("done"),
        },
    )


def test_load_default_module_builds_bundled_factories() -> None:
    items = load_factory_objects("taskfactory.factories")

    assert sorted(item.id for item in items) == ["magic-8", "review-draft"]


def test_load_single_builder_attribute() -> None:
    items = load_factory_objects("taskfactory.factories:build_review_draft")

    assert [item.id for item in items] == ["review-draft"]


@pytest.mark.parametrize(
    ("import_path", "match"),
    [
        ("taskfactory.nowhere", "Cannot import factory module"),
        ("taskfactory.factories:MISSING", "has no attribute 'MISSING'"),
        ("taskfactory.factories.examples:RESPONSES", "expected a factory definition"),
    ],
)
def test_load_rejects_bad_import_paths(import_path: str, match: str) -> None:
    with pytest.raises(FactoryLoadError, match=match):
        load_factory_objects(import_path)


def test_registry_compiles_definitions_and_rejects_duplicates() -> None:
    registry = FactoryRegistry([_definition(), build_review_draft()])

    assert registry.ids() == ["review-draft", "tiny"]
    assert registry.get("tiny").states["work"].routes.done == "done"
    with pytest.raises(FactoryLoadError, match="Duplicate factory id: tiny"):
        registry.register(_definition())
    with pytest.raises(FactoryLoadError, match="Unknown factory: other"):
        registry.get("other")


def test_registry_refuses_invalid_definitions() -> None:
    with pytest.raises(GraphValidationError, match="transition target `ghost` does not exist"):
        FactoryRegistry([_definition(target="ghost")])


def test_check_factories_reports_each_source() -> None:
    checks = check_factories(["taskfactory.factories", "taskfactory.nowhere"])

    assert [(item.factory_id, item.ok) for item in checks] == [
        ("review-draft", True),
        ("magic-8", True),
        (None, False),
    ]
    assert "Cannot import factory module" in (checks[2].error or "")
