"""Resolve compiled factory graphs by workflow id."""

from __future__ import annotations

import importlib
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from taskfactory.errors import FactoryLoadError, GraphValidationError
from taskfactory.factory.primitives import FactoryDefinition, compile_factory
from taskfactory.factory.states import FactoryGraph
from taskfactory.factory.validator import InvariantViolation, ensure_valid

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FactoryCheck:
    """Compile outcome of one factory found at an import path."""

    source: str
    factory_id: str | None
    violations: list[InvariantViolation] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return not self.violations and self.error is None


class FactoryRegistry:
    """In-process map of workflow id to compiled graph."""

    def __init__(self, factories: Iterable[FactoryGraph | FactoryDefinition] = ()) -> None:
        self._graphs: dict[str, FactoryGraph] = {}
        for item in factories:
            self.register(item)

    @classmethod
    def from_import_paths(cls, import_paths: Iterable[str]) -> FactoryRegistry:
        registry = cls()
        for import_path in import_paths:
            for item in load_factory_objects(import_path):
                registry.register(item)
        return registry

    def register(self, item: FactoryGraph | FactoryDefinition) -> FactoryGraph:
        graph = compile_factory(item) if isinstance(item, FactoryDefinition) else ensure_valid(item)
        if graph.id in self._graphs:
            raise FactoryLoadError(f"Duplicate factory id: {graph.id}")
        self._graphs[graph.id] = graph
        logger.debug("Registered factory %s", graph.id)
        return graph

    def get(self, workflow_id: str) -> FactoryGraph:
        graph = self._graphs.get(workflow_id)
        if graph is None:
            raise FactoryLoadError(f"Unknown factory: {workflow_id}")
        return graph

    def ids(self) -> list[str]:
        return sorted(self._graphs)


def load_factory_objects(import_path: str) -> list[FactoryGraph | FactoryDefinition]:
    """Import `module:attribute` (or a module exposing `FACTORIES`).

    The attribute may be a definition, a compiled graph, a zero-argument
    builder returning one, or a list mixing any of those.
    """

    module_name, _, attribute = import_path.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as error:
        raise FactoryLoadError(f"Cannot import factory module {module_name!r}: {error}") from error

    attribute = attribute or "FACTORIES"
    if not hasattr(module, attribute):
        raise FactoryLoadError(f"Module {module_name!r} has no attribute {attribute!r}")
    value = getattr(module, attribute)
    if callable(value) and not isinstance(value, FactoryDefinition | FactoryGraph):
        value = value()
    items = list(value) if isinstance(value, list | tuple) else [value]
    items = [_build(item) for item in items]
    for item in items:
        if not isinstance(item, FactoryDefinition | FactoryGraph):
            raise FactoryLoadError(
                f"{import_path} provides {type(item).__name__}, expected a factory definition",
            )
    return items


def check_factories(import_paths: Iterable[str]) -> list[FactoryCheck]:
    """Compile every factory without registering it, collecting violations."""

    checks: list[FactoryCheck] = []
    for import_path in import_paths:
        try:
            items = load_factory_objects(import_path)
        except GraphValidationError as error:
            # A builder compiled its factory eagerly and failed.
            checks.append(
                FactoryCheck(
                    source=import_path,
                    factory_id=error.graph_id,
                    violations=error.violations,
                ),
            )
            continue
        except (FactoryLoadError, ValueError) as error:
            checks.append(FactoryCheck(source=import_path, factory_id=None, error=str(error)))
            continue
        for item in items:
            try:
                if isinstance(item, FactoryDefinition):
                    compile_factory(item)
                else:
                    ensure_valid(item)
            except GraphValidationError as error:
                checks.append(
                    FactoryCheck(
                        source=import_path,
                        factory_id=item.id,
                        violations=error.violations,
                    ),
                )
            except ValueError as error:
                checks.append(
                    FactoryCheck(source=import_path, factory_id=item.id, error=str(error)),
                )
            else:
                checks.append(FactoryCheck(source=import_path, factory_id=item.id))
    return checks


def _build(item: object) -> object:
    if callable(item) and not isinstance(item, FactoryDefinition | FactoryGraph):
        return item()
    return item
