"""Factories bundled with the package, loaded when none are configured."""

from taskfactory.factories.examples import FACTORIES, build_magic_eight, build_review_draft

__all__ = ["FACTORIES", "build_magic_eight", "build_review_draft"]
