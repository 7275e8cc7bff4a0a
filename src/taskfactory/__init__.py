"""Declarative task lifecycle graphs compiled and executed tick by tick."""

__version__ = "0.1.0"
