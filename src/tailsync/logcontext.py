"""Structured logging context passed explicitly through the call chain.

A ``ContextLogger`` wraps a standard ``logging.Logger`` and merges its bound
fields into the ``extra`` of every record, so the JSON formatter emits them as
top-level keys. Binding returns a new logger; nothing is mutated in place.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, MutableMapping
from typing import Any


class ContextLogger(logging.LoggerAdapter):  # type: ignore[type-arg]
    """Logger adapter carrying immutable structured context."""

    def __init__(self, logger: logging.Logger, context: Mapping[str, Any] | None = None) -> None:
        super().__init__(logger, dict(context or {}))

    @property
    def context(self) -> dict[str, Any]:
        return dict(self.extra or {})

    def bind(self, **fields: Any) -> ContextLogger:
        """Return a logger with additional context fields."""
        return ContextLogger(self.logger, {**(self.extra or {}), **fields})

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        # Per-call extra wins over bound context
        kwargs["extra"] = {**(self.extra or {}), **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str, **fields: Any) -> ContextLogger:
    """Get a context logger for a module, optionally pre-bound."""
    return ContextLogger(logging.getLogger(name), fields)
