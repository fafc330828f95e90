from __future__ import annotations

import importlib
from typing import Callable, Protocol

from .catalog import Catalog
from .errors import EngineLoadError


class RelocationEngine(Protocol):
    """Double-difference relocation engine bound to a background catalog."""

    catalog: Catalog

    def relocate_single_event(self, single_event: Catalog) -> Catalog:
        """Relocate the only event of ``single_event`` against the background catalog.

        The returned catalog holds exactly one event, its phases and the
        stations they reference.
        """
        ...

    def relocate_catalog(self, force: bool, use_external_associator: bool) -> Catalog: ...

    def preload_data(self) -> None: ...

    def clean_unused_resources(self) -> None: ...

    def set_catalog(self, catalog: Catalog) -> None: ...


# factory(catalog, relocation_config, working_dir, **options)
EngineFactory = Callable[..., RelocationEngine]


def load_engine_factory(entry_point: str) -> EngineFactory:
    """Resolve ``package.module:attribute`` to an engine factory."""
    module_name, sep, attr = entry_point.partition(":")
    if not sep or not module_name or not attr:
        raise EngineLoadError(f"engine factory must look like 'module:attribute', got {entry_point!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise EngineLoadError(f"cannot import engine module {module_name!r}") from exc
    factory = module
    for part in attr.split("."):
        factory = getattr(factory, part, None)
        if factory is None:
            raise EngineLoadError(f"engine module {module_name!r} has no attribute {attr!r}")
    if not callable(factory):
        raise EngineLoadError(f"engine factory {entry_point!r} is not callable")
    return factory
