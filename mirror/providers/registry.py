"""mirror.providers.registry

Provider strategies by name.

``@register("evm", cursor_kind="height")`` puts a class on the list;
``build_provider`` picks one for a chain from its config. Strategy modules
are imported on first lookup, so adding a provider is adding a module.
"""

from __future__ import annotations

import importlib
import pkgutil
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from mirror.core.exceptions import ConfigError
from mirror.providers.base import ChainProvider, CursorKind, ProviderContext

# Modules in this package that hold no strategies.
_PLUMBING = frozenset({"base", "registry"})


@dataclass(frozen=True, slots=True)
class ProviderSpec:
    name: str
    cursor_kind: CursorKind
    factory: type[Any]


_PROVIDERS: dict[str, ProviderSpec] = {}
_discovered = False


def register(name: str, *, cursor_kind: CursorKind) -> Callable[[type[Any]], type[Any]]:
    def _decorator(cls: type[Any]) -> type[Any]:
        existing = _PROVIDERS.get(name)
        if existing is not None and existing.factory is not cls:
            raise ValueError(f"provider {name!r} is already registered by {existing.factory.__qualname__}")
        cls.name = name
        cls.cursor_kind = cursor_kind
        _PROVIDERS[name] = ProviderSpec(name=name, cursor_kind=cursor_kind, factory=cls)
        return cls

    return _decorator


def discover() -> None:
    """Import every strategy module under ``mirror.providers`` once."""

    global _discovered
    if _discovered:
        return
    pkg = importlib.import_module("mirror.providers")
    for info in pkgutil.iter_modules(pkg.__path__):
        if info.name not in _PLUMBING:
            importlib.import_module(f"{pkg.__name__}.{info.name}")
    _discovered = True


def get_spec(name: str) -> ProviderSpec:
    spec = _PROVIDERS.get(name)
    if spec is None:
        discover()
        spec = _PROVIDERS.get(name)
    if spec is None:
        known = ", ".join(sorted(_PROVIDERS)) or "none"
        raise KeyError(f"unknown provider {name!r} (known: {known})")
    return spec


def get_provider(name: str) -> type[ChainProvider]:
    return get_spec(name).factory


def list_providers(cursor_kind: CursorKind | None = None) -> list[str]:
    discover()
    return sorted(n for n, s in _PROVIDERS.items() if cursor_kind is None or s.cursor_kind == cursor_kind)


def build_provider(ctx: ProviderContext) -> ChainProvider:
    """Instantiate the strategy named by ``ctx.chain.provider``."""

    try:
        spec = get_spec(ctx.chain.provider)
    except KeyError as e:
        raise ConfigError(f"{ctx.chain.key}: {e.args[0]}") from e
    return spec.factory(ctx)
