"""
Lightweight adapter registry.

Adapters register metadata here so configuration validation can occur without
loading adapter code.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence, Tuple


@dataclass(frozen=True)
class AdapterDescriptor:
    """Metadata describing an importer adapter."""

    name: str
    title: str
    optional_dependencies: Tuple[str, ...] = ()
    summary: str | None = None


def get_adapter_registry() -> Mapping[str, AdapterDescriptor]:
    """
    Return the registry of supported adapters.
    """
    return OrderedDict(
        (
            (
                "stripe_csv",
                AdapterDescriptor(
                    name="stripe_csv",
                    title="Stripe Payments CSV",
                    summary="Load donations from a Stripe unified payments export.",
                ),
            ),
        )
    )


def resolve_adapters(
    configured: Sequence[str],
    registry: Mapping[str, AdapterDescriptor] | None = None,
) -> Iterable[AdapterDescriptor]:
    """
    Map configured adapter names to registry descriptors, raising on unknowns.
    """
    registry = registry or get_adapter_registry()
    unknown = sorted({adapter for adapter in configured if adapter not in registry})
    if unknown:
        raise ValueError(
            "Unknown importer adapters configured: "
            + ", ".join(unknown)
            + ". Update configuration or register these adapters first."
        )
    return tuple(registry[name] for name in configured)
