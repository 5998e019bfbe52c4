"""Registry of image variant definitions.

Each module in this package defines one ``VARIANT``. The ``base`` definition is
reserved: it supplies the bootstrap package list and the customization shared
by every image, and can never be selected as an output.
"""

from __future__ import annotations

from typing import Iterable, Optional

from arch_vm_builder.domain.models import VariantSpec
from arch_vm_builder.storage.exceptions import ReservedVariantError, UnknownVariantError


BASE_VARIANT = "base"


class VariantRegistry:
    def __init__(self, variants: Iterable[VariantSpec] = ()):
        self._variants: dict[str, VariantSpec] = {}
        for variant in variants:
            self.register(variant)

    def register(self, variant: VariantSpec) -> None:
        if variant.name in self._variants:
            raise ValueError(f"Variant '{variant.name}' is already registered")
        self._variants[variant.name] = variant

    def __contains__(self, name: str) -> bool:
        return name in self._variants

    def get(self, name: str) -> VariantSpec:
        if name == BASE_VARIANT:
            raise ReservedVariantError(name)
        try:
            return self._variants[name]
        except KeyError:
            raise UnknownVariantError(name, self.names()) from None

    @property
    def base(self) -> VariantSpec:
        try:
            return self._variants[BASE_VARIANT]
        except KeyError:
            raise UnknownVariantError(BASE_VARIANT, self.names()) from None

    def names(self) -> list[str]:
        """Selectable variant names, sorted; never includes base."""
        return sorted(name for name in self._variants if name != BASE_VARIANT)

    def select(self, raw: Optional[str]) -> list[VariantSpec]:
        """Resolve a comma-separated selection such as ``"basic,yandex-cloud-image"``.

        An empty or missing selection means every variant except base.

        Raises:
            ReservedVariantError: If base is requested
            UnknownVariantError: If a requested name is not defined
        """
        requested = [name.strip() for name in (raw or "").split(",") if name.strip()]
        if not requested:
            return [self._variants[name] for name in self.names()]

        selected: list[VariantSpec] = []
        for name in requested:
            variant = self.get(name)
            if variant not in selected:
                selected.append(variant)
        return selected


def default_registry() -> VariantRegistry:
    from . import base, basic, yandex_cloud

    return VariantRegistry([base.VARIANT, basic.VARIANT, yandex_cloud.VARIANT])


__all__ = ["BASE_VARIANT", "VariantRegistry", "default_registry"]
