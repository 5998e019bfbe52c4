"""Tests for the variant registry and selection."""

import pytest

from arch_vm_builder.domain.models import VariantSpec
from arch_vm_builder.images import BASE_VARIANT, VariantRegistry, default_registry
from arch_vm_builder.storage.exceptions import (
    ReservedVariantError,
    SelectionError,
    UnknownVariantError,
)


def noop(ctx):
    pass


def make_variant(name, **kwargs):
    return VariantSpec(name=name, image_name=f"{name}-{{build_version}}.img", pre=noop, **kwargs)


@pytest.fixture
def registry():
    return VariantRegistry(
        [make_variant("base"), make_variant("zeta"), make_variant("alpha"), make_variant("mid")]
    )


class TestRegistry:
    """Tests for registration and lookup."""

    def test_names_are_sorted_and_exclude_base(self, registry):
        assert registry.names() == ["alpha", "mid", "zeta"]

    def test_get(self, registry):
        assert registry.get("alpha").name == "alpha"

    def test_get_base_is_reserved(self, registry):
        with pytest.raises(ReservedVariantError):
            registry.get(BASE_VARIANT)

    def test_get_unknown(self, registry):
        with pytest.raises(UnknownVariantError) as excinfo:
            registry.get("omega")
        assert excinfo.value.available == ["alpha", "mid", "zeta"]

    def test_base_property(self, registry):
        assert registry.base.name == "base"

    def test_missing_base(self):
        with pytest.raises(UnknownVariantError):
            VariantRegistry([make_variant("alpha")]).base

    def test_duplicate_registration(self, registry):
        with pytest.raises(ValueError, match="already registered"):
            registry.register(make_variant("alpha"))

    def test_contains(self, registry):
        assert "alpha" in registry
        assert "base" in registry
        assert "omega" not in registry


class TestSelect:
    """Tests for resolving the IMAGES selection."""

    @pytest.mark.parametrize("raw", [None, "", "  ", ",", " , "])
    def test_empty_selection_selects_all_but_base(self, registry, raw):
        assert [v.name for v in registry.select(raw)] == ["alpha", "mid", "zeta"]

    def test_explicit_selection_keeps_order(self, registry):
        assert [v.name for v in registry.select("zeta,alpha")] == ["zeta", "alpha"]

    def test_whitespace_and_blank_items(self, registry):
        assert [v.name for v in registry.select(" mid , ,alpha ")] == ["mid", "alpha"]

    def test_duplicates_kept_once(self, registry):
        assert [v.name for v in registry.select("alpha,zeta,alpha")] == ["alpha", "zeta"]

    def test_base_is_rejected(self, registry):
        with pytest.raises(ReservedVariantError, match="'base' image cannot be selected"):
            registry.select("alpha,base")

    def test_unknown_is_rejected(self, registry):
        with pytest.raises(UnknownVariantError, match="omega"):
            registry.select("alpha,omega")

    def test_selection_errors_share_a_base(self, registry):
        for raw in ("base", "omega"):
            with pytest.raises(SelectionError):
                registry.select(raw)


class TestDefaultRegistry:
    """Tests for the shipped definitions."""

    def test_shipped_variants(self):
        registry = default_registry()
        assert registry.names() == ["basic", "yandex-cloud-image"]
        assert registry.base.name == "base"

    def test_base_packages(self):
        packages = default_registry().base.packages
        assert {"base", "linux", "grub", "btrfs-progs"} <= packages

    def test_basic_variant(self):
        basic = default_registry().get("basic")
        assert basic.disk_size == "40G"
        assert basic.packages == frozenset()
        assert basic.services == frozenset()
        assert basic.artifact_name("20240101.0") == "Arch-Linux-x86_64-basic-20240101.0.qcow2"
        assert basic.post is not None

    def test_yandex_variant(self):
        yandex = default_registry().get("yandex-cloud-image")
        assert yandex.disk_size is None
        assert yandex.packages == {"cloud-init", "cloud-guest-utils", "gptfdisk"}
        assert "cloud-init-main.service" in yandex.services
        assert yandex.artifact_name("1.0") == "Arch-Linux-x86_64-yandex-cloudimg-1.0.qcow2"
