from __future__ import annotations

import pytest

from winiso_builder.lib.manifests import load_store_manifest
from winiso_builder.lib.packages import StorePackage, match_prefixes, order_by_dependencies


def test_match_prefixes_is_case_insensitive_and_order_preserving() -> None:
    names = [
        "Microsoft.BingNews_4.2_neutral_~_8wekyb3d8bbwe",
        "Microsoft.WindowsCalculator_11.2_neutral_~_8wekyb3d8bbwe",
        "clipchamp.clipchamp_2.2_neutral_~_yxz26nhyzhsrt",
        "Microsoft.BingNews_4.2_neutral_~_8wekyb3d8bbwe",
    ]
    assert match_prefixes(names, ["Clipchamp.Clipchamp", "microsoft.bingnews"]) == [
        "Microsoft.BingNews_4.2_neutral_~_8wekyb3d8bbwe",
        "clipchamp.clipchamp_2.2_neutral_~_yxz26nhyzhsrt",
    ]


def test_match_prefixes_ignores_empty_prefix() -> None:
    assert match_prefixes(["a", "b"], [""]) == []


def test_order_by_dependencies_is_stable() -> None:
    pkgs = [
        StorePackage(id="Store", file="s.msixbundle", depends=("VCLibs", "Xaml")),
        StorePackage(id="VCLibs", file="v.appx"),
        StorePackage(id="Purchase", file="p.appxbundle", depends=("Store",)),
        StorePackage(id="Xaml", file="x.appx"),
    ]
    assert [p.id for p in order_by_dependencies(pkgs)] == ["VCLibs", "Xaml", "Store", "Purchase"]


def test_order_by_dependencies_errors() -> None:
    with pytest.raises(ValueError, match="unknown"):
        order_by_dependencies([StorePackage(id="A", file="a", depends=("B",))])
    with pytest.raises(ValueError, match="cycle"):
        order_by_dependencies(
            [StorePackage(id="A", file="a", depends=("B",)), StorePackage(id="B", file="b", depends=("A",))]
        )
    with pytest.raises(ValueError, match="Duplicate"):
        order_by_dependencies([StorePackage(id="A", file="a"), StorePackage(id="A", file="b")])


def test_bundled_store_manifest_orders_frameworks_first() -> None:
    pkgs = [StorePackage.from_mapping(raw) for raw in load_store_manifest()]
    ordered = [p.id for p in order_by_dependencies(pkgs)]
    assert ordered.index("Microsoft.VCLibs.140.00") < ordered.index("Microsoft.WindowsStore")
    assert ordered.index("Microsoft.WindowsStore") < ordered.index("Microsoft.StorePurchaseApp")
    store = next(p for p in pkgs if p.id == "Microsoft.WindowsStore")
    assert store.license


def test_store_package_requires_id_and_file() -> None:
    with pytest.raises(ValueError):
        StorePackage.from_mapping({"id": "x"})
