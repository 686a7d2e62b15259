from __future__ import annotations

import pytest

from winiso_builder.lib.dism import ImageInfo
from winiso_builder.lib.editions import normalize_arch, select_image

CONSUMER = [
    ImageInfo(index=1, name="Windows 11 Home"),
    ImageInfo(index=2, name="Windows 11 Home N"),
    ImageInfo(index=5, name="Windows 11 Education"),
    ImageInfo(index=6, name="Windows 11 Pro"),
    ImageInfo(index=7, name="Windows 11 Pro N"),
]

LTSC = [
    ImageInfo(index=1, name="Windows 10 Enterprise 2021"),
    ImageInfo(index=2, name="Windows 10 IoT Enterprise LTSC 2021"),
    ImageInfo(index=3, name="Windows 10 Enterprise LTSC 2021"),
]


def test_auto_prefers_pro() -> None:
    assert select_image(CONSUMER, "auto").index == 6


def test_single_image_is_selected_directly() -> None:
    only = [ImageInfo(index=3, name="Windows 11 Pro for Workstations")]
    assert select_image(only).index == 3


def test_explicit_index_and_name() -> None:
    assert select_image(CONSUMER, "7").name == "Windows 11 Pro N"
    assert select_image(CONSUMER, 1).name == "Windows 11 Home"
    assert select_image(CONSUMER, "windows 11 pro").index == 6
    assert select_image(CONSUMER, "Education").index == 5


def test_ambiguous_or_missing_names_raise() -> None:
    with pytest.raises(RuntimeError, match="ambiguous"):
        select_image(CONSUMER, "Home")
    with pytest.raises(RuntimeError, match="No edition"):
        select_image(CONSUMER, "Enterprise")
    with pytest.raises(RuntimeError, match="index 9"):
        select_image(CONSUMER, 9)


def test_ltsc_preference() -> None:
    assert select_image(LTSC, prefer_ltsc=True).index == 3


def test_ltsc_requires_ltsc_edition() -> None:
    with pytest.raises(RuntimeError, match="LTSC"):
        select_image(CONSUMER, prefer_ltsc=True)


def test_empty_image_list_raises() -> None:
    with pytest.raises(RuntimeError):
        select_image([])


def test_unknown_editions_fall_back_to_first() -> None:
    odd = [ImageInfo(index=4, name="Custom A"), ImageInfo(index=9, name="Custom B")]
    assert select_image(odd).index == 4


@pytest.mark.parametrize("raw,expected", [("x64", "amd64"), ("AMD64", "amd64"), ("arm64", "arm64"), ("x86", "x86"), (None, None)])
def test_normalize_arch(raw, expected) -> None:
    assert normalize_arch(raw) == expected
