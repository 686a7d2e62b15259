from __future__ import annotations

import logging
import re
from typing import List, Optional, Sequence, Union

from .dism import ImageInfo

logger = logging.getLogger(__name__)

# Ordered edition preferences for auto-detection, matched against image names.
STANDARD_PREFERENCE = [
    r"\bpro$",
    r"\bprofessional$",
    r"\bhome$",
    r"\benterprise$",
    r"\beducation$",
]
LTSC_PREFERENCE = [
    r"(?<!iot )\benterprise ltsc\b",
    r"\biot enterprise ltsc\b",
    r"\bltsc\b",
]

_ARCH = {
    "x64": "amd64",
    "amd64": "amd64",
    "x86_64": "amd64",
    "arm64": "arm64",
    "aarch64": "arm64",
    "x86": "x86",
    "i386": "x86",
}


def normalize_arch(arch: Optional[str]) -> Optional[str]:
    if not arch:
        return None
    a = arch.strip().lower()
    return _ARCH.get(a, a)


def is_ltsc(image: ImageInfo) -> bool:
    return "ltsc" in image.name.lower() or "ltsc" in (image.description or "").lower()


def _by_preference(images: Sequence[ImageInfo], patterns: Sequence[str]) -> Optional[ImageInfo]:
    for pat in patterns:
        rx = re.compile(pat, re.IGNORECASE)
        for img in images:
            if rx.search(img.name.strip()):
                return img
    return None


def select_image(
    images: Sequence[ImageInfo],
    wanted: Union[str, int, None] = "auto",
    *,
    prefer_ltsc: bool = False,
) -> ImageInfo:
    """Pick the image to service.

    wanted:
    - int or digit string: that index
    - name: exact (case-insensitive) match, then a unique substring match
    - "auto"/None: single image as-is, else the first preferred edition
    """

    if not images:
        raise RuntimeError("Image contains no editions")

    if isinstance(wanted, int) or (isinstance(wanted, str) and wanted.strip().isdigit()):
        idx = int(wanted)
        for img in images:
            if img.index == idx:
                return img
        raise RuntimeError(f"No image with index {idx} (have: {', '.join(str(i.index) for i in images)})")

    if wanted and str(wanted).strip().lower() != "auto":
        needle = str(wanted).strip().lower()
        exact = [i for i in images if i.name.strip().lower() == needle]
        if exact:
            return exact[0]
        partial = [i for i in images if needle in i.name.lower()]
        if len(partial) == 1:
            return partial[0]
        names = ", ".join(i.name for i in images)
        if partial:
            raise RuntimeError(f"Edition {wanted!r} is ambiguous (matches: {', '.join(i.name for i in partial)})")
        raise RuntimeError(f"No edition named {wanted!r} (have: {names})")

    if prefer_ltsc:
        candidates: List[ImageInfo] = [i for i in images if is_ltsc(i)]
        if not candidates:
            raise RuntimeError("LTSC build requested but the source image has no LTSC edition")
        chosen = _by_preference(candidates, LTSC_PREFERENCE) or candidates[0]
    elif len(images) == 1:
        chosen = images[0]
    else:
        chosen = _by_preference(images, STANDARD_PREFERENCE)
        if chosen is None:
            chosen = images[0]
            logger.warning("No preferred edition found; falling back to index %s (%s)", chosen.index, chosen.name)

    logger.info("Auto-selected edition index=%s name=%s", chosen.index, chosen.name)
    return chosen
