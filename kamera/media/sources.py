"""
Capture source descriptors and their deterministic cycle order.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List

FRONT_MARKERS = ("front", "user", "frontal")
MAIN_MARKERS = ("main", "primary")
AUXILIARY_MARKERS = ("wide", "ultra")


class FacingClass(str, Enum):
    FRONT = "front"
    BACK_MAIN = "back-main"
    BACK_AUXILIARY = "back-auxiliary"
    UNKNOWN = "unknown"


def _contains(label: str, markers: Iterable[str]) -> bool:
    return any(marker in label for marker in markers)


def is_front(label: str) -> bool:
    return _contains((label or "").lower(), FRONT_MARKERS)


def is_main(label: str) -> bool:
    """A non-front lens is "main" when marked so or not marked auxiliary."""

    lowered = (label or "").lower()
    return _contains(lowered, MAIN_MARKERS) or not _contains(lowered, AUXILIARY_MARKERS)


def classify_facing(label: str) -> FacingClass:
    if not (label or "").strip():
        return FacingClass.UNKNOWN
    if is_front(label):
        return FacingClass.FRONT
    if is_main(label):
        return FacingClass.BACK_MAIN
    return FacingClass.BACK_AUXILIARY


@dataclass(frozen=True)
class MediaSourceDescriptor:
    id: str
    label: str = ""
    facing: FacingClass = FacingClass.UNKNOWN

    @classmethod
    def from_label(cls, device_id: str, label: str) -> "MediaSourceDescriptor":
        return cls(id=str(device_id), label=str(label or ""), facing=classify_facing(label))


def _sort_key(descriptor: MediaSourceDescriptor) -> tuple:
    if is_front(descriptor.label):
        return (1, 0)
    return (0, 0 if is_main(descriptor.label) else 1)


def order_sources(descriptors: Iterable[MediaSourceDescriptor]) -> List[MediaSourceDescriptor]:
    """
    Order sources main-back, auxiliary-back, then front.

    ``sorted`` is stable, so descriptors with equal rank keep their input order.
    """

    return sorted(descriptors, key=_sort_key)
