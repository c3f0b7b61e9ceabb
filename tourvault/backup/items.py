from __future__ import annotations

import math
from dataclasses import dataclass, replace
from enum import Enum

from tourvault.db.models import BackupKind
from tourvault.tours.types import FloorNode, PhotoNode, PointNode, TourTree

_UNORDERED = 1 << 30


class ItemKind(str, Enum):
    FLOOR_PLAN = "floor_plan"
    PHOTO = "photo"


@dataclass(frozen=True)
class ArchiveItem:
    kind: ItemKind
    image_url: str
    floor_index: int
    point_index: int | None = None
    photo_index: int | None = None


def _photo_sort_key(photo: PhotoNode) -> tuple[bool, str, int, str]:
    display_order = photo.display_order if photo.display_order is not None else _UNORDERED
    return (photo.capture_date is None, photo.capture_date or "", display_order, photo.id)


def _point_sort_key(point: PointNode) -> tuple[str, str]:
    return (point.title, point.id)


def order_tree(tree: TourTree) -> TourTree:
    floors: list[FloorNode] = []
    for floor in tree.floors:
        points = tuple(
            replace(point, photos=tuple(sorted(point.photos, key=_photo_sort_key)))
            for point in sorted(floor.points, key=_point_sort_key)
        )
        floors.append(replace(floor, points=points))
    return replace(tree, floors=tuple(floors))


def flatten_items(tree: TourTree, kind: BackupKind) -> list[ArchiveItem]:
    ordered = order_tree(tree)
    items: list[ArchiveItem] = []
    for floor_index, floor in enumerate(ordered.floors):
        if kind == BackupKind.FULL and floor.image_url:
            items.append(ArchiveItem(kind=ItemKind.FLOOR_PLAN, image_url=floor.image_url, floor_index=floor_index))
        for point_index, point in enumerate(floor.points):
            for photo_index, photo in enumerate(point.photos):
                if not photo.image_url:
                    continue
                items.append(
                    ArchiveItem(
                        kind=ItemKind.PHOTO,
                        image_url=photo.image_url,
                        floor_index=floor_index,
                        point_index=point_index,
                        photo_index=photo_index,
                    )
                )
    return items


def compute_total_parts(total_items: int, items_per_part: int) -> int:
    if items_per_part <= 0:
        raise ValueError("items_per_part must be greater than zero")
    if total_items < 0:
        raise ValueError("total_items cannot be negative")
    return math.ceil(total_items / items_per_part)


def part_bounds(part_number: int, items_per_part: int, total_items: int) -> tuple[int, int]:
    if part_number < 1:
        raise ValueError("part_number must be >= 1")
    start = (part_number - 1) * items_per_part
    stop = min(part_number * items_per_part, total_items)
    return start, stop
