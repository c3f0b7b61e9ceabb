from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class PhotoNode:
    id: str
    image_url: str
    capture_date: str | None = None
    display_order: int | None = None
    original_filename: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class PointNode:
    id: str
    title: str
    description: str | None = None
    x_position: float = 0.0
    y_position: float = 0.0
    photos: tuple[PhotoNode, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class FloorNode:
    id: str
    name: str
    image_url: str | None = None
    points: tuple[PointNode, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class TourTree:
    id: str
    title: str
    owner_id: str
    tenant_id: str | None = None
    floors: tuple[FloorNode, ...] = field(default_factory=tuple)

    @property
    def point_count(self) -> int:
        return sum(len(floor.points) for floor in self.floors)

    @property
    def photo_count(self) -> int:
        return sum(len(point.photos) for floor in self.floors for point in floor.points)
