from __future__ import annotations

from collections import defaultdict
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from tourvault.db.models import FloorPlan, Hotspot, PanoramaPhoto, Tour
from tourvault.tours.types import FloorNode, PhotoNode, PointNode, TourTree


class TourNotFoundError(RuntimeError):
    pass


class TourSource(Protocol):
    def load_tree(self, tour_id: str) -> TourTree:
        ...


class SqlTourSource:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def load_tree(self, tour_id: str) -> TourTree:
        with self._session_factory() as session:
            tour = session.get(Tour, tour_id)
            if tour is None:
                raise TourNotFoundError(f"Tour not found: {tour_id}")

            floors = list(
                session.scalars(
                    select(FloorPlan)
                    .where(FloorPlan.tour_id == tour_id)
                    .order_by(FloorPlan.display_order.asc(), FloorPlan.created_at.asc(), FloorPlan.id.asc())
                ).all()
            )
            floor_ids = [floor.id for floor in floors]

            hotspots: list[Hotspot] = []
            if floor_ids:
                hotspots = list(
                    session.scalars(
                        select(Hotspot).where(Hotspot.floor_plan_id.in_(floor_ids)).order_by(Hotspot.id.asc())
                    ).all()
                )
            hotspot_ids = [hotspot.id for hotspot in hotspots]

            photos: list[PanoramaPhoto] = []
            if hotspot_ids:
                photos = list(
                    session.scalars(
                        select(PanoramaPhoto)
                        .where(PanoramaPhoto.hotspot_id.in_(hotspot_ids))
                        .order_by(PanoramaPhoto.id.asc())
                    ).all()
                )

        photos_by_hotspot: dict[str, list[PhotoNode]] = defaultdict(list)
        for photo in photos:
            photos_by_hotspot[photo.hotspot_id].append(
                PhotoNode(
                    id=photo.id,
                    image_url=photo.photo_url,
                    capture_date=photo.capture_date,
                    display_order=photo.display_order,
                    original_filename=photo.original_filename,
                    description=photo.description,
                )
            )

        points_by_floor: dict[str, list[PointNode]] = defaultdict(list)
        for hotspot in hotspots:
            points_by_floor[hotspot.floor_plan_id].append(
                PointNode(
                    id=hotspot.id,
                    title=hotspot.title,
                    description=hotspot.description,
                    x_position=hotspot.x_position,
                    y_position=hotspot.y_position,
                    photos=tuple(photos_by_hotspot.get(hotspot.id, ())),
                )
            )

        return TourTree(
            id=tour.id,
            title=tour.title,
            owner_id=tour.owner_id,
            tenant_id=tour.tenant_id,
            floors=tuple(
                FloorNode(
                    id=floor.id,
                    name=floor.name,
                    image_url=floor.image_url,
                    points=tuple(points_by_floor.get(floor.id, ())),
                )
                for floor in floors
            ),
        )
