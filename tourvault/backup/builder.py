from __future__ import annotations

import io
import json
import logging
import re
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import urlparse

from tourvault.backup.fetch import ImageFetcher, ImageFetchError
from tourvault.backup.items import ArchiveItem, ItemKind, flatten_items, order_tree
from tourvault.core.path_safety import sanitize_name
from tourvault.db.models import BackupKind
from tourvault.tours.types import FloorNode, PointNode, TourTree

logger = logging.getLogger(__name__)

_IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".gif", ".tif", ".tiff", ".bmp"}
_CAPTURE_DATE = re.compile(r"^(\d{4}-\d{2}-\d{2})")


class PartBuildError(RuntimeError):
    pass


@dataclass(frozen=True)
class SkippedItem:
    image_url: str
    archive_path: str
    reason: str


@dataclass(frozen=True)
class BuiltPart:
    data: bytes
    items_count: int
    skipped: tuple[SkippedItem, ...] = field(default_factory=tuple)
    missing: int = 0

    @property
    def size(self) -> int:
        return len(self.data)


def floor_folder_name(floor_index: int, floor: FloorNode) -> str:
    return f"{floor_index + 1:02d}_{sanitize_name(floor.name, fallback='floor')}"


def point_folder_name(point_index: int, point: PointNode) -> str:
    return f"{point_index + 1:03d}_{sanitize_name(point.title, fallback='point')}"


def image_extension(url: str) -> str:
    suffix = PurePosixPath(urlparse(url).path).suffix.lower()
    if suffix in _IMAGE_EXTENSIONS:
        return ".jpg" if suffix == ".jpeg" else suffix
    return ".jpg"


def photo_file_name(photo_index: int, capture_date: str | None, url: str) -> str:
    match = _CAPTURE_DATE.match(capture_date or "")
    prefix = match.group(1) if match else "undated"
    return f"{prefix}_{photo_index + 1:03d}{image_extension(url)}"


class PartBuilder:
    def __init__(self, fetcher: ImageFetcher, *, compression_level: int = 6):
        self._fetcher = fetcher
        self._compression_level = compression_level

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _archive_path(self, tree: TourTree, item: ArchiveItem) -> str:
        floor = tree.floors[item.floor_index]
        floor_dir = floor_folder_name(item.floor_index, floor)
        if item.kind == ItemKind.FLOOR_PLAN:
            return f"{floor_dir}/floor_plan{image_extension(item.image_url)}"

        assert item.point_index is not None and item.photo_index is not None
        point = floor.points[item.point_index]
        photo = point.photos[item.photo_index]
        point_dir = point_folder_name(item.point_index, point)
        return f"{floor_dir}/{point_dir}/{photo_file_name(item.photo_index, photo.capture_date, item.image_url)}"

    def _job_manifest(
        self,
        tree: TourTree,
        *,
        job_id: str,
        kind: BackupKind,
        part_number: int,
        total_parts: int,
        start: int,
        stop: int,
        total_items: int,
        created_at: datetime,
    ) -> dict[str, Any]:
        return {
            "job_id": job_id,
            "tour_id": tree.id,
            "tour_title": tree.title,
            "kind": kind.value,
            "floors_count": len(tree.floors),
            "points_count": tree.point_count,
            "photos_count": tree.photo_count,
            "total_items": total_items,
            "part_number": part_number,
            "total_parts": total_parts,
            "item_range": {"first": start + 1, "last": stop},
            "items_in_part": stop - start,
            "created_at": created_at.isoformat(),
        }

    def _floor_manifest(self, floor_index: int, floor: FloorNode) -> dict[str, Any]:
        return {
            "id": floor.id,
            "name": floor.name,
            "order": floor_index + 1,
            "has_image": bool(floor.image_url),
            "points_count": len(floor.points),
            "photos_count": sum(len(point.photos) for point in floor.points),
        }

    def _point_manifest(self, point_index: int, point: PointNode) -> dict[str, Any]:
        return {
            "id": point.id,
            "title": point.title,
            "description": point.description,
            "order": point_index + 1,
            "position": {"x": point.x_position, "y": point.y_position},
            "photos": [
                {
                    "id": photo.id,
                    "file": photo_file_name(index, photo.capture_date, photo.image_url),
                    "capture_date": photo.capture_date,
                    "display_order": photo.display_order,
                    "original_filename": photo.original_filename,
                    "description": photo.description,
                }
                for index, photo in enumerate(point.photos)
            ],
        }

    def _readme(self, tree: TourTree, *, part_number: int, total_parts: int, embedded: int, created_at: datetime) -> str:
        return "\n".join(
            [
                f"BACKUP PART {part_number} OF {total_parts}",
                f"Tour: {tree.title}",
                f"Created: {created_at.isoformat()}",
                "",
                f"Images in this part: {embedded}",
                "Folders are named <order>_<name>; photos are named <capture date>_<sequence>.",
                "Use merge_parts.py from the backup folder to combine every part into one archive.",
                "",
            ]
        )

    def build(
        self,
        tree: TourTree,
        *,
        job_id: str,
        kind: BackupKind,
        part_number: int,
        total_parts: int,
        start: int,
        stop: int,
    ) -> BuiltPart:
        ordered = order_tree(tree)
        items = flatten_items(ordered, kind)
        if start < 0 or start >= stop:
            raise PartBuildError(f"Invalid item range [{start}, {stop}) for {len(items)} items")
        if part_number < 1 or part_number > total_parts:
            raise PartBuildError(f"Invalid part number {part_number} of {total_parts}")
        available = min(stop, len(items))
        missing = stop - max(start, available)
        if missing:
            logger.warning(
                "Tour %s shrank since job %s was queued: %s items of part %s no longer exist",
                tree.id,
                job_id,
                missing,
                part_number,
            )

        created_at = self._now()
        include_manifests = kind == BackupKind.FULL
        buffer = io.BytesIO()
        skipped: list[SkippedItem] = []
        embedded = 0
        written_floors: set[int] = set()
        written_points: set[tuple[int, int]] = set()

        with zipfile.ZipFile(
            buffer,
            "w",
            compression=zipfile.ZIP_DEFLATED,
            compresslevel=self._compression_level,
        ) as archive:
            manifest = self._job_manifest(
                ordered,
                job_id=job_id,
                kind=kind,
                part_number=part_number,
                total_parts=total_parts,
                start=start,
                stop=max(start, available),
                total_items=len(items),
                created_at=created_at,
            )
            archive.writestr("backup_manifest.json", json.dumps(manifest, indent=2, ensure_ascii=False))

            for item in items[start:available]:
                floor = ordered.floors[item.floor_index]
                floor_dir = floor_folder_name(item.floor_index, floor)
                if include_manifests and item.floor_index not in written_floors:
                    archive.writestr(
                        f"{floor_dir}/floor.json",
                        json.dumps(self._floor_manifest(item.floor_index, floor), indent=2, ensure_ascii=False),
                    )
                    written_floors.add(item.floor_index)

                if item.point_index is not None:
                    point_key = (item.floor_index, item.point_index)
                    if include_manifests and point_key not in written_points:
                        point = floor.points[item.point_index]
                        archive.writestr(
                            f"{floor_dir}/{point_folder_name(item.point_index, point)}/point.json",
                            json.dumps(self._point_manifest(item.point_index, point), indent=2, ensure_ascii=False),
                        )
                        written_points.add(point_key)

                archive_path = self._archive_path(ordered, item)
                try:
                    payload = self._fetcher.fetch(item.image_url)
                except ImageFetchError as exc:
                    logger.warning("Skipping %s for job %s part %s: %s", archive_path, job_id, part_number, exc)
                    skipped.append(SkippedItem(image_url=item.image_url, archive_path=archive_path, reason=str(exc)))
                    continue
                archive.writestr(archive_path, payload)
                embedded += 1

            archive.writestr(
                "README.txt",
                self._readme(
                    ordered,
                    part_number=part_number,
                    total_parts=total_parts,
                    embedded=embedded,
                    created_at=created_at,
                ),
            )

        return BuiltPart(data=buffer.getvalue(), items_count=embedded, skipped=tuple(skipped), missing=missing)
