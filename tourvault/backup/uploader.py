from __future__ import annotations

import logging
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone

from tourvault.core.path_safety import sanitize_name
from tourvault.storage.blob import BlobStore

logger = logging.getLogger(__name__)

MERGE_SCRIPT_TEMPLATE = '''#!/usr/bin/env python3
"""Combine every part of backup {job_id} into a single archive."""
import re
import sys
import zipfile
from pathlib import Path

PART_PATTERN = re.compile(r"_part(\\d{{3}})_.*\\.zip$")


def main() -> int:
    folder = Path(sys.argv[1]) if len(sys.argv) > 1 else Path(__file__).resolve().parent
    parts = {{}}
    for candidate in sorted(folder.glob("*_part*.zip")):
        match = PART_PATTERN.search(candidate.name)
        if match:
            parts[int(match.group(1))] = candidate
    expected = list(range(1, {total_parts} + 1))
    missing = [number for number in expected if number not in parts]
    if missing:
        print("Missing parts: " + ", ".join(str(number) for number in missing))
        return 1
    output = folder / "{safe_title}_complete.zip"
    seen = set()
    with zipfile.ZipFile(output, "w", compression=zipfile.ZIP_DEFLATED) as merged:
        for number in expected:
            with zipfile.ZipFile(parts[number]) as part:
                for info in part.infolist():
                    if info.filename in seen:
                        continue
                    seen.add(info.filename)
                    merged.writestr(info, part.read(info.filename))
    print("Merged {{}} parts into {{}}".format(len(expected), output))
    return 0


if __name__ == "__main__":
    sys.exit(main())
'''

MERGE_SHELL_TEMPLATE = """#!/bin/sh
cd "$(dirname "$0")" && python3 merge_parts.py "$@"
"""

MERGE_BATCH_TEMPLATE = """@echo off
cd /d "%~dp0"
python merge_parts.py %*
"""

INSTRUCTIONS_TEMPLATE = """Backup of "{title}"
Job: {job_id}
Parts: {total_parts}

Each part is a standalone ZIP archive that can be opened on its own.
To rebuild one archive containing the whole tour:

  1. Download every part (files named *_part001_*.zip ... *_part{last:03d}_*.zip)
     into the same folder together with merge_parts.py.
  2. Run merge_parts.sh (macOS/Linux) or merge_parts.bat (Windows),
     or run "python3 merge_parts.py" directly.
  3. The result is written to {safe_title}_complete.zip.
"""


def content_fingerprint(data: bytes) -> str:
    return f"crc32:{zlib.crc32(data) & 0xFFFFFFFF:08x}"


@dataclass(frozen=True)
class UploadedPart:
    storage_path: str
    file_url: str
    file_size: int
    file_hash: str
    download_name: str


class PartUploader:
    def __init__(self, blob_store: BlobStore, *, url_ttl_seconds: int):
        self._blob_store = blob_store
        self._url_ttl_seconds = url_ttl_seconds

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def job_folder(self, owner_id: str, job_id: str) -> str:
        return f"{sanitize_name(owner_id, fallback='owner')}/{job_id}"

    def build_storage_path(self, *, owner_id: str, job_id: str, tour_title: str, part_number: int) -> str:
        stamp = self._now().strftime("%Y%m%dT%H%M%S%fZ")
        safe_title = sanitize_name(tour_title, fallback="tour")
        return f"{self.job_folder(owner_id, job_id)}/{safe_title}_part{part_number:03d}_{stamp}.zip"

    def upload_part(
        self,
        *,
        owner_id: str,
        job_id: str,
        tour_title: str,
        part_number: int,
        total_parts: int,
        data: bytes,
    ) -> UploadedPart:
        storage_path = self.build_storage_path(
            owner_id=owner_id, job_id=job_id, tour_title=tour_title, part_number=part_number
        )
        self._blob_store.upload(storage_path, data)

        safe_title = sanitize_name(tour_title, fallback="tour")
        download_name = f"{safe_title}_part{part_number:03d}_of_{total_parts:03d}.zip"
        file_url = self._blob_store.signed_url(
            storage_path, expires_in=self._url_ttl_seconds, download_name=download_name
        )

        if part_number == 1:
            self._upload_merge_helpers(
                owner_id=owner_id, job_id=job_id, tour_title=tour_title, total_parts=total_parts
            )

        logger.info("Uploaded part %s/%s of job %s to %s (%s bytes)", part_number, total_parts, job_id, storage_path, len(data))
        return UploadedPart(
            storage_path=storage_path,
            file_url=file_url,
            file_size=len(data),
            file_hash=content_fingerprint(data),
            download_name=download_name,
        )

    def _upload_merge_helpers(self, *, owner_id: str, job_id: str, tour_title: str, total_parts: int) -> None:
        folder = self.job_folder(owner_id, job_id)
        safe_title = sanitize_name(tour_title, fallback="tour")
        helpers = {
            "merge_parts.py": MERGE_SCRIPT_TEMPLATE.format(
                job_id=job_id, total_parts=total_parts, safe_title=safe_title
            ),
            "merge_parts.sh": MERGE_SHELL_TEMPLATE,
            "merge_parts.bat": MERGE_BATCH_TEMPLATE.replace("\n", "\r\n"),
            "INSTRUCTIONS.txt": INSTRUCTIONS_TEMPLATE.format(
                title=tour_title,
                job_id=job_id,
                total_parts=total_parts,
                last=total_parts,
                safe_title=safe_title,
            ),
        }
        for name, content in helpers.items():
            self._blob_store.upload(f"{folder}/{name}", content.encode("utf-8"), overwrite=True)
