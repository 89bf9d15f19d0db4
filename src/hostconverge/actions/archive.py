"""Archive download and extraction adapter.

Remote archives are streamed to a temporary file next to the download
cache while being hashed. The file only enters the cache when its digest
matches the declared checksum; a mismatch raises ChecksumMismatchError
and nothing is extracted.

Convergence is tracked with a marker per destination in
<state_dir>/archives/, recording the archive digest and the member list.
The step is unchanged when the marker matches the expected digest and
every recorded member still exists under the destination. With owner or
group set, the destination and its members must also carry that ownership;
drift there is corrected in place without re-extracting.
"""

import hashlib
import json
import logging
import os
import tarfile
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import urlparse

import requests

from hostconverge.actions.base import Adapter, apply_attributes, attributes_match
from hostconverge.common import file_digest, text_digest
from hostconverge.errors import (
    ChecksumMismatchError,
    ConflictingStateError,
    NetworkFailureError,
    ResourceUnavailableError,
)
from hostconverge.playbook import Step, StepKind, parse_checksum

logger = logging.getLogger(__name__)

MARKER_DIR = 'archives'
DOWNLOAD_DIR = 'downloads'
CHUNK_SIZE = 65536


@dataclass
class ArchiveStatus:
    marker: Optional[dict] = None
    expected_digest: Optional[str] = None  # "algo:hex"
    members_present: bool = False
    attributes_ok: bool = True


class ArchiveAdapter(Adapter):
    """Fetch (or read) a tar archive, verify it, and extract it into dest."""

    kind = StepKind.ARCHIVE_EXTRACT

    def _marker_path(self, dest: Path) -> Path:
        key = text_digest(str(dest))[:16]
        return self.context.state_dir / MARKER_DIR / f"{key}.json"

    def _download_path(self, step: Step) -> Path:
        p = step.params
        if p['download_path']:
            return Path(p['download_path'])
        filename = PurePosixPath(urlparse(p['url']).path).name or 'archive'
        # URL path names like "master" are common; prefix with a URL hash to stay unique
        return self.context.state_dir / DOWNLOAD_DIR / f"{text_digest(p['url'])[:12]}-{filename}"

    def _expected_digest(self, step: Step) -> Optional[str]:
        p = step.params
        if p['checksum']:
            algo, digest = parse_checksum(p['checksum'])
            return f"{algo}:{digest}"
        src = Path(p['src'])
        if not src.is_file():
            raise ResourceUnavailableError(f"Archive source {src} not found")
        return f"sha256:{file_digest(src)}"

    def resolve(self, step: Step) -> ArchiveStatus:
        dest = Path(step.params['dest'])
        if dest.exists() and not dest.is_dir():
            raise ConflictingStateError(f"{dest} exists and is not a directory")

        expected = self._expected_digest(step)
        marker_path = self._marker_path(dest)
        marker = None
        if marker_path.exists():
            with open(marker_path, encoding='utf-8') as f:
                marker = json.load(f)

        present = bool(marker) and dest.is_dir() and all(
            os.path.lexists(dest / name) for name in marker.get('members', [])
        )
        attributes_ok = True
        if present and (step.params['owner'] or step.params['group']):
            attributes_ok = all(
                attributes_match(os.lstat(path), step.params['owner'], step.params['group'], None)
                for path in [dest] + [dest / name for name in marker.get('members', [])]
            )
        return ArchiveStatus(marker=marker, expected_digest=expected, members_present=present,
                             attributes_ok=attributes_ok)

    def _extracted(self, observed: ArchiveStatus) -> bool:
        if not observed.marker:
            return False
        return observed.marker.get('digest') == observed.expected_digest and observed.members_present

    def matches(self, step: Step, observed: ArchiveStatus) -> bool:
        return self._extracted(observed) and observed.attributes_ok

    def apply(self, step: Step, observed: ArchiveStatus) -> None:
        p = step.params
        dest = Path(p['dest'])

        if self._extracted(observed):
            logger.info(f"[{step.label}] Correcting ownership under {dest}")
            self._apply_ownership(step, dest, observed.marker.get('members', []))
            return

        if p['url']:
            archive = self.fetch(step, observed.expected_digest)
        else:
            archive = Path(p['src'])
            if p['checksum']:
                self._verify(archive, observed.expected_digest)

        dest.mkdir(parents=True, exist_ok=True)
        logger.info(f"[{step.label}] Extracting {archive.name} into {dest}")
        members = self._extract(archive, dest, p['strip_components'])

        self._apply_ownership(step, dest, members)
        self._write_marker(dest, observed.expected_digest, members, p['url'] or p['src'])

    @staticmethod
    def _apply_ownership(step: Step, dest: Path, members: list[str]) -> None:
        p = step.params
        if not (p['owner'] or p['group']):
            return
        for path in [dest] + [dest / name for name in members]:
            apply_attributes(path, p['owner'], p['group'], None)

    def _verify(self, path: Path, expected: str) -> None:
        algo, digest = expected.split(':', 1)
        actual = file_digest(path, algo)
        if actual != digest:
            raise ChecksumMismatchError(
                f"{path}: expected {algo}:{digest}, got {algo}:{actual}"
            )

    def fetch(self, step: Step, expected: str) -> Path:
        """Download the archive into the cache, verifying its digest."""
        p = step.params
        url = p['url']
        target = self._download_path(step)
        algo, digest = expected.split(':', 1)

        if target.is_file() and file_digest(target, algo) == digest:
            logger.info(f"[{step.label}] Using cached download {target}")
            return target

        target.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"[{step.label}] Downloading {url}...")

        try:
            response = requests.get(url, stream=True, timeout=p['timeout'])
        except requests.RequestException as e:
            raise NetworkFailureError(f"Failed to download {url}: {e}") from e

        with response:
            if response.status_code in (404, 410):
                raise ResourceUnavailableError(f"{url} returned HTTP {response.status_code}")
            try:
                response.raise_for_status()
            except requests.HTTPError as e:
                raise NetworkFailureError(f"Failed to download {url}: {e}") from e

            h = hashlib.new(algo)
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f'.{target.name}.')
            tmp = Path(tmp_name)
            try:
                with os.fdopen(fd, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            h.update(chunk)
                            f.write(chunk)
                actual = h.hexdigest()
                if actual != digest:
                    raise ChecksumMismatchError(
                        f"{url}: expected {algo}:{digest}, got {algo}:{actual}"
                    )
                os.replace(tmp, target)
            except requests.RequestException as e:
                raise NetworkFailureError(f"Download of {url} interrupted: {e}") from e
            finally:
                if tmp.exists():
                    tmp.unlink()

        logger.info(f"[{step.label}] Verified {algo} digest of {target.name}")
        return target

    def _extract(self, archive: Path, dest: Path, strip: int) -> list[str]:
        """Extract a tar archive with the 'data' safety filter; return member names."""
        try:
            with tarfile.open(archive, 'r:*') as tar:
                members = []
                for member in tar.getmembers():
                    parts = PurePosixPath(member.name).parts[strip:]
                    if not parts:
                        continue
                    member.name = str(PurePosixPath(*parts))
                    if member.islnk():
                        link_parts = PurePosixPath(member.linkname).parts[strip:]
                        if not link_parts:
                            continue
                        member.linkname = str(PurePosixPath(*link_parts))
                    members.append(member)
                tar.extractall(dest, members=members, filter='data')
        except tarfile.ReadError as e:
            raise ConflictingStateError(f"{archive} is not a readable tar archive: {e}") from e
        except tarfile.FilterError as e:
            raise ConflictingStateError(f"Unsafe member in {archive}: {e}") from e
        return [m.name for m in members]

    def _write_marker(self, dest: Path, digest: str, members: list[str], source: str) -> None:
        marker_path = self._marker_path(dest)
        marker_path.parent.mkdir(parents=True, exist_ok=True)
        with open(marker_path, 'w', encoding='utf-8') as f:
            json.dump({
                'dest': str(dest),
                'source': source,
                'digest': digest,
                'members': members,
                'extracted_at': time.time(),
            }, f, indent=2)
