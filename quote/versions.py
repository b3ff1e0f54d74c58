"""
Version store module.
Maps an opportunity to the numbered copies of its quote workbook on disk.
"""

import logging
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from .errors import NotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VersionRef:
    """Handle to one version of an opportunity's workbook."""
    opportunity_id: str
    version: int
    path: str
    created_at: Optional[datetime] = None


class VersionStore:
    """
    Scans a storage root for ``<label>-<opportunity_id>-v<N>.<ext>`` files.

    Nothing is cached: every call reads the directory again. A small
    high-water-mark file per opportunity keeps numbers from being reused after
    a version file is deleted.
    """

    def __init__(self, root: str, label: str, extension: str = '.xlsm'):
        self.root = root
        self.label = label
        self.extension = extension if extension.startswith('.') else f'.{extension}'

    def _ensure_root(self):
        os.makedirs(self.root, exist_ok=True)

    def _pattern(self, opportunity_id: str):
        return re.compile(
            rf'^{re.escape(self.label)}-{re.escape(opportunity_id)}(?:-v(\d+))?{re.escape(self.extension)}$',
            re.IGNORECASE)

    def _marker_path(self, opportunity_id: str) -> str:
        return os.path.join(self.root, f'.{self.label}-{opportunity_id}.version')

    def file_name(self, opportunity_id: str, version: int) -> str:
        return f'{self.label}-{opportunity_id}-v{version}{self.extension}'

    def _ref(self, opportunity_id: str, version: int, path: str) -> VersionRef:
        created = datetime.fromtimestamp(os.path.getmtime(path)) if os.path.exists(path) else None
        return VersionRef(opportunity_id, version, path, created)

    def list_versions(self, opportunity_id: str) -> List[VersionRef]:
        """All existing versions of an opportunity, oldest first (legacy file is v0)."""
        self._ensure_root()
        pattern = self._pattern(opportunity_id)
        refs = []
        for name in os.listdir(self.root):
            match = pattern.match(name)
            if not match:
                continue
            version = int(match.group(1)) if match.group(1) else 0
            refs.append(self._ref(opportunity_id, version, os.path.join(self.root, name)))
        return sorted(refs, key=lambda r: r.version)

    def resolve_latest(self, opportunity_id: str) -> Optional[VersionRef]:
        """Highest-numbered existing version, or None."""
        refs = self.list_versions(opportunity_id)
        return refs[-1] if refs else None

    def _high_water_mark(self, opportunity_id: str) -> int:
        try:
            with open(self._marker_path(opportunity_id), 'r') as f:
                return int(f.read().strip() or 0)
        except FileNotFoundError:
            return 0
        except ValueError:
            logger.warning("Ignoring unreadable version marker for %s", opportunity_id)
            return 0

    def allocate_next(self, opportunity_id: str) -> VersionRef:
        """
        Handle for the next version number; the file is not created.

        Two concurrent allocations for the same opportunity can return the
        same number.
        """
        latest = self.resolve_latest(opportunity_id)
        current = max(latest.version if latest else 0, self._high_water_mark(opportunity_id))
        version = current + 1
        path = os.path.join(self.root, self.file_name(opportunity_id, version))
        return VersionRef(opportunity_id, version, path, None)

    def exists(self, ref: VersionRef) -> bool:
        return os.path.isfile(ref.path)

    def materialize(self, ref: VersionRef, template_path: str) -> VersionRef:
        """Copy the template into place for a newly allocated version."""
        if not os.path.isfile(template_path):
            raise NotFoundError(f"Template not found: {template_path}")
        self._ensure_root()
        shutil.copyfile(template_path, ref.path)

        if ref.version > self._high_water_mark(ref.opportunity_id):
            with open(self._marker_path(ref.opportunity_id), 'w') as f:
                f.write(str(ref.version))

        logger.info("Created %s from template", os.path.basename(ref.path))
        return self._ref(ref.opportunity_id, ref.version, ref.path)

    def resolve_named(self, file_name: str) -> VersionRef:
        """Reference to a specific existing file in the storage root."""
        self._ensure_root()
        path = os.path.join(self.root, os.path.basename(file_name))
        if not os.path.isfile(path):
            raise NotFoundError(f"Opportunity document not found: {file_name}")

        match = re.match(rf'^{re.escape(self.label)}-(.+?)(?:-v(\d+))?{re.escape(self.extension)}$',
                         os.path.basename(path), re.IGNORECASE)
        if match:
            return self._ref(match.group(1), int(match.group(2) or 0), path)
        return self._ref('', 0, path)
