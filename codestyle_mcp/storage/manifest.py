# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Per-group ``meta.json`` persistence.

A manifest lives at ``<root>/<groupId>/<artifactId>/meta.json``. Anything that
cannot be parsed into a valid :class:`~codestyle_mcp.schema.Manifest` is
reported as absent so callers re-sync instead of failing.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from ..schema import DuplicateTemplateFileError, Manifest
from .files import atomic_write_text

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "meta.json"


class ManifestStore:
    def __init__(self, root: Path):
        self.root = root

    def path_for(self, group_id: str, artifact_id: str) -> Path:
        return self.root / group_id / artifact_id / MANIFEST_FILENAME

    def exists(self, group_id: str, artifact_id: str) -> bool:
        return self.path_for(group_id, artifact_id).is_file()

    def load(self, group_id: str, artifact_id: str) -> Manifest | None:
        return self.load_path(self.path_for(group_id, artifact_id))

    def load_path(self, path: Path) -> Manifest | None:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError:
            logger.warning("Unreadable manifest %s", path, exc_info=True)
            return None
        except UnicodeDecodeError as exc:
            logger.warning("Manifest %s is not valid UTF-8, treated as absent: %s", path, exc)
            return None

        try:
            return Manifest.from_json(json.loads(raw))
        except DuplicateTemplateFileError as exc:
            logger.error("Rejecting manifest %s: %s", path, exc)
        except (ValueError, ValidationError) as exc:
            # json.JSONDecodeError is a ValueError
            logger.warning("Malformed manifest %s treated as absent: %s", path, exc)
        return None

    def save(self, group_id: str, artifact_id: str, manifest: Manifest) -> Path:
        path = self.path_for(group_id, artifact_id)
        payload = json.dumps(manifest.to_json(), ensure_ascii=False, indent=2)
        atomic_write_text(path, payload + "\n")
        logger.debug("Saved manifest %s (%d files)", path, len(manifest))
        return path
