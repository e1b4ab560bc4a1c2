# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Data model for cached template groups.

Manifests are persisted as JSON arrays of :class:`TemplateFile` records using
camelCase keys. Unknown keys are ignored when reading so newer writers can add
fields without breaking older readers.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Legacy manifests carried human labels in front of variable names/types.
_LEGACY_NAME_PREFIX = "变量名："
_LEGACY_TYPE_PREFIX = "变量类型："


class DuplicateTemplateFileError(ValueError):
    """Raised when one manifest declares the same filename twice."""


class _Record(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class TemplateVariable(_Record):
    variable_name: str
    variable_type: str = ""
    variable_comment: str = ""
    example: Optional[str] = None

    @field_validator("variable_name", mode="before")
    @classmethod
    def _strip_name_label(cls, value):
        if isinstance(value, str):
            return value.replace(_LEGACY_NAME_PREFIX, "").strip()
        return value

    @field_validator("variable_type", mode="before")
    @classmethod
    def _strip_type_label(cls, value):
        if value is None:
            return ""
        if isinstance(value, str):
            return value.replace(_LEGACY_TYPE_PREFIX, "").strip()
        return value

    @field_validator("variable_comment", mode="before")
    @classmethod
    def _none_comment(cls, value):
        return "" if value is None else value


class TemplateFile(_Record):
    """One file of a template group as recorded in ``meta.json``."""

    file_path: str = ""
    filename: str
    version: str
    sha256: str
    description: str = ""
    input_variables: list[TemplateVariable] = Field(
        default_factory=list,
        validation_alias=AliasChoices("inputVariables", "input_variables", "inputVarivales"),
        serialization_alias="inputVariables",
    )

    @field_validator("sha256", mode="before")
    @classmethod
    def _normalize_hash(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("description", "file_path", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return "" if value is None else value

    @field_validator("input_variables", mode="before")
    @classmethod
    def _none_to_list(cls, value):
        return [] if value is None else value

    @property
    def directory_segments(self) -> list[str]:
        """Directory components of ``file_path`` without empty or ``.`` parts."""
        normalized = self.file_path.replace("\\", "/")
        return [seg for seg in normalized.split("/") if seg and seg != "."]

    @property
    def relative_path(self) -> str:
        """``version/dir/.../filename`` relative to the artifact directory."""
        return "/".join([self.version, *self.directory_segments, self.filename])


class RemoteFileDescriptor(TemplateFile):
    """A file entry announced by the remote repository."""


class RemoteGroupDescriptor(_Record):
    group_id: str
    artifact_id: str
    description: str = ""
    files: list[RemoteFileDescriptor] = Field(
        default_factory=list,
        validation_alias=AliasChoices("files", "configs", "metaInfos"),
        serialization_alias="files",
    )

    @field_validator("description", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return "" if value is None else value


class Manifest:
    """Ordered, filename-unique collection of :class:`TemplateFile` entries."""

    def __init__(self, files: Iterable[TemplateFile] = ()):
        self._files: list[TemplateFile] = []
        self._by_name: dict[str, int] = {}
        for item in files:
            key = item.filename.lower()
            if key in self._by_name:
                raise DuplicateTemplateFileError(
                    f"duplicate filename in manifest: {item.filename}"
                )
            self._by_name[key] = len(self._files)
            self._files.append(item)

    @classmethod
    def from_json(cls, payload: object) -> "Manifest":
        if not isinstance(payload, list):
            raise ValueError("manifest must be a JSON array")
        return cls(TemplateFile.model_validate(item) for item in payload)

    def to_json(self) -> list[dict]:
        return [item.to_json_dict() for item in self._files]

    def get(self, filename: str) -> TemplateFile | None:
        idx = self._by_name.get(filename.lower())
        return None if idx is None else self._files[idx]

    def upsert(self, item: TemplateFile) -> None:
        """Replace the entry with the same filename, or append a new one."""
        key = item.filename.lower()
        idx = self._by_name.get(key)
        if idx is None:
            self._by_name[key] = len(self._files)
            self._files.append(item)
        else:
            self._files[idx] = item

    @property
    def files(self) -> list[TemplateFile]:
        return list(self._files)

    @property
    def latest_version(self) -> str | None:
        return self._files[-1].version if self._files else None

    def __iter__(self) -> Iterator[TemplateFile]:
        return iter(self._files)

    def __len__(self) -> int:
        return len(self._files)

    def __contains__(self, filename: object) -> bool:
        return isinstance(filename, str) and filename.lower() in self._by_name

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Manifest):
            return NotImplemented
        return self._files == other._files

    def __repr__(self) -> str:
        return f"Manifest({[f.filename for f in self._files]!r})"


@dataclass(frozen=True)
class IndexEntry:
    """Searchable projection of one template group."""

    group_id: str
    artifact_id: str
    description: str
    path_keywords: tuple[str, ...]
    manifest_path: str

    @property
    def key(self) -> tuple[str, str]:
        return self.group_id, self.artifact_id

    @property
    def searchable_text(self) -> str:
        return " ".join(
            [self.group_id, self.artifact_id, self.description, " ".join(self.path_keywords)]
        )
