"""Typed chunk metadata models.

Vector backends return an open metadata map. These models pin down the
minimal fields each content type must carry while keeping every other key
(`extra="allow"`), so shape errors surface at ingestion instead of deep in
scoring code.
"""

import logging
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)

# camelCase keys emitted by CMS/vector backends
_KEY_ALIASES = {
    "contentType": "content_type",
    "contentId": "content_id",
}

GENERIC_CONTENT_TYPE = "generic"


class _ChunkMetadataBase(BaseModel):
    """Fields shared by all content types."""

    model_config = ConfigDict(extra="allow")

    content_id: str | None = None
    technologies: list[str] = Field(default_factory=list)
    date: str | int | float | None = None
    timestamp: float | None = None
    featured: bool = False
    topic: str | None = None


class WorkMetadata(_ChunkMetadataBase):
    """Portfolio work item."""

    content_type: Literal["work"]
    title: str


class TimelineMetadata(_ChunkMetadataBase):
    """Career timeline entry."""

    content_type: Literal["timeline"]
    date: str | int | float


class ExperimentMetadata(_ChunkMetadataBase):
    """Side project or experiment."""

    content_type: Literal["experiment"]
    title: str


class LeadershipMetadata(_ChunkMetadataBase):
    """Leadership or management record."""

    content_type: Literal["leadership"]
    title: str


class ContactMetadata(_ChunkMetadataBase):
    """Contact details."""

    content_type: Literal["contact"]


class GenericMetadata(_ChunkMetadataBase):
    """Record without a content type tag."""

    content_type: Literal["generic"] = GENERIC_CONTENT_TYPE


ChunkMetadata = Annotated[
    Union[
        WorkMetadata,
        TimelineMetadata,
        ExperimentMetadata,
        LeadershipMetadata,
        ContactMetadata,
        GenericMetadata,
    ],
    Field(discriminator="content_type"),
]

_metadata_adapter: TypeAdapter[Any] = TypeAdapter(ChunkMetadata)


def _rename_keys(raw: dict[str, Any]) -> dict[str, Any]:
    renamed: dict[str, Any] = {}
    for key, value in raw.items():
        renamed[_KEY_ALIASES.get(key, key)] = value
    return renamed


def parse_metadata(raw: dict[str, Any]) -> BaseModel:
    """Validate a raw metadata map against its content-type contract.

    Args:
        raw: Metadata as returned by the vector backend

    Returns:
        The matching metadata model

    Raises:
        pydantic.ValidationError: If the map violates its contract
    """
    data = _rename_keys(raw)
    if not data.get("content_type"):
        data["content_type"] = GENERIC_CONTENT_TYPE
    return _metadata_adapter.validate_python(data)


def normalize_metadata(raw: dict[str, Any] | None) -> dict[str, Any]:
    """Normalize backend metadata into a snake_case map.

    Invalid shapes are logged and kept (with renamed keys) so a single bad
    record never fails retrieval.

    Args:
        raw: Metadata as returned by the vector backend

    Returns:
        Normalized metadata dictionary
    """
    if not raw:
        return {}

    try:
        model = parse_metadata(raw)
    except PydanticValidationError as e:
        logger.warning(
            "Chunk metadata failed validation (content_type=%s): %s",
            raw.get("content_type", raw.get("contentType")),
            e.error_count(),
        )
        return _rename_keys(raw)

    normalized = model.model_dump(exclude_unset=True)
    if normalized.get("content_type") == GENERIC_CONTENT_TYPE:
        normalized.pop("content_type")
    return normalized
