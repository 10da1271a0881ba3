"""
Pagination envelope - the canonical response shape and its normalization.
"""

from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pagequery.services.errors import MalformedResponse


class PaginationEnvelope(BaseModel):
    """One page of a server-paginated collection."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    items: list[Any] = Field(default_factory=list)
    page_number: int = Field(alias="pageNumber")
    total_pages: int = Field(alias="totalPages")
    has_previous_page: bool = Field(alias="hasPreviousPage")
    has_next_page: bool = Field(alias="hasNextPage")

    @classmethod
    def from_sequence(cls, items: Sequence[Any], page_number: int) -> "PaginationEnvelope":
        """
        Wrap a bare list the way legacy endpoints return it.

        The list is treated as the only page: totalPages is 1 and both
        neighbour flags are off, whatever page was requested.
        """
        return cls(
            items=list(items),
            page_number=page_number,
            total_pages=1,
            has_previous_page=False,
            has_next_page=False,
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def _is_sequence(body: Any) -> bool:
    return isinstance(body, Sequence) and not isinstance(body, (str, bytes, bytearray))


def normalize_envelope(body: Any, page_number: int) -> PaginationEnvelope:
    """
    Turn a raw response body into a PaginationEnvelope.

    Accepts a full envelope, a bare list, or a {"data": [...]} wrapper.

    Raises:
        MalformedResponse: If the body matches none of those shapes
    """
    if isinstance(body, PaginationEnvelope):
        return body

    if _is_sequence(body):
        return PaginationEnvelope.from_sequence(body, page_number)

    if isinstance(body, Mapping):
        if "items" in body:
            try:
                return PaginationEnvelope.model_validate(dict(body))
            except ValidationError as e:
                raise MalformedResponse(
                    f"invalid envelope: {e.error_count()} field error(s)"
                ) from e

        wrapped = body.get("data")
        if _is_sequence(wrapped):
            return PaginationEnvelope.from_sequence(wrapped, page_number)

        raise MalformedResponse(
            f"object without 'items' (keys: {sorted(map(str, body))[:10]})"
        )

    raise MalformedResponse(f"unexpected body type {type(body).__name__}")
