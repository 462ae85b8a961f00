from typing import Generic, TypeVar

from pydantic import BaseModel, Field

from app.shared.api.utils import ApiSuccess

T = TypeVar("T")


class ApiOut(ApiSuccess, Generic[T]):
    """Standard API envelope used by public routers."""

    results: T  # type: ignore[valid-type]


class ListOut(BaseModel, Generic[T]):
    items: list[T]
    total: int = Field(description="Number of items returned")
