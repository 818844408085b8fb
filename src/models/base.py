"""Shared Pydantic base models and utilities."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class MikvahCalBase(BaseModel):
    """Base model with shared config for all MikvahCal schemas."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class ErrorDetail(BaseModel):
    """Body of 400/404/409 responses produced from tracking errors."""

    detail: str
