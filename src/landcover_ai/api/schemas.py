from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.dataclasses import dataclass as pydantic_dataclass


class ClassifyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Base64 of a single encoded still image (PNG, JPEG, TIFF, ...)
    data: str


@pydantic_dataclass(frozen=True)
class ActiveModelResponse:
    model_id: str
    arch: str
    n_classes: int
    input_size: int
    schema_version: str
    created_at: str | None
    preprocess: str
