"""
Request/response schemas for image generation.
JSON fields are camelCase (web client contract); Python attributes are snake_case.
"""
import re
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dreamlens.services.generations.prompts import TRENDS


MIN_USER_IMAGES = 3
MAX_USER_IMAGES = 10
MAX_BASE64_LENGTH = 10 * 1024 * 1024
MAX_TEXT_LENGTH = 10_000

Quality = Literal["1K", "2K", "4K"]
AspectRatio = Literal["1:1", "3:4", "4:3", "9:16", "16:9", "PORTRAIT", "LANDSCAPE", "SQUARE"]

_DATA_URL_RE = re.compile(r"^data:(image/[a-zA-Z0-9.+-]+);base64,")


class UserImageIn(BaseModel):
    """Reference photo: base64 (raw or data: URL) with client-side quality score 0..100."""
    model_config = ConfigDict(populate_by_name=True)

    base64: str = Field(min_length=1, max_length=MAX_BASE64_LENGTH)
    quality_score: float | None = Field(default=None, ge=0, le=100, alias="qualityScore")
    mime_type: str | None = Field(default=None, alias="mimeType")

    @property
    def data(self) -> str:
        """base64 payload without the data: prefix."""
        return _DATA_URL_RE.sub("", self.base64.strip())

    @property
    def effective_mime_type(self) -> str:
        match = _DATA_URL_RE.match(self.base64.strip())
        if match:
            return match.group(1)
        return self.mime_type or "image/jpeg"


class GenerationConfigIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    trend: str = Field(min_length=1)
    quality: Quality = "2K"
    ratio: AspectRatio = "3:4"
    image_count: int = Field(default=1, ge=1, le=5, alias="imageCount")
    user_prompt: str | None = Field(default=None, max_length=MAX_TEXT_LENGTH, alias="userPrompt")
    dominant_color: str | None = Field(default=None, max_length=50, alias="dominantColor")

    @field_validator("trend")
    @classmethod
    def validate_trend(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in TRENDS:
            raise ValueError("Неверный тип стиля")
        return v


class GenerateImageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_images: list[UserImageIn] = Field(
        min_length=MIN_USER_IMAGES,
        max_length=MAX_USER_IMAGES,
        alias="userImages",
    )
    config: GenerationConfigIn

    @field_validator("user_images", mode="before")
    @classmethod
    def wrap_plain_images(cls, v):
        # Старый клиент присылает просто строки data URL
        if isinstance(v, list):
            return [{"base64": item} if isinstance(item, str) else item for item in v]
        return v


class TokensOut(BaseModel):
    spent: int
    remaining: int


class GenerateImageResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    images: list[str]
    generation_id: str = Field(alias="generationId")
    tokens: TokensOut
    is_free: bool = Field(alias="isFree")
    failed_count: int = Field(default=0, alias="failedCount")
