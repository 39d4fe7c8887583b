"""Pydantic schemas for the image generation usage gate"""
from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from app.core.exceptions import InvalidPayloadError


class ImageLimitResponse(BaseModel):
    can_generate: bool
    remaining: int
    limit: int
    reset_date: Optional[datetime] = None


class ImageGenerationResult(BaseModel):
    kind: Literal["image"] = "image"
    user_id: int
    chat_id: Optional[str] = None
    image_url: Optional[str] = None
    image_base64: Optional[str] = None


class TextGenerationResult(BaseModel):
    kind: Literal["text"] = "text"
    user_id: int
    chat_id: Optional[str] = None
    text: str


GenerationResult = Annotated[
    Union[ImageGenerationResult, TextGenerationResult],
    Field(discriminator="kind"),
]

_generation_result_adapter = TypeAdapter(GenerationResult)

# Alternate field names emitted by the generation workflow
_FIELD_ALIASES = {
    "user_id": ("user_id", "userId"),
    "chat_id": ("chat_id", "chatId"),
    "image_url": ("image_url", "imageUrl", "image"),
    "image_base64": ("image_base64", "imageBase64", "b64_json"),
    "text": ("text", "output", "message", "response"),
}


def _first_present(body: Dict[str, Any], names) -> Any:
    for name in names:
        value = body.get(name)
        if value not in (None, ""):
            return value
    return None


def parse_generation_result(body: Any) -> Union[ImageGenerationResult, TextGenerationResult]:
    """Normalize a generation callback body into a tagged GenerationResult.

    Accepts a single object or a one-element array wrapping it. Field aliases
    are resolved here and nowhere else.

    Raises:
        InvalidPayloadError: If the body is not a usable generation result
    """
    if isinstance(body, list):
        if len(body) != 1:
            raise InvalidPayloadError("Expected exactly one generation result")
        body = body[0]
    if not isinstance(body, dict):
        raise InvalidPayloadError("Generation result must be a JSON object")

    normalized = {field: _first_present(body, names) for field, names in _FIELD_ALIASES.items()}
    if normalized["image_url"] or normalized["image_base64"]:
        normalized["kind"] = "image"
        normalized.pop("text")
    else:
        normalized["kind"] = "text"
        normalized.pop("image_url")
        normalized.pop("image_base64")

    try:
        return _generation_result_adapter.validate_python(normalized)
    except ValueError as e:
        raise InvalidPayloadError(f"Invalid generation result: {e}")
