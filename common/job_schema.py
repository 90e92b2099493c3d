from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _flag(value) -> bool:
    # models sometimes answer "true"/"false" as strings
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


class WireModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class PhotoStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not PhotoStatus.PROCESSING


class PhotoJob(WireModel):
    id: int
    original_url: str        # where the uploaded image is stored
    enhanced_url: Optional[str] = None
    status: PhotoStatus = PhotoStatus.PROCESSING
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def check_result_matches_status(self):
        if (self.status is PhotoStatus.COMPLETED) != (self.enhanced_url is not None):
            raise ValueError("enhanced_url must be set exactly when status is completed")
        return self


class ContactForm(WireModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1)
    email: str = Field(min_length=1)
    subject: str = Field(min_length=1)
    message: str = Field(min_length=1)


class ContactMessage(ContactForm):
    id: int
    created_at: datetime = Field(default_factory=utcnow)


class EnhancementMode(str, Enum):
    FACE_RESTORE = "face_restore"
    UPSCALE = "upscale"
    COLORIZE = "colorize"
    GENERAL = "general"
    COMPREHENSIVE = "comprehensive"


class ImageAnalysis(WireModel):
    is_grayscale: bool = False
    has_faces: bool = False
    damage_level: Literal["low", "medium", "high"] = "medium"
    suggested_enhancements: List[str] = Field(default_factory=list)

    @classmethod
    def from_response(cls, data: dict) -> "ImageAnalysis":
        """Build an analysis from the model's JSON, accepting either key spelling."""
        damage = data.get("damageLevel") or data.get("damage_level") or "medium"
        if damage not in ("low", "medium", "high"):
            damage = "medium"
        suggestions = (
            data.get("suggestedEnhancements")
            or data.get("recommendedEnhancements")
            or data.get("enhancements")
            or []
        )
        return cls(
            is_grayscale=_flag(data.get("isGrayscale", data.get("isBlackAndWhite"))),
            has_faces=_flag(data.get("hasFaces")),
            damage_level=damage,
            suggested_enhancements=[str(s) for s in suggestions if s],
        )

    def choose_mode(self) -> EnhancementMode:
        if self.is_grayscale:
            return EnhancementMode.COLORIZE
        if self.has_faces and self.damage_level == "high":
            return EnhancementMode.COMPREHENSIVE
        if self.has_faces:
            return EnhancementMode.FACE_RESTORE
        if self.damage_level == "high":
            return EnhancementMode.UPSCALE
        return EnhancementMode.GENERAL
