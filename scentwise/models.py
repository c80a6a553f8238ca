"""Request and response models for the ScentWise gateway."""

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ChatMessage(BaseModel):
    """A single message in a recommendation conversation."""

    role: str
    content: str = Field(..., max_length=4000)


class RecommendRequest(BaseModel):
    """Body of POST /api/recommend."""

    model_config = ConfigDict(populate_by_name=True)

    mode: Literal["chat", "photo"] = "chat"
    messages: Optional[List[ChatMessage]] = Field(default=None, max_length=50)
    image_base64: Optional[str] = Field(default=None, alias="imageBase64")
    image_mime: Optional[str] = Field(default=None, alias="imageMime")

    @model_validator(mode="after")
    def _check_mode_payload(self) -> "RecommendRequest":
        if self.mode == "photo" and not self.image_base64:
            raise ValueError("photo mode requires imageBase64")
        if self.mode == "chat" and not self.messages:
            raise ValueError("chat mode requires at least one message")
        return self


class LoginRequest(BaseModel):
    email: str


class OrderLoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId")


class OwnerLoginRequest(BaseModel):
    key: str


class LoginResponse(BaseModel):
    success: bool = True
    tier: str
    email: Optional[str] = None


class QuotaInfo(BaseModel):
    """Usage counters attached to responses. Serialized by alias."""

    model_config = ConfigDict(populate_by_name=True)

    tier: Optional[str] = None
    usage: Optional[int] = None
    limit: Optional[int] = None
    free_used: Optional[int] = Field(default=None, alias="freeUsed")
    free_limit: Optional[int] = Field(default=None, alias="freeLimit")


class TierResponse(QuotaInfo):
    """Body of GET /api/check-tier."""

    email: Optional[str] = None


class RecommendResponse(QuotaInfo):
    """Successful recommendation envelope."""

    result: str


class ErrorDetail(BaseModel):
    """Structured error detail."""

    type: str
    message: str


class ErrorResponse(QuotaInfo):
    """Error response envelope."""

    error: ErrorDetail
