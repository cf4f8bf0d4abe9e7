from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from marketchat.models.message import MAX_CONTENT_LENGTH
from marketchat.utils.errors import ValidationError


class OfferDetailsIn(BaseModel):

    item_id: str = Field(min_length=1)
    item_title: Optional[str] = None
    item_image: Optional[str] = None
    price: Optional[Any] = None


class _MessageIn(BaseModel):

    conversation_id: str = Field(min_length=1)
    content: str = Field("", max_length=MAX_CONTENT_LENGTH)
    attachments: List[str] = Field(default_factory=list)

    @field_validator("content", mode="before")
    @classmethod
    def _strip(cls, value):
        if value is None:
            return ""
        return value.strip() if isinstance(value, str) else value


class TextMessageIn(_MessageIn):

    type: Literal["text"] = "text"
    content: str = Field(min_length=1, max_length=MAX_CONTENT_LENGTH)


class ImageMessageIn(_MessageIn):

    type: Literal["image"]
    attachments: List[str] = Field(min_length=1)


class AudioMessageIn(_MessageIn):

    # content may stay empty, the payload lives in attachments
    type: Literal["audio"]
    attachments: List[str] = Field(min_length=1)


class OfferMessageIn(_MessageIn):

    type: Literal["offer"]
    offer_details: OfferDetailsIn


MessageIn = Annotated[
    Union[TextMessageIn, ImageMessageIn, AudioMessageIn, OfferMessageIn],
    Field(discriminator="type"),
]

_message_adapter = TypeAdapter(MessageIn)


def parse_message_payload(data: Dict[str, Any]) -> MessageIn:
    """Validate a raw send payload into its typed variant.

    Missing `type` means a plain text message. Pydantic failures are
    re-raised as ValidationError naming the first offending field.
    """
    if not isinstance(data, dict):
        raise ValidationError("Message payload must be an object")
    payload = dict(data)
    if not payload.get("type"):
        payload["type"] = "text"
    try:
        return _message_adapter.validate_python(payload)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        loc = [str(part) for part in first.get("loc", ()) if str(part) != payload["type"]]
        raise ValidationError(first.get("msg", "Invalid message"), field=".".join(loc) or None) from exc
