from typing import Optional

from pydantic import BaseModel, Field


class ConversationCreate(BaseModel):

    seller_id: str = Field(min_length=1)
    product_id: Optional[str] = None
