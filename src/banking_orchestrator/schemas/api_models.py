from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # optional so that missing fields map to a 400 rather than a 422
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    message: Optional[str] = None


class ChatResponse(BaseModel):
    response: str
    context: Dict[str, Any]


class DeleteResponse(BaseModel):
    success: bool = True


class ErrorResponse(BaseModel):
    error: str
    detail: Optional[str] = None
