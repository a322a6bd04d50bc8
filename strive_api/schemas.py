"""
Request and event models for the Strive chat endpoints.

Request Schemas:
    POST /api/assistant
    {
        "messages": [{"role": "user", "content": "..."}]
    }

    POST /api/chatbot
    {
        "messages": [{"role": "user", "content": "..."}],
        "isNewConversation": true
    }

Event Schema (one per SSE frame):
    {"content": "...", "title": "..."}   # content flush
    {"title": "..."}                     # standalone title (event delivery)
    {"done": true, "title": "..."}       # terminal event

Absent fields are omitted from the wire, never sent as null.

Last Grunted: 10/19/2026 09:10:00 AM UTC
"""
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ConversationTurn(BaseModel):
    """
    One message of a conversation.

    Attributes:
        role: Author of the message (user, assistant, system)
        content: Message text

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant", "system"]
    content: str


class AssistantRequest(BaseModel):
    """Request body for POST /api/assistant."""
    messages: List[ConversationTurn] = Field(default_factory=list)


class ChatbotRequest(BaseModel):
    """
    Request body for POST /api/chatbot.

    Attributes:
        messages: Conversation so far, oldest first
        is_new_conversation: Generate a title from the first message
            (wire name ``isNewConversation``)

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """
    model_config = ConfigDict(populate_by_name=True)

    messages: List[ConversationTurn] = Field(default_factory=list)
    is_new_conversation: bool = Field(default=False, alias="isNewConversation")


class OutboundEvent(BaseModel):
    """
    One unit written to the client as a server-sent event.

    Field order is the wire order: ``{"content","title"}`` for flushes and
    ``{"done","title"}`` for the terminal event.

    Attributes:
        content: Flushed text fragment
        done: Set only on the terminal event
        title: Conversation title, once known
        error: Set only on the terminal event of an interrupted stream

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """
    content: Optional[str] = None
    done: Optional[bool] = None
    title: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return bool(self.done)

    def to_json(self) -> str:
        """Compact JSON with absent fields omitted."""
        return self.model_dump_json(exclude_none=True)


class ErrorResponse(BaseModel):
    """JSON body returned when a request fails before streaming starts."""
    error: str
