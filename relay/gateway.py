from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable, Dict, Mapping, Optional

from .errors import InvalidRequest, NotFound
from .llm import ReasoningEffort


logger = logging.getLogger("relay.gateway")


@dataclass(frozen=True)
class ConversationRef:
    conversation_id: str
    model: str
    reasoning_effort: ReasoningEffort


@dataclass(frozen=True)
class OutboundMessage:
    text: str
    conversation: ConversationRef

    def to_payload(self) -> Dict[str, Any]:
        return {
            "model": self.conversation.model,
            "messages": [{"role": "user", "content": self.text}],
            "reasoning_effort": self.conversation.reasoning_effort.value,
        }


ConversationLookup = Callable[[str], Optional[ConversationRef]]


class ConversationGateway:
    """
    Resolves the conversation a message is posted to and checks the request
    before any streaming starts.

    The lookup is the only collaborator; the gateway never writes.
    """

    def __init__(self, lookup: ConversationLookup) -> None:
        self._lookup = lookup

    def prepare(self, conversation_id: str, body: Any) -> OutboundMessage:
        conversation = self._lookup(conversation_id)
        if conversation is None:
            raise NotFound("Conversation card not found")
        logger.info(
            "Resolved conversation %s (model=%s effort=%s)",
            conversation_id,
            conversation.model,
            conversation.reasoning_effort.value,
        )
        text = _extract_message(body)
        return OutboundMessage(text=text, conversation=conversation)


def _extract_message(body: Any) -> str:
    if not isinstance(body, Mapping):
        raise InvalidRequest("Message is required")
    message = body.get("message")
    if not isinstance(message, str) or message == "":
        raise InvalidRequest("Message is required")
    return message
