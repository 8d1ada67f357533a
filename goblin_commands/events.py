"""Chat events in and out of the bot, independent of the platform."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class InboundEvent:
    """One incoming chat message.

    Attributes
    ----------
    update_id : int
        Platform sequence number of the update (Telegram update_id).
    chat_id : int
        Where the message was posted; replies go back here.
    sender_id : int or None
        Who wrote it. None for anonymous channel posts.
    message_id : int
        The message itself, for threading the reply under it.
    text : str
        Raw message text.
    is_private : bool
        True for one-to-one chats with the bot.
    """
    update_id: int
    chat_id: int
    sender_id: Optional[int]
    message_id: int
    text: str
    is_private: bool = True


@dataclass(frozen=True)
class OutboundMessage:
    """A reply ready to be handed to the transport."""
    chat_id: int
    text: str
    reply_to_message_id: Optional[int] = None
