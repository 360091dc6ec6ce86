"""
Collaboration Channel -- per-protocol chat between operators and auditors.

Sending is optimistic: a ``temp-`` message is appended to the local view
before any I/O, then the authoritative record is stored and published on
the protocol's topic.  When the echo comes back it replaces the temporary
message in place, matched by ``(sender_id, content)``.  A failed insert
removes the temporary message and re-raises.  Once the insert succeeded the
message counts as sent: a failed publish is only logged, and the stored
record replaces the temporary message.

Since the temporary message is appended before the first suspension point,
an echo can never be processed ahead of it within one session.  An echo
that never arrives leaves the send reconciled from the stored record
instead.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import AsyncIterator, Optional, Union

from medaudit.models import TEMP_MESSAGE_PREFIX, ChatMessage, User
from medaudit.rbac import check_permission
from medaudit.store import PubSubChannel, RecordStore, Subscription
from medaudit.workflow import RequestValidationError, UnauthorizedActionError

logger = logging.getLogger(__name__)

MESSAGES_COLLECTION = "audit_messages"


def topic_for(request_id: str) -> str:
    return f"chat-{request_id}"


class ChatSession:
    """Local message view of one protocol's chat.

    Usage::

        session = ChatSession(request.id, store, channel)
        await session.load()
        await session.send(actor, "Favor anexar o laudo.")
        async for message in session.on_message():
            ...
        session.close()
    """

    def __init__(self, request_id: str, store: RecordStore, channel: PubSubChannel) -> None:
        self.request_id = request_id
        self.store = store
        self.channel = channel
        self.messages: list[ChatMessage] = []
        self._subscription: Optional[Subscription] = None
        self._incoming: asyncio.Queue[ChatMessage] = asyncio.Queue()
        self._streaming = False

    @property
    def topic(self) -> str:
        return topic_for(self.request_id)

    async def load(self) -> list[ChatMessage]:
        """Fetch the stored history and subscribe to the protocol topic.

        Temporary messages of sends still in flight are kept at the end.
        """
        records = await self.store.get(MESSAGES_COLLECTION, {"request_id": self.request_id})
        stored = sorted(
            (ChatMessage.model_validate(r) for r in records), key=lambda m: m.timestamp
        )
        pending = [m for m in self.messages if m.is_temporary]
        self.messages = stored + pending
        if self._subscription is None:
            self._subscription = self.channel.subscribe(self.topic, self._on_event)
        return list(self.messages)

    async def send(self, sender: User, content: str) -> ChatMessage:
        """Send a message optimistically.

        Raises:
            RequestValidationError: If ``content`` is blank.
            UnauthorizedActionError: If the sender's role may not chat.
            PersistenceError: If storing the message fails.
        """
        text = content.strip()
        if not text:
            raise RequestValidationError("Cannot send an empty message.")
        if not check_permission(sender.role, "send_message"):
            raise UnauthorizedActionError(f"Role '{sender.role.value}' cannot send messages.")

        temporary = ChatMessage(
            id=f"{TEMP_MESSAGE_PREFIX}{uuid.uuid4().hex}",
            request_id=self.request_id,
            sender_id=sender.id,
            sender_name=sender.name,
            sender_role=sender.role,
            content=text,
        )
        self.messages.append(temporary)

        try:
            record = await self.store.insert(
                MESSAGES_COLLECTION,
                temporary.model_dump(mode="json", exclude={"id"}),
            )
        except Exception:
            self._discard(temporary.id)
            logger.warning("Message send failed on request %s", self.request_id)
            raise

        # Stored means sent; other sessions pick it up on their next load().
        stored = ChatMessage.model_validate(record)
        try:
            await self.channel.publish(self.topic, stored.model_dump(mode="json"))
        except Exception as exc:
            logger.warning(
                "Message %s stored but not published on request %s: %s",
                stored.id, self.request_id, exc,
            )

        # No-op when the echo already replaced the temporary message.
        self.receive(stored)
        return stored

    def receive(self, message: Union[ChatMessage, dict]) -> bool:
        """Merge an incoming message into the local view.

        Returns:
            True if the message was appended or replaced a temporary one,
            False if it was ignored (duplicate or another protocol).
        """
        if isinstance(message, dict):
            message = ChatMessage.model_validate(message)
        if message.request_id != self.request_id:
            return False
        if any(m.id == message.id for m in self.messages):
            return False
        for index, existing in enumerate(self.messages):
            if (
                existing.is_temporary
                and existing.sender_id == message.sender_id
                and existing.content == message.content
            ):
                self.messages[index] = message
                return True
        self.messages.append(message)
        return True

    def on_message(self) -> AsyncIterator[ChatMessage]:
        """Endless stream of accepted incoming messages.

        Only messages received after the stream was opened are yielded.

        Raises:
            RuntimeError: If a stream was already opened on this session.
        """
        if self._streaming:
            raise RuntimeError(f"Message stream for request '{self.request_id}' already consumed.")
        self._streaming = True
        return self._stream()

    async def _stream(self) -> AsyncIterator[ChatMessage]:
        while True:
            yield await self._incoming.get()

    def _on_event(self, event: Union[ChatMessage, dict]) -> None:
        message = event if isinstance(event, ChatMessage) else ChatMessage.model_validate(event)
        if self.receive(message) and self._streaming:
            self._incoming.put_nowait(message)

    def _discard(self, message_id: str) -> None:
        self.messages = [m for m in self.messages if m.id != message_id]

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
