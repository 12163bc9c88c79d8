"""
Chat orchestrator: one conversation surface.

Sends the user's message, streams the answer into the message list,
binds the conversation id the server assigns, and refreshes the
conversation list from the remote store once the answer is complete.
"""

import logging
from typing import Any, Optional

from expert_chat.config import Config
from expert_chat.errors import ChatError, NotAuthenticatedError
from expert_chat.models import Attachment, DiagnosticCode, DocumentAttachment, Message, Suggestion
from expert_chat.notifications import Notifier
from expert_chat.services.chat_client import ExpertChatClient
from expert_chat.services.session_store import SessionStore
from expert_chat.store.base import TokenProvider
from expert_chat.stream.consumer import (
    StreamConsumer,
    StreamHandler,
    StreamResult,
    StreamState,
    invoke,
)

logger = logging.getLogger(__name__)


class ChatOrchestrator:
    """Runs chat exchanges for one conversation surface."""

    def __init__(
        self,
        session_store: SessionStore,
        chat_client: ExpertChatClient,
        token_provider: TokenProvider,
        vehicle_context: Optional[Any] = None,
        notifier: Optional[Notifier] = None,
        inactivity_timeout: Optional[float] = None,
    ):
        self.session_store = session_store
        self.chat_client = chat_client
        self.token_provider = token_provider
        self.vehicle_context = vehicle_context
        self.notifier = notifier or Notifier()
        self.inactivity_timeout = inactivity_timeout or Config.STREAM_INACTIVITY_TIMEOUT

        self.messages: list[Message] = []
        self.current_session_id: Optional[str] = None
        self.selected_obd_codes: list[DiagnosticCode] = []

        self._consumer: Optional[StreamConsumer] = None
        self._assistant: Optional[Message] = None

    @property
    def is_loading(self) -> bool:
        return self._consumer is not None

    def cancel(self) -> None:
        """Stop the exchange in flight, if any."""
        if self._consumer is not None:
            self._consumer.cancel()
            self._consumer = None
        if self._assistant is not None:
            # Must be gone before the next payload is built
            self._drop_if_empty(self._assistant)
            self._assistant = None

    def clear(self) -> None:
        """Start over with no conversation bound."""
        self.cancel()
        self.messages = []
        self.current_session_id = None
        self.selected_obd_codes = []

    async def new_conversation(self, vehicle_context: Optional[Any] = None) -> str:
        """Create an empty conversation and make it the active one."""
        self.cancel()
        conversation_id = await self.session_store.create(
            vehicle_context if vehicle_context is not None else self.vehicle_context
        )
        self.messages = []
        self.current_session_id = conversation_id
        return conversation_id

    async def open_conversation(self, conversation_id: str) -> list[Message]:
        """Load a stored conversation and make it the active one."""
        self.cancel()
        try:
            messages = await self.session_store.load_messages(conversation_id)
        except ChatError as e:
            logger.error(f"Error loading conversation {conversation_id}: {e}")
            self.notifier.error("Error", "Could not load the conversation")
            raise
        self.messages = messages
        self.current_session_id = conversation_id
        return list(messages)

    def build_payload(
        self,
        history: list[Message],
        outgoing_content: str,
        image_ref: Optional[str] = None,
        document: Optional[DocumentAttachment] = None,
    ) -> dict:
        """Request body for the chat endpoint."""
        messages = [_wire_message(m.role, m.content, _image_of(m)) for m in history]
        messages.append(_wire_message("user", outgoing_content, image_ref))

        payload = {
            "messages": messages,
            "vehicleContext": self.vehicle_context,
            "conversationId": self.current_session_id,
            "obdCodes": [code.model_dump() for code in self.selected_obd_codes],
        }
        if document is not None:
            payload["documentName"] = document.name
        return payload

    async def send(
        self,
        text: str,
        image_ref: Optional[str] = None,
        document: Optional[DocumentAttachment] = None,
        handler: Optional[StreamHandler] = None,
    ) -> StreamResult:
        """
        Send a user message and stream the answer.

        Any exchange already in flight is cancelled first. Failures are
        reported through ``handler.on_error`` and the returned result.
        """
        handler = handler or StreamHandler()
        self.cancel()

        consumer = StreamConsumer(inactivity_timeout=self.inactivity_timeout)
        self._consumer = consumer

        outgoing = f"{text}\n\n{document.render()}" if document is not None else text
        attachments = Attachment(
            image_ref=image_ref,
            document_name=document.name if document is not None else None,
        )
        history = list(self.messages)
        payload = self.build_payload(history, outgoing, image_ref, document)
        self.messages.append(Message(
            role="user",
            content=text,
            attachments=None if attachments.is_empty() else attachments,
        ))

        try:
            token = await self.token_provider()
            if not token:
                raise NotAuthenticatedError("You need to be logged in to talk to the expert")
            response = await self.chat_client.open_stream(payload, token)
        except ChatError as e:
            self._finish(consumer)
            return await self._report_failure(StreamResult(state=StreamState.FAILED, error=e), handler)

        if consumer.cancelled:
            await response.aclose()
            return consumer.result()

        assistant = Message(role="assistant", content="")
        self.messages.append(assistant)
        self._assistant = assistant
        known_session_id = self.current_session_id

        async def on_text_update(cumulative: str) -> None:
            assistant.content = cumulative
            await invoke(handler.on_text_update, cumulative)

        async def on_suggestions(items: list[Suggestion]) -> None:
            assistant.suggestions = items
            await invoke(handler.on_suggestions, items)

        async def on_session_bound(session_id: str) -> None:
            if known_session_id is None and self.current_session_id is None:
                self.current_session_id = session_id
                logger.info(f"Conversation {session_id} bound to this chat")
                self.notifier.success("Conversation saved", "Your conversation was saved automatically")
            await invoke(handler.on_session_bound, session_id)

        try:
            result = await consumer.start(
                response.aiter_bytes(),
                StreamHandler(
                    on_event=handler.on_event,
                    on_text_update=on_text_update,
                    on_suggestions=on_suggestions,
                    on_session_bound=on_session_bound,
                ),
            )
        finally:
            await response.aclose()
            self._finish(consumer)
            if self._assistant is assistant:
                self._assistant = None

        if result.cancelled:
            self._drop_if_empty(assistant)
            return result

        if result.state is StreamState.FAILED:
            self._drop_if_empty(assistant)
            return await self._report_failure(result, handler)

        if known_session_id is None and result.session_id is None:
            logger.warning("Stream completed without a conversation id; exchange kept local only")

        await self._refresh_sessions()
        await invoke(handler.on_complete, result)
        return result

    def _finish(self, consumer: StreamConsumer) -> None:
        if self._consumer is consumer:
            self._consumer = None

    def _drop_if_empty(self, assistant: Message) -> None:
        if not assistant.content:
            self.messages = [m for m in self.messages if m is not assistant]

    async def _report_failure(self, result: StreamResult, handler: StreamHandler) -> StreamResult:
        self.notifier.error("Error", str(result.error))
        await invoke(handler.on_error, result.error)
        return result

    async def _refresh_sessions(self) -> None:
        try:
            await self.session_store.load_all()
        except ChatError as e:
            # The answer itself arrived; the list is refreshed on the next exchange
            logger.warning(f"Conversation list refresh failed: {e}")


def _image_of(message: Message) -> Optional[str]:
    return message.attachments.image_ref if message.attachments else None


def _wire_message(role: str, content: str, image_ref: Optional[str]) -> dict:
    message = {"role": role, "content": content}
    if image_ref:
        message["imageBase64"] = image_ref
    return message
