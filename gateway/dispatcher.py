"""
Webhook protocol handling.

A delivery moves through Unverified -> Verified -> Classified -> Responded,
or stops at Rejected on a bad signature or a malformed body. The signature
is always checked before the body is decoded, and the body is always
classified before any cache or network access.
"""

import logging
from dataclasses import dataclass, replace
from typing import Optional, Protocol

from gateway.background import BackgroundWorker
from gateway.codec import decode_inbound, encode_outbound
from gateway.errors import AuthFailure, DecodeFailure
from gateway.logging_utils import bind_log_context
from gateway.orchestrator import SERVICE_UNAVAILABLE, ConversationOrchestrator
from gateway.schemas import EventType, InboundMessage, MsgType, OutboundMessage
from gateway.utils import verify_signature

logger = logging.getLogger(__name__)

INVALID_PARAMETERS = "invalid request parameters"
SIGNATURE_FAILED = "signature verification failed"
INTERNAL_ERROR = "internal server error"
UNSUBSCRIBE_ACK = "success"

SCAN_GREETING = "Scan successful! I'm your AI assistant."
SUBSCRIBE_WELCOME = "Thanks for following! I'm your AI assistant, ask me anything."
UNSUPPORTED_EVENT = "This event type is not supported yet."
UNSUPPORTED_TYPE = "This message type is not supported yet."

TEXT_PLAIN = "text/plain"
APPLICATION_XML = "application/xml"


class LoginStateStore(Protocol):
    async def save_login_state(self, ticket: str, user_id: str) -> None: ...


@dataclass(frozen=True)
class WebhookReply:
    status_code: int
    body: str
    media_type: str = TEXT_PLAIN
    result: str = "ok"
    user_id: Optional[str] = None
    msg_type: Optional[str] = None
    event: Optional[str] = None


def _rejection(error: AuthFailure) -> WebhookReply:
    if error.reason == "invalid_parameters":
        return WebhookReply(400, INVALID_PARAMETERS, result=error.reason)
    return WebhookReply(403, SIGNATURE_FAILED, result=error.reason)


class WebhookDispatcher:
    """
    Args:
        token: Shared signature secret
        account_id: Platform account id used as the reply sender; when empty
            the delivery's ToUserName is used
        orchestrator: Answers text messages
        login_store: Records scan ticket bindings
        worker: Background queue for login bindings
    """

    def __init__(
        self,
        token: str,
        account_id: str,
        orchestrator: ConversationOrchestrator,
        login_store: LoginStateStore,
        worker: BackgroundWorker,
    ):
        self.token = token
        self.account_id = account_id
        self.orchestrator = orchestrator
        self.login_store = login_store
        self.worker = worker

    def handle_challenge(
        self,
        signature: Optional[str],
        timestamp: Optional[str],
        nonce: Optional[str],
        echostr: Optional[str],
    ) -> WebhookReply:
        """Answer the platform's server verification request."""
        try:
            if any(value is None or not value.strip() for value in (signature, timestamp, nonce, echostr)):
                raise AuthFailure("invalid_parameters")
            self._authenticate(signature, timestamp, nonce)
            logger.info("Challenge verified")
            return WebhookReply(200, echostr, result="challenge_ok")
        except AuthFailure as e:
            logger.warning(f"Challenge rejected: {e.reason}")
            return _rejection(e)
        except Exception:
            logger.exception("Challenge verification failed unexpectedly")
            return WebhookReply(500, INTERNAL_ERROR, result="error")

    async def handle_delivery(
        self,
        signature: Optional[str],
        timestamp: Optional[str],
        nonce: Optional[str],
        openid: Optional[str],
        body: bytes,
    ) -> WebhookReply:
        """Verify, decode and answer one platform delivery."""
        try:
            self._authenticate(signature, timestamp, nonce)
        except AuthFailure as e:
            logger.warning(f"Delivery rejected: {e.reason}, openid={openid}")
            return _rejection(e)

        try:
            message = decode_inbound(body)
        except DecodeFailure as e:
            logger.error(f"Delivery rejected: {e.reason}, openid={openid}")
            return WebhookReply(500, INTERNAL_ERROR, result="decode_error")

        user_id = openid or message.from_user
        bind_log_context(user_id=user_id)
        try:
            reply = await self._dispatch(message, user_id)
        except Exception:
            # Verified, decoded deliveries are always acknowledged with a 200
            logger.exception(f"Delivery handling failed unexpectedly, openid={openid}")
            reply = self._reply(message, user_id, SERVICE_UNAVAILABLE, result="error")
        return replace(reply, user_id=user_id, msg_type=message.raw_msg_type, event=message.raw_event)

    def _authenticate(self, signature, timestamp, nonce) -> None:
        if not verify_signature(self.token, signature, timestamp, nonce):
            raise AuthFailure("invalid_signature")

    async def _dispatch(self, message: InboundMessage, user_id: str) -> WebhookReply:
        logger.info(f"Delivery from {user_id}: msg_type={message.raw_msg_type}, event={message.raw_event}")

        if message.msg_type is MsgType.EVENT:
            return self._handle_event(message, user_id)
        if message.msg_type is MsgType.TEXT:
            return await self._handle_text(message, user_id)
        logger.warning(f"Unsupported message type: {message.raw_msg_type}")
        return self._reply(message, user_id, UNSUPPORTED_TYPE, result="unsupported_type")

    def _handle_event(self, message: InboundMessage, user_id: str) -> WebhookReply:
        if message.event is EventType.SCAN:
            if message.ticket:
                self.worker.submit("save_login_state", self.login_store.save_login_state, message.ticket, user_id)
            else:
                logger.warning(f"SCAN event without ticket from {user_id}")
            return self._reply(message, user_id, SCAN_GREETING, result="event_scan")
        if message.event is EventType.SUBSCRIBE:
            return self._reply(message, user_id, SUBSCRIBE_WELCOME, result="event_subscribe")
        if message.event is EventType.UNSUBSCRIBE:
            logger.info(f"User {user_id} unsubscribed")
            return WebhookReply(200, UNSUBSCRIBE_ACK, result="event_unsubscribe")
        logger.warning(f"Unsupported event type: {message.raw_event}")
        return self._reply(message, user_id, UNSUPPORTED_EVENT, result="event_unsupported")

    async def _handle_text(self, message: InboundMessage, user_id: str) -> WebhookReply:
        try:
            outcome = await self.orchestrator.answer(user_id, message.content)
        except Exception:
            logger.exception(f"Orchestrator failed for {user_id}")
            return self._reply(message, user_id, SERVICE_UNAVAILABLE, result="text_error")

        return self._reply(message, user_id, outcome.text, result=f"text_{outcome.kind.value}")

    def _reply(self, message: InboundMessage, user_id: str, content: str, result: str) -> WebhookReply:
        outbound = OutboundMessage(
            from_user=self.account_id or message.to_user,
            to_user=user_id,
            content=content,
        )
        return WebhookReply(200, encode_outbound(outbound), media_type=APPLICATION_XML, result=result)
