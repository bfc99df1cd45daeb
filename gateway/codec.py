"""
XML codec for the platform envelope.

decode_inbound turns a raw delivery body into an InboundMessage;
encode_outbound renders an OutboundMessage with CDATA-wrapped text fields.
"""

import logging
import xml.etree.ElementTree as ET

from pydantic import ValidationError

from gateway.errors import DecodeFailure
from gateway.schemas import EventType, InboundMessage, MsgType, OutboundMessage

logger = logging.getLogger(__name__)

_EVENTS = {e.value: e for e in EventType if e is not EventType.OTHER}


def _text(root: ET.Element, tag: str):
    node = root.find(tag)
    if node is None or node.text is None:
        return None
    return node.text


def decode_inbound(body: bytes) -> InboundMessage:
    """
    Decode a platform XML delivery.

    Raises:
        DecodeFailure: body is not XML or misses required fields
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise DecodeFailure(f"invalid XML: {e}")

    raw_msg_type = _text(root, "MsgType")
    raw_event = _text(root, "Event")

    if raw_msg_type == "event":
        msg_type = MsgType.EVENT
    elif raw_msg_type == "text":
        msg_type = MsgType.TEXT
    else:
        msg_type = MsgType.UNSUPPORTED

    event = None
    if msg_type is MsgType.EVENT and raw_event is not None:
        event = _EVENTS.get(raw_event, EventType.OTHER)

    try:
        return InboundMessage(
            from_user=_text(root, "FromUserName"),
            to_user=_text(root, "ToUserName"),
            create_time=_text(root, "CreateTime"),
            msg_type=msg_type,
            event=event,
            ticket=_text(root, "Ticket"),
            content=_text(root, "Content"),
            raw_msg_type=raw_msg_type,
            raw_event=raw_event,
        )
    except ValidationError as e:
        raise DecodeFailure(f"invalid message: {e.error_count()} validation error(s)")


def _cdata(value: str) -> str:
    # "]]>" cannot appear inside a CDATA section; split it across two sections
    return "<![CDATA[" + value.replace("]]>", "]]]]><![CDATA[>") + "]]>"


def encode_outbound(message: OutboundMessage) -> str:
    """Render a text reply envelope."""
    xml = (
        "<xml>"
        f"<ToUserName>{_cdata(message.to_user)}</ToUserName>"
        f"<FromUserName>{_cdata(message.from_user)}</FromUserName>"
        f"<CreateTime>{message.create_time}</CreateTime>"
        f"<MsgType>{_cdata(message.msg_type)}</MsgType>"
        f"<Content>{_cdata(message.content)}</Content>"
        "</xml>"
    )
    logger.debug(f"Encoded reply for {message.to_user}: {len(xml)} bytes")
    return xml
