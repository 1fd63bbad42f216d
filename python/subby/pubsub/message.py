"""
subby/pubsub/message.py

Request and response bodies of the Pub/Sub REST publish call.

A message payload is any JSON-serializable value (or pydantic model), encoded
as compact JSON bytes and then URL-safe base64. Raw bytes are base64-encoded
as-is.
"""

from __future__ import annotations

import base64
import json
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def encode_payload(value: Any) -> bytes:
    """Serialize a value to the bytes carried in a message."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, BaseModel):
        return value.model_dump_json().encode("utf-8")
    return json.dumps(value, separators=(",", ":")).encode("utf-8")


class PubSubMessage(BaseModel):
    data: str
    attributes: Optional[Dict[str, str]] = None
    ordering_key: Optional[str] = Field(default=None, alias="orderingKey")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def new(
        cls,
        value: Any,
        attributes: Optional[Dict[str, str]] = None,
        ordering_key: Optional[str] = None,
    ) -> PubSubMessage:
        """Build a message from a JSON-serializable value, a pydantic model, or bytes.

        Raises:
            TypeError: If the value is not JSON-serializable.
        """
        data = base64.urlsafe_b64encode(encode_payload(value)).decode("ascii")
        return cls(data=data, attributes=attributes or None, ordering_key=ordering_key)

    def decode(self) -> bytes:
        """Return the original payload bytes."""
        return base64.urlsafe_b64decode(self.data.encode("ascii"))

    def to_body(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PubSubMessages(BaseModel):
    messages: List[PubSubMessage]

    @classmethod
    def oneshot(
        cls, value: Any, attributes: Optional[Dict[str, str]] = None
    ) -> PubSubMessages:
        return cls(messages=[PubSubMessage.new(value, attributes)])

    @classmethod
    def from_values(cls, values: Iterable[Any]) -> PubSubMessages:
        return cls(messages=[PubSubMessage.new(value) for value in values])

    def to_body(self) -> Dict[str, Any]:
        return {"messages": [m.to_body() for m in self.messages]}


class PubSubResponse(BaseModel):
    message_ids: List[str] = Field(alias="messageIds")

    model_config = ConfigDict(populate_by_name=True)
