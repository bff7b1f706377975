"""Messages exchanged between the engine and its display consumer.

Control messages flow consumer -> engine, offset messages engine -> consumer.
Field names on the wire are camelCase; Python code uses the snake_case names.
"""

from __future__ import annotations

import base64
import binascii
from typing import Any, Mapping, Optional

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

logger = structlog.get_logger(__name__)

CERT_HASH_LENGTH = 32  # SHA-256


class ControlMessage(BaseModel):
    """Lifecycle and configuration signal from the consumer."""
    hidden: Optional[bool] = Field(None, description="Visibility of the display")
    initial_time_origin: Optional[float] = Field(
        None, alias="initialTimeOrigin", description="Bootstrap origin before the first measurement"
    )
    transport_port: Optional[int] = Field(None, alias="transportPort", gt=0, le=65535)
    transport_cert_hash: Optional[str] = Field(None, alias="transportCertHash")

    class Config:
        populate_by_name = True
        extra = "ignore"

    @field_validator("transport_cert_hash")
    @classmethod
    def _check_cert_hash(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        try:
            digest = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"certificate hash is not valid base64: {e}") from e
        if len(digest) != CERT_HASH_LENGTH:
            raise ValueError(f"certificate hash must be {CERT_HASH_LENGTH} bytes, got {len(digest)}")
        return value

    @model_validator(mode="after")
    def _not_empty(self) -> "ControlMessage":
        if not self.model_fields_set:
            raise ValueError("control message carries no known field")
        return self


class OffsetMessage(BaseModel):
    """Smoothed measurement published after every successful cycle (all ms)."""
    delay: float
    time_origin_offset: float = Field(..., alias="timeOriginOffset")
    offset: float

    class Config:
        populate_by_name = True
        frozen = True

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


def parse_control(raw: Any) -> Optional[ControlMessage]:
    """Validate an inbound control message; malformed input is logged and dropped."""
    if isinstance(raw, ControlMessage):
        return raw
    if not isinstance(raw, Mapping):
        logger.warning("control_message_rejected", reason="not a mapping", kind=type(raw).__name__)
        return None
    try:
        return ControlMessage.model_validate(dict(raw))
    except ValidationError as e:
        logger.warning("control_message_rejected", errors=e.errors(include_url=False))
        return None
