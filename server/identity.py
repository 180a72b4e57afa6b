"""
The identity boundary.

Authentication happens upstream; by the time a socket reaches us the
connection id and display name are already trusted. We only normalise them.
"""
import uuid

from pydantic import BaseModel, Field

MAX_IDENTITY_LENGTH = 64


class Identity(BaseModel):
    connection_id: str = Field(min_length=1, max_length=MAX_IDENTITY_LENGTH)
    display_name: str = Field(min_length=1, max_length=MAX_IDENTITY_LENGTH)


def generate_connection_id() -> str:
    return f"client-{uuid.uuid4().hex[:12]}"


def resolve_identity(connection_id: str | None, display_name: str | None) -> Identity:
    """
    Use the caller-supplied id if there is one, otherwise generate a short
    readable one like 'client-3f2a9c41b0de'. The display name defaults to the id.
    Raises pydantic.ValidationError on oversized values.
    """
    cid = (connection_id or "").strip() or generate_connection_id()
    name = (display_name or "").strip() or cid
    return Identity(connection_id=cid, display_name=name)
