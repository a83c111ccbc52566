"""
Request context: the id of the HTTP request (or webhook delivery) being
served, visible to every log line emitted while handling it, including
from builds a request launches.
"""
import uuid
from contextvars import ContextVar
from typing import Optional

request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def get_request_id() -> str:
    """Current request id, or "" outside a request."""
    return request_id_var.get()


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set the request id, generating one if none is given."""
    rid = request_id or str(uuid.uuid4())
    request_id_var.set(rid)
    return rid
