"""
GitHub webhook receiver.

Verifies the payload signature (when a secret is configured), converts push
and pull_request payloads into CommitNotification and hands them to intake.
"""
import hashlib
import hmac
import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request

from deadci.api.builds import get_services
from deadci.core.store import EventStoreError
from deadci.schemas.events import CommitNotification, EventType

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

ZERO_COMMIT = "0" * 40
BRANCH_REF_PREFIX = "refs/heads/"


def verify_signature(secret: str, body: bytes, headers) -> bool:
    """Check X-Hub-Signature-256 (or legacy X-Hub-Signature) against the body."""
    signature = headers.get("x-hub-signature-256")
    digestmod = hashlib.sha256
    prefix = "sha256="
    if not signature:
        signature = headers.get("x-hub-signature")
        digestmod = hashlib.sha1
        prefix = "sha1="
    if not signature or not signature.startswith(prefix):
        return False

    expected = prefix + hmac.new(secret.encode(), body, digestmod).hexdigest()
    return hmac.compare_digest(expected.encode(), signature.encode())


def _owner_login(repo: dict[str, Any]) -> str:
    owner = repo["owner"]
    return owner.get("login") or owner["name"]


def parse_github_payload(event_type: str, payload: dict[str, Any]) -> Optional[CommitNotification]:
    """
    Convert a GitHub webhook payload into a notification.
    Returns None for payloads that never produce a build.

    Raises:
        KeyError / ValueError: malformed payload
    """
    if event_type == "push":
        ref = payload["ref"]
        commit = payload.get("after") or (payload.get("head_commit") or {}).get("id")
        if not ref.startswith(BRANCH_REF_PREFIX) or not commit or commit == ZERO_COMMIT:
            return None
        repo = payload["repository"]
        return CommitNotification(
            type=EventType.PUSH,
            owner=_owner_login(repo),
            repo=repo["name"],
            branch=ref[len(BRANCH_REF_PREFIX):],
            commit=commit,
        )

    if event_type == "pull_request":
        pr = payload["pull_request"]
        head, base = pr["head"], pr["base"]
        return CommitNotification(
            type=EventType.PULL_REQUEST,
            action=payload.get("action"),
            owner=_owner_login(head["repo"]),
            repo=head["repo"]["name"],
            branch=head["ref"],
            commit=head["sha"],
            base_owner=_owner_login(base["repo"]),
            base_repo=base["repo"]["name"],
            base_branch=base["ref"],
        )

    return None


@router.post("/postreceive")
async def postreceive(request: Request) -> dict:
    """Receive a GitHub webhook delivery."""
    services = get_services(request)
    body = await request.body()

    secret = services.config.github_secret
    if secret and not verify_signature(secret, body, request.headers):
        logger.warning("webhook_rejected reason=signature")
        raise HTTPException(status_code=403, detail="Invalid signature")

    event_type = request.headers.get("x-github-event", "")
    if event_type == "ping":
        return {"status": "pong"}

    try:
        payload = json.loads(body)
        notification = parse_github_payload(event_type, payload)
    except (ValueError, KeyError, TypeError, AttributeError):
        raise HTTPException(status_code=400, detail="Malformed payload")

    if notification is None:
        return {"status": "ignored"}

    try:
        event = await services.intake.handle_notification(notification)
    except EventStoreError as e:
        raise HTTPException(status_code=500, detail=str(e))

    if event is None:
        return {"status": "skipped"}
    return {"status": event.status.value, "url": event.full_url(services.config.base_url)}
