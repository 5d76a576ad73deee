"""
Capital Project Portal
Notification Service.

Fans workflow events out to three channels:

    in-app : stored in the notifications repository
    email  : handed to the outbound mail transport (logged here)
    chat   : handed to the chat transport (logged here)

Delivery is external to the workflow core.  Every public entry point is
non-blocking: a channel failure is logged and never fails the workflow
operation that triggered it.
"""

import logging
import uuid
from datetime import datetime, timezone

from flask import current_app

from app.core.exceptions import PersistenceError
from app.services.audit_log import append_governance_audit_log
from app.services.identity import normalize_email
from app.services.role_contexts import ROLE_CONTEXT_LABELS
from app.storage import get_repositories

logger = logging.getLogger(__name__)


def _portal_link(href):
    if not href or href.startswith("http"):
        return href
    base = current_app.config.get("PORTAL_BASE_URL", "").rstrip("/")
    return f"{base}{href}" if base else href


class NotificationService:
    """Stateless service class for workflow notifications."""

    # ── Channels ──────────────────────────────────────────────────────────

    @staticmethod
    def send_in_app(*, title, body, href="/submissions", to_email=None):
        """Store an in-app notification; returns the stored item."""
        item = {
            "id": f"n-{uuid.uuid4().hex[:12]}",
            "title": title,
            "body": body,
            "href": href or "/submissions",
            "recipient_email": normalize_email(to_email) or None,
            "is_read": False,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        repo = get_repositories().notifications
        rows = repo.read_all()
        rows.append(item)
        repo.write_all(rows)
        append_governance_audit_log(
            area="WORKFLOW",
            action="NOTIFICATION_QUEUED",
            entity_type="notification",
            entity_id=item["id"],
            actor_name="Notification Service",
            actor_email="system@portal.local",
            details="Queued in-app notification.",
            metadata={"channel": "in_app", "recipient": item["recipient_email"] or "all", "title": title},
        )
        return item

    @staticmethod
    def send_email(*, title, body, href=None, to_email=None):
        if not to_email:
            return
        logger.info("Outbound email to %s: %s (%s)", normalize_email(to_email), title, _portal_link(href))

    @staticmethod
    def send_chat(*, title, body, href=None, to_email=None):
        if not to_email:
            return
        logger.info("Outbound chat message to %s: %s (%s)", normalize_email(to_email), title, _portal_link(href))

    # ── Fan-out ───────────────────────────────────────────────────────────

    @staticmethod
    def notify_recipient(to_email, title, body, href):
        """Send on every channel; failures are logged and swallowed per channel."""
        for channel in (NotificationService.send_in_app,
                        NotificationService.send_email,
                        NotificationService.send_chat):
            try:
                channel(title=title, body=body, href=href, to_email=to_email)
            except PersistenceError as exc:
                logger.warning("Notification channel %s failed for %s: %s",
                               channel.__name__, to_email, exc,
                               extra={"persistence_code": exc.code})
            except Exception:
                logger.exception("Notification channel %s failed for %s", channel.__name__, to_email)

    @staticmethod
    def notify_workflow_event(submission, title, body, href=None, to_email=None):
        """In-app workflow notice plus a NOTIFICATION_SENT audit entry."""
        href = href or f"/submissions/{submission['id']}"
        try:
            NotificationService.send_in_app(title=title, body=body, href=href, to_email=to_email)
        except Exception:
            logger.exception("Workflow notification failed", extra={"submission_id": submission["id"]})
        append_governance_audit_log(
            area="WORKFLOW",
            action="NOTIFICATION_SENT",
            entity_type="submission",
            entity_id=submission["id"],
            actor_name="Workflow System",
            actor_email="system@portal.local",
            details=title,
            metadata={"recipient_email": to_email or "", "href": href},
        )

    @staticmethod
    def notify_approval_request_created(submission, request):
        """Tell the approver a request is waiting for them."""
        label = ROLE_CONTEXT_LABELS.get(request.get("role_context"), "Sponsor")
        NotificationService.notify_recipient(
            request.get("approver_email"),
            f"{submission['id']} approval request",
            f"Approval required as {label} for {submission.get('title') or submission['id']}.",
            "/approvals",
        )

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient_email=None):
        """Unread first, then newest first.  Broadcasts (no recipient) always included."""
        rows = get_repositories().notifications.read_all()
        target = normalize_email(recipient_email)
        if target:
            rows = [r for r in rows if not r.get("recipient_email") or r["recipient_email"] == target]
        rows.sort(key=lambda r: r.get("created_at") or "", reverse=True)
        rows.sort(key=lambda r: bool(r.get("is_read")))
        return rows
