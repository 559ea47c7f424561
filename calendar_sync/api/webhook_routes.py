"""
Receiver for Google Calendar push notifications.

Google expects a fast 2xx; the incremental sync runs after the response
is sent.
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Response

from calendar_sync.api.dependencies import get_orchestrator
from calendar_sync.integrations.google_calendar.types import WebhookNotification
from calendar_sync.services.sync_orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def _process_notification(orchestrator: SyncOrchestrator, notification: WebhookNotification) -> None:
    try:
        await orchestrator.handle_webhook(notification)
    except Exception as e:
        logger.error(
            f"Webhook processing failed for channel {notification.channel_id}: {e}",
            exc_info=True,
        )


@router.post("/google", status_code=200)
async def google_notification(
    background_tasks: BackgroundTasks,
    x_goog_channel_id: Optional[str] = Header(None),
    x_goog_resource_id: Optional[str] = Header(None),
    x_goog_resource_state: Optional[str] = Header(None),
    x_goog_channel_token: Optional[str] = Header(None),
    x_goog_message_number: Optional[str] = Header(None),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Response:
    """
    Accept a push notification.

    Requests without channel headers are acknowledged and dropped so
    Google does not retry them.
    """
    if not x_goog_channel_id or not x_goog_resource_state:
        logger.warning("Webhook request missing X-Goog-* headers; ignoring")
        return Response(status_code=200)

    notification = WebhookNotification(
        channel_id=x_goog_channel_id,
        resource_id=x_goog_resource_id,
        resource_state=x_goog_resource_state,
        token=x_goog_channel_token,
        message_number=x_goog_message_number,
    )
    background_tasks.add_task(_process_notification, orchestrator, notification)
    return Response(status_code=200)
