import logging

import httpx

from app.config import settings

logger = logging.getLogger(__name__)


class ChannelDeliveryError(Exception):
    pass


def send_channel_message(
    channel: str,
    recipients: list[str],
    template: str,
    payload: dict,
) -> None:
    """Hand one message to the channel gateway.

    Raises :class:`ChannelDeliveryError` on transport errors and non-2xx
    responses so the caller can retry.
    """
    if not settings.channel_gateway_url:
        logger.info(
            "No channel gateway configured; %s message %s to %s logged only",
            channel,
            template,
            ", ".join(recipients),
        )
        return

    url = f"{settings.channel_gateway_url.rstrip('/')}/messages/{channel}"
    headers: dict[str, str] = {"Content-Type": "application/json"}
    if settings.channel_gateway_token:
        headers["Authorization"] = f"Bearer {settings.channel_gateway_token}"
    body = {"recipients": recipients, "template": template, "payload": payload}

    try:
        with httpx.Client(timeout=settings.channel_gateway_timeout_seconds) as client:
            resp = client.post(url, json=body, headers=headers)
            resp.raise_for_status()
    except httpx.HTTPError as e:
        raise ChannelDeliveryError(f"{channel} send failed: {e}") from e
    logger.info("Sent %s message %s to %d recipient(s)", channel, template, len(recipients))
