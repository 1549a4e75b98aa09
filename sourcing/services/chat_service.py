from typing import Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type, before_sleep_log
import logging
import structlog

from sourcing.config import settings

logger = structlog.get_logger()
_std_logger = logging.getLogger(__name__)

# Module-level singleton, reuses TLS connections across calls
_http_client: Optional[httpx.AsyncClient] = None


def get_http_client() -> httpx.AsyncClient:
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(10.0, connect=5.0),
        )
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is not None and not _http_client.is_closed:
        await _http_client.aclose()
    _http_client = None


class _WebhookRetryableError(Exception):
    """Raised for 5xx or network errors that warrant a retry."""


@retry(
    retry=retry_if_exception_type(_WebhookRetryableError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    before_sleep=before_sleep_log(_std_logger, logging.WARNING),
    reraise=False,
)
async def _post_with_retry(url: str, payload: dict) -> bool:
    client = get_http_client()
    try:
        response = await client.post(url, json=payload)
    except (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError) as exc:
        logger.warning("chat_webhook_network_error_retrying", error=str(exc))
        raise _WebhookRetryableError(str(exc)) from exc

    if response.status_code < 300:
        logger.info("chat_webhook_sent", status_code=response.status_code)
        return True

    if response.status_code >= 500:
        logger.warning("chat_webhook_5xx_retrying", status_code=response.status_code)
        raise _WebhookRetryableError(f"Webhook returned {response.status_code}")

    # 4xx: malformed message or revoked hook, no retry
    logger.error(
        "chat_webhook_failed",
        status_code=response.status_code,
        response=response.text[:500],
    )
    return False


async def post_chat_message(title: str, text: str) -> bool:
    """
    Post a markdown message to the team chat webhook.

    Retries up to 3 times with exponential back-off on 5xx and network errors.
    Returns True if the webhook accepted the message, False otherwise.
    """
    if not settings.CHAT_WEBHOOK_URL:
        logger.debug("chat_webhook_not_configured")
        return False

    payload = {
        "msgtype": "markdown",
        "markdown": {"title": title, "text": f"### {title}\n{text}"},
    }
    try:
        return await _post_with_retry(settings.CHAT_WEBHOOK_URL, payload) or False
    except Exception as exc:
        logger.error("chat_webhook_all_retries_exhausted", error=str(exc), title=title)
        return False
