#!/usr/bin/env python3

import base64
import json
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Union

from byos_auth import HttpResponse, get_base_url, get_valid_access_token, send_request
from config import CONTENT_TYPES, RESPONSE_BODY_TRUNCATE_LENGTH
from models import ByosHanamiConfig, TokenResponse, WebhookFormat, WebhookFormatConfig

logger = logging.getLogger(__name__)


class WebhookError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class WebhookPayload:
    body: bytes
    content_type: str


class RawFormatTransformer:
    """Binary image body, content type taken from the image format."""

    def transform(self, image: bytes, fmt: str, config: Optional[ByosHanamiConfig] = None) -> WebhookPayload:
        return WebhookPayload(body=image, content_type=CONTENT_TYPES.get(fmt, "image/png"))


class ByosHanamiFormatTransformer:
    """JSON screen object with the image base64-encoded, as the BYOS screens API expects."""

    def transform(self, image: bytes, fmt: str, config: Optional[ByosHanamiConfig] = None) -> WebhookPayload:
        if config is None:
            raise ValueError("BYOS Hanami format requires config with label, name, and model_id")
        payload = {
            "screen": {
                "data": base64.b64encode(image).decode('ascii'),
                "label": config.label,
                "name": config.name,
                "model_id": config.model_id,
                "file_name": f"{config.name}.{fmt}",
            }
        }
        return WebhookPayload(body=json.dumps(payload).encode('utf-8'), content_type="application/json")


def get_transformer(format_config: Optional[WebhookFormatConfig]):
    if format_config is not None and format_config.format == WebhookFormat.BYOS_HANAMI:
        return ByosHanamiFormatTransformer()
    return RawFormatTransformer()


@dataclass
class DeliveryResult:
    success: bool
    status: int
    status_text: str


def _format_value(fmt: Union[str, object]) -> str:
    return getattr(fmt, "value", fmt)


def delete_existing_screen(webhook_url: str, model_id: str, auth_token: str,
                           timeout: float = 10.0) -> bool:
    """Delete the BYOS screen bound to model_id so a rejected upload can be retried."""
    screens_url = f"{get_base_url(webhook_url)}/api/screens"
    try:
        listing = send_request(screens_url, headers={"Authorization": auth_token}, timeout=timeout)
        if not listing.ok:
            logger.error(f"Failed to list screens: {listing.status} {listing.reason}")
            return False

        screens = listing.json().get("data", [])
        existing = next((s for s in screens if str(s.get("model_id")) == str(model_id).strip()), None)
        if existing is None:
            logger.debug(f"No existing screen found with model_id: {model_id}")
            return False

        logger.info(f"Found existing screen id={existing['id']} with model_id={model_id}, deleting")
        deleted = send_request(f"{screens_url}/{existing['id']}", method="DELETE",
                               headers={"Authorization": auth_token}, timeout=timeout)
        if not deleted.ok:
            logger.error(f"Failed to delete screen: {deleted.status} {deleted.reason}")
            return False

        logger.info(f"Deleted screen id={existing['id']}")
        return True
    except (OSError, ValueError, AttributeError, KeyError) as e:
        logger.error(f"Error during screen deletion: {e}")
        return False


def _error_detail(response: HttpResponse) -> str:
    text = response.text
    if not text:
        return ""
    logger.error(f"Response body: {text[:RESPONSE_BODY_TRUNCATE_LENGTH]}")
    try:
        parsed = json.loads(text)
    except ValueError:
        return f" - {text}" if len(text) <= 100 else ""
    if isinstance(parsed, dict):
        if parsed.get("error"):
            return f" - {parsed['error']}"
        if parsed.get("message"):
            return f" - {parsed['message']}"
    return ""


def upload_to_webhook(webhook_url: str, image: bytes, fmt,
                      webhook_headers: Optional[Dict[str, str]] = None,
                      webhook_format: Optional[WebhookFormatConfig] = None,
                      on_token_refresh: Optional[Callable[[TokenResponse], None]] = None,
                      timeout: float = 30.0) -> DeliveryResult:
    """
    POST a processed image to a webhook.

    Raises WebhookError on a non-2xx response; network failures propagate as
    URLError/OSError so the caller can decide whether to retry.
    """
    fmt = _format_value(fmt)
    byos_config = None
    if webhook_format is not None and webhook_format.format == WebhookFormat.BYOS_HANAMI:
        byos_config = webhook_format.byos_config
    payload = get_transformer(webhook_format).transform(image, fmt, byos_config)

    format_name = webhook_format.format.value if webhook_format is not None else "raw"
    logger.info(f"Sending webhook: {webhook_url} ({payload.content_type}, {len(image)} bytes, format: {format_name})")

    headers = dict(webhook_headers or {})
    headers["Content-Type"] = payload.content_type

    auth = byos_config.auth if byos_config is not None else None
    if auth is not None and auth.enabled and auth.access_token:
        token = get_valid_access_token(webhook_url, auth, on_refresh=on_token_refresh)
        if token:
            headers["Authorization"] = token
            logger.debug("BYOS auth: using JWT token")
        else:
            logger.warning("BYOS auth: no valid token, request may fail")

    response = send_request(webhook_url, method="POST", headers=headers, body=payload.body, timeout=timeout)

    if not response.ok:
        logger.error(f"Webhook failed: {response.status} {response.reason}")

        # 422: the device already has a screen in BYOS, replace it
        if response.status == 422 and byos_config is not None and headers.get("Authorization"):
            logger.info("Got 422, attempting to delete existing screen and retry")
            if delete_existing_screen(webhook_url, byos_config.model_id, headers["Authorization"]):
                retry = send_request(webhook_url, method="POST", headers=headers,
                                     body=payload.body, timeout=timeout)
                if retry.ok:
                    logger.info(f"Retry successful: {retry.status} {retry.reason}")
                    return DeliveryResult(True, retry.status, retry.reason)
                logger.error(f"Retry also failed: {retry.status} {retry.reason}")

        raise WebhookError(f"HTTP {response.status}: {response.reason}{_error_detail(response)}",
                           status_code=response.status)

    logger.info(f"Webhook success: {response.status} {response.reason}")
    if response.body:
        logger.debug(f"Response body: {response.text[:RESPONSE_BODY_TRUNCATE_LENGTH]}")
    return DeliveryResult(True, response.status, response.reason)
