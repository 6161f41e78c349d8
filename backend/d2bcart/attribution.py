# Ad attribution: Facebook Conversions API (server side pixel events)

import hashlib
import logging
import time
from typing import Any, Dict, Optional

import httpx

from d2bcart.config import FACEBOOK_ACCESS_TOKEN, FACEBOOK_GRAPH_URL, FACEBOOK_PIXEL_ID

logger = logging.getLogger(__name__)


def hash_identifier(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return hashlib.sha256(value.strip().lower().encode()).hexdigest()


def attribution_from_checkout(utm_source: Optional[str], utm_campaign: Optional[str], fbclid: Optional[str],
                              fbp: Optional[str] = None, fbc: Optional[str] = None) -> Dict[str, Optional[str]]:
    """What gets stored on the payment attempt and copied onto every order."""
    return {
        "utm_source": utm_source,
        "utm_campaign": utm_campaign,
        "fbclid": fbclid,
        "fbp": fbp,
        "fbc": fbc,
    }


class ConversionsClient:

    def __init__(
        self,
        pixel_id: str = FACEBOOK_PIXEL_ID,
        access_token: Optional[str] = FACEBOOK_ACCESS_TOKEN,
        graph_url: str = FACEBOOK_GRAPH_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.pixel_id = pixel_id
        self.access_token = access_token
        self.graph_url = graph_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout)
        self.transport = transport

    def build_payload(self, event_name: str, custom_data: Dict[str, Any], user_data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "data": [
                {
                    "event_name": event_name,
                    "event_time": int(time.time()),
                    "action_source": "website",
                    "user_data": {
                        "em": [hash_identifier(user_data.get("email"))],
                        "ph": [hash_identifier(user_data.get("phone"))],
                        "fbp": user_data.get("fbp"),
                        "fbc": user_data.get("fbc"),
                    },
                    "custom_data": custom_data,
                }
            ]
        }

    def send_event(self, event_name: str, custom_data: Dict[str, Any], user_data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Never raises. Returns the API response, or None when skipped or failed."""
        if not self.access_token:
            logger.warning("Facebook CAPI: No Access Token found. Skipping event.")
            return None

        url = f"{self.graph_url}/{self.pixel_id}/events"
        payload = self.build_payload(event_name, custom_data, user_data)

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(url, params={"access_token": self.access_token}, json=payload)
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Facebook CAPI Request Failed: {e}")
            return None

        if data.get("error"):
            logger.error(f"Facebook CAPI Error: {data['error']}")
            return None

        logger.info(f"Facebook CAPI {event_name} sent: {data}")
        return data
