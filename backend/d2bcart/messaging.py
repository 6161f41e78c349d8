# WhatsApp messaging through MSG91

# Templates go through the bulk outbound endpoint (works any time),
# free text only inside the 24h customer service window.

import logging
from typing import Any, Dict, List, Optional

import httpx

from d2bcart.config import (
    MSG91_AUTH_KEY,
    MSG91_BASE_URL,
    MSG91_INTEGRATED_NUMBER,
    MSG91_NAMESPACE,
)

logger = logging.getLogger(__name__)


class WhatsAppError(Exception):
    """Network level failure talking to MSG91."""


def clean_phone(mobile: str) -> str:
    return (mobile or "").replace("+", "").replace(" ", "").replace("\t", "")


# -----------------------------------------------------------------
# Component helpers
# -----------------------------------------------------------------

def text_param(value: Any) -> Dict[str, str]:
    return {"type": "text", "value": str(value)}


def catalog_button(filename: str) -> Dict[str, Any]:
    """URL button whose dynamic suffix is the catalog file (.../downloads/<filename>)"""
    return {"button_1": {"subtype": "url", "type": "text", "value": filename}}


class WhatsAppClient:

    def __init__(
        self,
        auth_key: Optional[str] = MSG91_AUTH_KEY,
        integrated_number: str = MSG91_INTEGRATED_NUMBER,
        namespace: str = MSG91_NAMESPACE,
        base_url: str = MSG91_BASE_URL,
        timeout: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.auth_key = auth_key
        self.integrated_number = integrated_number
        self.namespace = namespace
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout)
        self.transport = transport

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"authkey": self.auth_key, "Content-Type": "application/json"}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(f"{self.base_url}{path}", json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"[MSG91] Request to {path} failed: {e}")
            raise WhatsAppError(str(e)) from e

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text}

        if response.is_success and not (isinstance(data, dict) and data.get("error")):
            return {"success": True, "data": data}

        logger.warning(f"[MSG91] {path} rejected ({response.status_code}): {data}")
        return {"success": False, "error": data}

    def send_template(
        self,
        mobile: str,
        template_name: str,
        components: Dict[str, Any],
        namespace: Optional[str] = None,
        integrated_number: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not self.auth_key:
            return {"success": False, "error": "Configuration missing"}

        payload = {
            "integrated_number": integrated_number or self.integrated_number,
            "content_type": "template",
            "payload": {
                "messaging_product": "whatsapp",
                "type": "template",
                "template": {
                    "name": template_name,
                    "language": {"code": "en", "policy": "deterministic"},
                    "namespace": namespace or self.namespace,
                    "to_and_components": [
                        {"to": [clean_phone(mobile)], "components": components}
                    ],
                },
            },
        }
        return self._post("/whatsapp-outbound-message/bulk/", payload)

    def send_session_message(self, mobile: str, message: str, integrated_number: Optional[str] = None) -> Dict[str, Any]:
        if not self.auth_key:
            return {"success": False, "error": "Configuration missing"}

        payload = {
            "integrated_number": integrated_number or self.integrated_number,
            "recipient_number": clean_phone(mobile),
            "content_type": "text",
            "text": message,
        }
        return self._post("/whatsapp-outbound-message/", payload)


def new_order_components(order_numbers: List[str], retailer_name: str, amount: float) -> Dict[str, Any]:
    return {
        "body_1": text_param(", ".join(order_numbers)),
        "body_2": text_param(retailer_name),
        "body_3": text_param(f"{amount:.2f}"),
    }
