# WhatsApp AI sales assistant

# Inbound WhatsApp messages get a short AI reply, unless someone from the
# team replied by hand recently (human takeover).

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx
from sqlmodel import Session, select

from d2bcart.config import OPENAI_API_KEY, OPENAI_BASE_URL, OPENAI_MODEL, SITE_URL, TAKEOVER_WINDOW_HOURS
from d2bcart.database import engine, get_recent_chats, get_retailer_by_phone, log_chat
from d2bcart.db_models import WhatsAppChat
from d2bcart.messaging import WhatsAppClient, clean_phone

logger = logging.getLogger(__name__)


AI_SOURCE = "ai_assistant"

FALLBACK_REPLY = "Sorry, I couldn't process that. Please try again."

SYSTEM_PROMPT = (
    "You are the D2BCart AI Sales Assistant. D2BCart is a B2B platform for mobile accessories "
    "(Cases, Covers, Screen Guards, Chargers). Help retailers find products. "
    "Be Professional, Polite, Concise (Max 2 sentences for WhatsApp). "
    "Categories: Cases & Covers, Screen Guards, Chargers & Cables, Earphones, Power Banks. "
    f"Website: {SITE_URL}"
)


class AssistantError(Exception):
    pass


class AssistantClient:

    def __init__(
        self,
        api_key: Optional[str] = OPENAI_API_KEY,
        model: str = OPENAI_MODEL,
        base_url: str = OPENAI_BASE_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout)
        self.transport = transport

    def build_messages(self, message: str, context: Optional[str], history: List[Dict[str, str]]) -> List[Dict[str, str]]:
        system = SYSTEM_PROMPT if not context else f"{SYSTEM_PROMPT}\n{context}"
        return [{"role": "system", "content": system}, *history, {"role": "user", "content": message}]

    def reply(self, message: str, context: Optional[str] = None, history: Optional[List[Dict[str, str]]] = None) -> str:
        if not self.api_key:
            raise AssistantError("OPENAI_API_KEY is not configured")

        payload = {
            "model": self.model,
            "max_tokens": 100,
            "messages": self.build_messages(message, context, history or []),
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[WhatsApp Webhook] Chat completion failed: {e}")
            raise AssistantError(str(e)) from e

        choices = data.get("choices") or []
        content = (choices[0].get("message") or {}).get("content") if choices else None
        return (content or "").strip() or FALLBACK_REPLY


def is_human_takeover_active(mobile: str, now: Optional[datetime] = None) -> bool:
    """A manual outbound message in the last few hours pauses the bot."""
    now = now or datetime.utcnow()
    since = now - timedelta(hours=TAKEOVER_WINDOW_HOURS)
    with Session(engine) as session:
        statement = (
            select(WhatsAppChat.id)
            .where(WhatsAppChat.mobile == mobile)
            .where(WhatsAppChat.direction == "outbound")
            .where(WhatsAppChat.created_at >= since)
            .where((WhatsAppChat.source == None) | (WhatsAppChat.source != AI_SOURCE))
        )
        return session.exec(statement).first() is not None


def chat_history(chats: List[WhatsAppChat]) -> List[Dict[str, str]]:
    return [
        {"role": "user" if chat.direction == "inbound" else "assistant", "content": chat.message}
        for chat in chats
    ]


def extract_inbound(body: Dict[str, Any]):
    """MSG91 puts the fields at the root or under `data`."""
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    message = body.get("message") or data.get("message") or body.get("text") or ""
    mobile = body.get("mobile") or data.get("mobile") or ""
    return str(message).strip(), str(mobile).strip()


def handle_inbound(body: Dict[str, Any], assistant: AssistantClient, whatsapp: WhatsAppClient,
                   now: Optional[datetime] = None) -> Dict[str, Any]:
    message, mobile = extract_inbound(body)
    if not mobile or not message:
        return {"status": "ignored", "reason": "No mobile or message"}

    mobile = clean_phone(mobile)

    # History before logging the new message, so it isn't sent twice
    history = chat_history(get_recent_chats(mobile, limit=10))
    log_chat(mobile, message, "inbound", status="received", source="customer")

    if is_human_takeover_active(mobile, now):
        logger.info(f"[WhatsApp Webhook] Human takeover active for {mobile}, skipping AI reply")
        return {"status": "ignored_human_takeover"}

    retailer = get_retailer_by_phone(mobile) or get_retailer_by_phone(f"+{mobile}")
    user_name = retailer.business_name if retailer else "Retailer"

    reply = assistant.reply(message, context=f"User Name: {user_name}. They are messaging from WhatsApp.", history=history)
    logger.info(f"[WhatsApp Webhook] AI Response for {mobile}: {reply}")

    result = whatsapp.send_session_message(mobile, reply)
    log_chat(mobile, reply, "outbound", status="sent" if result.get("success") else "failed", source=AI_SOURCE)

    return {"success": True, "ai_response": reply, "msg91_result": result}


def send_manual_message(whatsapp: WhatsAppClient, mobile: str, message: str, line: str,
                        customer_number: str, supplier_number: str) -> Dict[str, Any]:
    """Admin reply from the dashboard. Logged as manual, which pauses the bot."""
    integrated_number = supplier_number if line == "supplier" else customer_number
    result = whatsapp.send_session_message(mobile, message, integrated_number)

    log_chat(
        clean_phone(mobile),
        message,
        "outbound",
        status="sent" if result.get("success") else "failed",
        source="manual_admin",
        line=line or "customer",
    )
    logger.info(f"[Admin Send] Manual message sent to {mobile} from {line or 'customer'} line. Takeover activated.")
    return result
