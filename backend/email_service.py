import html
import logging
import os
from typing import Any, Dict, List, Optional, Union

import httpx

logger = logging.getLogger(__name__)

BREVO_API_KEY = os.environ.get("BREVO_API_KEY", "").strip()
BREVO_SENDER_EMAIL = os.environ.get("BREVO_SENDER_EMAIL", "").strip()
BREVO_SENDER_NAME = os.environ.get("BREVO_SENDER_NAME", "Research Desk")
BREVO_TIMEOUT_SECONDS = float(os.environ.get("BREVO_TIMEOUT_SECONDS", "10"))
BREVO_API_URL = "https://api.brevo.com/v3/smtp/email"


def is_email_configured() -> bool:
    return bool(BREVO_API_KEY and BREVO_SENDER_EMAIL)


async def send_brevo_transactional_email(
    *,
    api_key: str,
    payload: Dict[str, Any],
) -> Dict[str, Any]:
    if not api_key:
        raise RuntimeError("Brevo API key is missing")
    headers = {
        "accept": "application/json",
        "api-key": api_key,
        "content-type": "application/json",
    }
    async with httpx.AsyncClient(timeout=BREVO_TIMEOUT_SECONDS) as client:
        response = await client.post(BREVO_API_URL, headers=headers, json=payload)
        response.raise_for_status()
        if not response.text:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}


def _format_authors(authors: Optional[Union[str, List[str]]]) -> str:
    if not authors:
        return "Unknown"
    if isinstance(authors, str):
        return authors
    return ", ".join(str(a) for a in authors if a)


def build_request_fulfilled_payload(
    *,
    email: str,
    user_name: str,
    document_title: str,
    document_authors: Optional[Union[str, List[str]]],
    document_doi: str,
    document_url: str,
    request_description: str,
    request_date: str,
    fulfilled_date: str,
) -> Dict[str, Any]:
    safe_title = html.escape(document_title or "your document")
    html_content = (
        f"<p>Hello {html.escape(user_name or 'there')},</p>"
        f"<p>Your request <em>{html.escape(request_description or '')}</em> "
        f"from {html.escape(request_date)} has been fulfilled on {html.escape(fulfilled_date)}.</p>"
        f"<p><strong>{safe_title}</strong><br>"
        f"Authors: {html.escape(_format_authors(document_authors))}<br>"
        f"DOI: {html.escape(document_doi or '')}</p>"
        f"<p><a href=\"{html.escape(document_url, quote=True)}\">Open the document</a></p>"
        "<p>Please review it and confirm or reject the fulfillment from your dashboard.</p>"
    )
    return {
        "sender": {"email": BREVO_SENDER_EMAIL, "name": BREVO_SENDER_NAME},
        "to": [{"email": email, "name": user_name or email}],
        "subject": f"Your Document Request Has Been Fulfilled - {document_title}",
        "htmlContent": html_content,
    }


async def send_request_fulfilled_email(**email_data: Any) -> bool:
    if not is_email_configured():
        logger.warning("request_fulfilled_email_skipped reason=brevo_not_configured")
        return False
    payload = build_request_fulfilled_payload(**email_data)
    await send_brevo_transactional_email(api_key=BREVO_API_KEY, payload=payload)
    logger.info("request_fulfilled_email_sent email=%s", email_data.get("email"))
    return True
