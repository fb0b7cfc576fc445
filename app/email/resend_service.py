# app/email/resend_service.py

import re
import logging
from typing import Dict, Optional, List, Any
from pathlib import Path

import resend
from jinja2 import Environment, FileSystemLoader, select_autoescape

from app.config import settings

logger = logging.getLogger(__name__)


class ResendEmailService:
    """Email service using Resend for handoff notifications"""

    def __init__(self, api_key: Optional[str] = None, from_email: Optional[str] = None,
                 from_name: Optional[str] = None, support_inbox: Optional[str] = None):
        self.api_key = api_key or settings.RESEND_API_KEY
        self.from_email = from_email or settings.FROM_EMAIL or "noreply@yourdomain.com"
        self.default_from_name = from_name or settings.FROM_NAME
        self.support_inbox = support_inbox or settings.SUPPORT_INBOX_EMAIL

        if not self.api_key:
            logger.warning("RESEND_API_KEY not set - email sending will be disabled")
            self.enabled = False
        else:
            resend.api_key = self.api_key
            self.enabled = True

        template_dir = Path(__file__).parent / "templates"
        self.jinja_env = Environment(
            loader=FileSystemLoader(template_dir),
            autoescape=select_autoescape(["html"]),
        )

    def send_after_hours_notice(self, handoff_id: str, tenant_id: int, chat_id: str,
                                user_email: Optional[str], user_message: Optional[str],
                                last_user_message: Optional[str] = None,
                                conversation_history: Optional[List[Any]] = None) -> Dict:
        """Tell the support inbox that a customer asked for a human while nobody was available"""
        try:
            if not self.enabled:
                logger.warning("Email service disabled - after-hours notice not sent")
                return {"success": False, "error": "Email service not configured"}

            if not self.support_inbox:
                logger.warning("SUPPORT_INBOX_EMAIL not set - after-hours notice not sent")
                return {"success": False, "error": "No support inbox configured"}

            html_content = self._render_after_hours_template(
                handoff_id=handoff_id,
                chat_id=chat_id,
                user_email=user_email,
                user_message=user_message,
                last_user_message=last_user_message,
                conversation_history=conversation_history or [],
            )

            params = {
                "from": f"{self.default_from_name} <{self.from_email}>",
                "to": [self.support_inbox],
                "subject": "Customer requested a human agent outside of available hours",
                "html": html_content,
                "tags": [
                    {"name": "type", "value": "after_hours_handoff"},
                    {"name": "tenant", "value": self._sanitize_tag_value(str(tenant_id))}
                ]
            }
            if user_email:
                params["reply_to"] = user_email

            response = resend.Emails.send(params)

            logger.info(f"After-hours notice for handoff {handoff_id} sent to {self.support_inbox}, ID: {response.get('id')}")

            return {
                "success": True,
                "email_id": response.get("id"),
                "to_email": self.support_inbox,
            }

        except Exception as e:
            logger.error(f"Failed to send after-hours notice for handoff {handoff_id}: {str(e)}")
            return {
                "success": False,
                "error": str(e),
                "handoff_id": handoff_id
            }

    def _render_after_hours_template(self, **context) -> str:
        template = self.jinja_env.get_template("after_hours_handoff.html")
        return template.render(**context)

    def _sanitize_tag_value(self, value: str) -> str:
        """Sanitize tag values to only contain ASCII letters, numbers, underscores, or dashes"""
        if not value:
            return "unknown"

        sanitized = re.sub(r'[^a-zA-Z0-9_-]', '_', value)
        sanitized = re.sub(r'_+', '_', sanitized)
        sanitized = sanitized.strip('_')

        if not sanitized:
            return "unknown"

        return sanitized[:50]


email_service = ResendEmailService()
