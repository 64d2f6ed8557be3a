"""Transactional email delivery through Brevo"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import sib_api_v3_sdk
from sib_api_v3_sdk.rest import ApiException

from config import Config
from services.email_templates import LedgerEmailTemplates

logger = logging.getLogger(__name__)


class EmailService:
    """Sends ledger emails. Without BREVO_API_KEY every send is skipped."""

    def __init__(self, api_key: Optional[str] = None, templates: Optional[LedgerEmailTemplates] = None):
        self.templates = templates or LedgerEmailTemplates()
        api_key = api_key if api_key is not None else Config.BREVO_API_KEY
        if not api_key:
            logger.warning("BREVO_API_KEY not configured - ledger emails will be skipped")
            self.api_client = None
            self.transactional_emails_api = None
            return

        configuration = sib_api_v3_sdk.Configuration()
        configuration.api_key["api-key"] = api_key
        self.api_client = sib_api_v3_sdk.ApiClient(configuration)
        self.transactional_emails_api = sib_api_v3_sdk.TransactionalEmailsApi(self.api_client)

    @property
    def enabled(self) -> bool:
        return self.api_client is not None

    async def send_template_email(
        self,
        to_email: str,
        template_id: str,
        context: Dict[str, Any],
        tags: Optional[List[str]] = None,
    ) -> bool:
        """
        Render a ledger template and send it

        Returns:
            bool: True if the email was accepted by Brevo, False otherwise
        """
        if not self.enabled:
            logger.warning(f"Email service not configured - skipping {template_id} email")
            return False
        if not to_email:
            logger.warning(f"No recipient for {template_id} email - skipping")
            return False

        template = self.templates.generate_email_content(template_id, context)
        send_smtp_email = sib_api_v3_sdk.SendSmtpEmail(
            to=[sib_api_v3_sdk.SendSmtpEmailTo(email=to_email)],
            sender=sib_api_v3_sdk.SendSmtpEmailSender(email=Config.FROM_EMAIL, name=Config.FROM_NAME),
            subject=template["subject"],
            html_content=template["html_content"],
            text_content=template.get("text_content"),
            tags=tags or [template_id],
        )

        try:
            api_response = await self._send_email_with_retry(send_smtp_email, to_email)
        except ApiException as e:
            logger.error(f"❌ Error sending {template_id} email to {to_email}: {e}")
            return False
        except asyncio.TimeoutError:
            logger.error(f"❌ Timed out sending {template_id} email to {to_email}")
            return False

        logger.info(f"📧 {template_id} email sent to {to_email} - Message ID: {api_response.message_id}")
        return True

    async def _send_email_with_retry(
        self,
        send_smtp_email: sib_api_v3_sdk.SendSmtpEmail,
        recipient_email: str,
        max_retries: int = 3,
        timeout: float = 30.0,
    ) -> Optional[sib_api_v3_sdk.CreateSmtpEmail]:
        """Blocking Brevo call in a worker thread, with timeout and retries"""
        for attempt in range(max_retries):
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(self.transactional_emails_api.send_transac_email, send_smtp_email),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Email send timeout (attempt {attempt + 1}/{max_retries}) for {recipient_email}")
                if attempt == max_retries - 1:
                    raise
            except ApiException as e:
                logger.warning(f"Email API error (attempt {attempt + 1}/{max_retries}) for {recipient_email}: {e}")
                if attempt == max_retries - 1:
                    raise

            # Exponential backoff between retries
            if attempt < max_retries - 1:
                await asyncio.sleep((2 ** attempt) * 0.5)

        return None
