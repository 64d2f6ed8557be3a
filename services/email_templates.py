"""
Ledger Email Templates
HTML and plain-text bodies for deposit and withdrawal emails
"""

import logging
from typing import Any, Dict

from config import Config

logger = logging.getLogger(__name__)


class LedgerEmailTemplates:
    """Template generator keyed by template id"""

    def __init__(self, platform_name: str = None):
        self.platform_name = platform_name or Config.PLATFORM_NAME
        self.brand_color = "#f7a600"
        self.success_color = "#16a34a"
        self.error_color = "#dc2626"
        self.text_color = "#333333"

    def generate_email_content(self, template_id: str, context: Dict[str, Any]) -> Dict[str, str]:
        """
        Build subject, html_content and text_content for a template

        Args:
            template_id: deposit_confirmed, withdrawal_request, withdrawal_success or withdrawal_failed
            context: Template variables

        Returns:
            Dictionary with subject, html_content and text_content
        """
        template_method = getattr(self, f"_generate_{template_id}", None)
        if not template_method:
            raise ValueError(f"Unknown email template: {template_id}")
        return template_method(context)

    def _subject(self, title: str) -> str:
        return f"[{self.platform_name}]{title}"

    def _wrap(self, heading: str, rows: str, footer: str = "") -> str:
        return f"""
        <html>
        <body style="font-family: Arial, sans-serif; margin: 0; padding: 20px;">
            <div style="max-width: 600px; margin: 0 auto; background-color: #ffffff; padding: 30px;">
                <h2 style="color: {self.brand_color};">{self.platform_name}</h2>
                <p style="color: {self.text_color}; font-size: 15px;">Dear valued {self.platform_name} user,</p>
                <p style="color: {self.text_color}; font-size: 15px;">{heading}</p>
                <div style="background-color: #fffbe6; border-left: 4px solid {self.brand_color}; padding: 15px 20px;">
                    {rows}
                </div>
                {footer}
                <p style="color: #666666; font-size: 13px; margin-top: 30px;">
                    This is an automated message from {self.platform_name}. Please do not reply.
                </p>
            </div>
        </body>
        </html>
        """

    @staticmethod
    def _row(label: str, value: Any) -> str:
        return f'<p style="margin: 0 0 5px;">{label}: <strong>{value}</strong></p>'

    def _generate_deposit_confirmed(self, context: Dict[str, Any]) -> Dict[str, str]:
        rows = "".join([
            self._row("Deposit amount", f"{context['amount']} {context['token']}"),
            self._row("Chain type", context["chain"]),
            self._row("Deposit address", context["address"]),
            self._row("Time", context["timestamp"]),
        ])
        html = self._wrap("Your deposit has been confirmed and credited to your account.", rows)
        text = (
            f"Your deposit of {context['amount']} {context['token']} on {context['chain']} "
            f"has been confirmed and credited to your account.\n"
            f"Deposit address: {context['address']}\nTime: {context['timestamp']}"
        )
        return {"subject": self._subject("Deposit Confirmation"), "html_content": html, "text_content": text}

    def _generate_withdrawal_request(self, context: Dict[str, Any]) -> Dict[str, str]:
        rows = "".join([
            self._row("Withdrawal amount", f"{context['amount']} {context['token']}"),
            self._row("Chain type", context["chain"]),
            self._row("Withdrawal address", context["address"]),
            self._row("Fee", f"{context['fee']} {context['token']}"),
        ])
        footer = f"""
                <p style="color: {self.text_color}; font-size: 15px;">Please check your withdrawal address carefully.</p>
                <p style="color: {self.text_color}; font-size: 15px;">The verification code is:</p>
                <div style="font-size: 36px; font-weight: bold; letter-spacing: 4px;">{context['code']}</div>
                <p style="color: #666666; font-size: 14px;">
                    The code expires in {context['expires_minutes']} minutes. Never share it with anyone.
                </p>
        """
        html = self._wrap("You've created a withdrawal request. Your withdrawal information is as follows:", rows, footer)
        text = (
            f"You've created a withdrawal request for {context['amount']} {context['token']} "
            f"on {context['chain']} to {context['address']} (fee {context['fee']} {context['token']}).\n"
            f"Verification code: {context['code']} (expires in {context['expires_minutes']} minutes)"
        )
        return {"subject": self._subject("Withdrawal Request"), "html_content": html, "text_content": text}

    def _generate_withdrawal_success(self, context: Dict[str, Any]) -> Dict[str, str]:
        tx_ref = context.get("tx_url") or context.get("tx_hash") or "-"
        rows = "".join([
            self._row("Withdrawal amount", f"{context['amount']} {context['token']}"),
            self._row("Chain type", context["chain"]),
            self._row("Withdrawal address", context["address"]),
            self._row("Transaction", tx_ref),
        ])
        html = self._wrap("Your withdrawal has been processed successfully.", rows)
        text = (
            f"Your withdrawal of {context['amount']} {context['token']} on {context['chain']} "
            f"to {context['address']} has been processed successfully.\nTransaction: {tx_ref}"
        )
        return {"subject": self._subject("Withdrawal Success"), "html_content": html, "text_content": text}

    def _generate_withdrawal_failed(self, context: Dict[str, Any]) -> Dict[str, str]:
        rows = "".join([
            self._row("Withdrawal amount", f"{context['amount']} {context['token']}"),
            self._row("Chain type", context["chain"]),
            self._row("Withdrawal address", context["address"]),
            self._row("Reason", context["reason"]),
        ])
        html = self._wrap(
            f'<span style="color: {self.error_color};">Your withdrawal could not be processed.</span> '
            "The funds have been returned to your available balance.",
            rows,
        )
        text = (
            f"Your withdrawal of {context['amount']} {context['token']} could not be processed. "
            f"Reason: {context['reason']}. The funds have been returned to your available balance."
        )
        return {"subject": self._subject("Withdrawal Failed"), "html_content": html, "text_content": text}
