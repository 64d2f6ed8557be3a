"""
Email delivery tests. Brevo is never contacted: either the send helper or
the SDK call itself is patched.
"""

from unittest.mock import AsyncMock, Mock, patch

import pytest
from sib_api_v3_sdk.rest import ApiException

from services.email_service import EmailService
from services.email_templates import LedgerEmailTemplates

DEPOSIT_CONTEXT = {
    "amount": "25.5",
    "token": "USDT",
    "chain": "ETH",
    "address": "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed",
    "timestamp": "2024-05-01 12:00:00 UTC",
}


@pytest.fixture
def email_service():
    return EmailService(api_key="xkeysib-test", templates=LedgerEmailTemplates(platform_name="Wallet"))


class TestTemplates:
    """Subjects and bodies for each ledger email"""

    def test_deposit_confirmed(self):
        content = LedgerEmailTemplates("Wallet").generate_email_content("deposit_confirmed", DEPOSIT_CONTEXT)

        assert content["subject"] == "[Wallet]Deposit Confirmation"
        assert "25.5 USDT" in content["html_content"]
        assert DEPOSIT_CONTEXT["address"] in content["text_content"]

    def test_withdrawal_request_shows_code(self):
        context = dict(DEPOSIT_CONTEXT, fee="5", code="482913", expires_minutes=5)
        content = LedgerEmailTemplates("Wallet").generate_email_content("withdrawal_request", context)

        assert content["subject"] == "[Wallet]Withdrawal Request"
        assert "482913" in content["html_content"]
        assert "expires in 5 minutes" in content["text_content"]

    def test_withdrawal_success_falls_back_to_hash(self):
        context = dict(DEPOSIT_CONTEXT, tx_hash="0xabc")
        content = LedgerEmailTemplates("Wallet").generate_email_content("withdrawal_success", context)

        assert content["subject"] == "[Wallet]Withdrawal Success"
        assert "Transaction: 0xabc" in content["text_content"]

    def test_withdrawal_failed(self):
        context = dict(DEPOSIT_CONTEXT, reason="Transaction reverted")
        content = LedgerEmailTemplates("Wallet").generate_email_content("withdrawal_failed", context)

        assert content["subject"] == "[Wallet]Withdrawal Failed"
        assert "Reason: Transaction reverted" in content["text_content"]

    def test_unknown_template(self):
        with pytest.raises(ValueError, match="Unknown email template"):
            LedgerEmailTemplates("Wallet").generate_email_content("password_reset", {})


class TestSending:

    @pytest.mark.asyncio
    async def test_disabled_without_api_key(self):
        service = EmailService(api_key="")

        assert not service.enabled
        assert await service.send_template_email("alice@example.com", "deposit_confirmed", DEPOSIT_CONTEXT) is False

    @pytest.mark.asyncio
    async def test_missing_recipient(self, email_service):
        with patch.object(email_service, "_send_email_with_retry", new=AsyncMock()) as send:
            assert await email_service.send_template_email("", "deposit_confirmed", DEPOSIT_CONTEXT) is False
        send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_successful_send(self, email_service):
        send = AsyncMock(return_value=Mock(message_id="<msg-1@smtp-relay>"))
        with patch.object(email_service, "_send_email_with_retry", new=send):
            sent = await email_service.send_template_email("alice@example.com", "deposit_confirmed", DEPOSIT_CONTEXT)

        assert sent is True
        message, recipient = send.await_args.args
        assert recipient == "alice@example.com"
        assert message.subject == "[Wallet]Deposit Confirmation"
        assert message.tags == ["deposit_confirmed"]
        assert message.to[0].email == "alice@example.com"

    @pytest.mark.asyncio
    async def test_api_error_returns_false(self, email_service):
        send = AsyncMock(side_effect=ApiException(status=401, reason="Unauthorized"))
        with patch.object(email_service, "_send_email_with_retry", new=send):
            sent = await email_service.send_template_email("alice@example.com", "deposit_confirmed", DEPOSIT_CONTEXT)

        assert sent is False


class TestRetry:
    """Transient Brevo failures are retried with backoff"""

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, email_service):
        api = Mock()
        api.send_transac_email.side_effect = [ApiException(status=502, reason="Bad Gateway"), Mock(message_id="ok")]
        email_service.transactional_emails_api = api

        with patch("services.email_service.asyncio.sleep", new=AsyncMock()) as sleep:
            response = await email_service._send_email_with_retry(Mock(), "alice@example.com")

        assert response.message_id == "ok"
        assert api.send_transac_email.call_count == 2
        sleep.assert_awaited_once_with(0.5)

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, email_service):
        api = Mock()
        api.send_transac_email.side_effect = ApiException(status=500, reason="Server Error")
        email_service.transactional_emails_api = api

        with patch("services.email_service.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(ApiException):
                await email_service._send_email_with_retry(Mock(), "alice@example.com", max_retries=3)

        assert api.send_transac_email.call_count == 3
