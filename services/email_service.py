"""
Outbound email for the back-office, sent through Brevo transactional email.

Every send returns a result dict instead of raising, so callers can record
a failed attempt and move on to the next purchase.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import sib_api_v3_sdk
from sib_api_v3_sdk.rest import ApiException

from config import Config

logger = logging.getLogger(__name__)

RETRY_BASE_DELAY_SECONDS = 0.5


def _result(success: bool, message_id: Optional[str] = None, error: Optional[str] = None) -> Dict[str, Any]:
    return {"success": success, "message_id": message_id, "error": error}


class EmailService:
    """Async facade over the blocking Brevo client"""

    def __init__(self, api_key: Optional[str] = None):
        api_key = api_key or Config.BREVO_API_KEY
        self.api_client = None
        self.transactional_emails_api = None

        if not api_key:
            logger.warning("⚠️ EMAIL: No BREVO_API_KEY, recovery emails will not be delivered")
            return

        brevo_config = sib_api_v3_sdk.Configuration()
        brevo_config.api_key["api-key"] = api_key
        self.api_client = sib_api_v3_sdk.ApiClient(brevo_config)
        self.transactional_emails_api = sib_api_v3_sdk.TransactionalEmailsApi(self.api_client)

    @property
    def is_configured(self) -> bool:
        return self.api_client is not None

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        to_name: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Deliver one HTML message.

        Returns {"success", "message_id", "error"}; error is None on success.
        """
        if not self.is_configured:
            logger.warning(f"⚠️ EMAIL: Not configured, dropping message for {to_email}")
            return _result(False, error="Email service not configured")

        to_kwargs = {"email": to_email}
        if to_name:
            to_kwargs["name"] = to_name

        message = sib_api_v3_sdk.SendSmtpEmail(
            to=[sib_api_v3_sdk.SendSmtpEmailTo(**to_kwargs)],
            sender=sib_api_v3_sdk.SendSmtpEmailSender(email=Config.FROM_EMAIL, name=Config.FROM_NAME),
            subject=subject,
            html_content=html_content,
            tags=tags or [],
        )

        try:
            response = await self._deliver(message, to_email)
        except asyncio.TimeoutError:
            logger.error(f"❌ EMAIL: Gave up on {to_email} after timing out")
            return _result(False, error="Email send timed out")
        except ApiException as e:
            logger.error(f"❌ EMAIL: Brevo rejected message for {to_email}: {e.status} {e.reason}")
            return _result(False, error=f"Brevo API error: {e.status} {e.reason}")
        except Exception as e:
            logger.error(f"❌ EMAIL: Unexpected failure sending to {to_email}: {e}", exc_info=True)
            return _result(False, error=str(e))

        message_id = getattr(response, "message_id", None)
        logger.info(f"📧 EMAIL: Delivered to {to_email} (message {message_id})")
        return _result(True, message_id=message_id)

    async def _deliver(self, message: sib_api_v3_sdk.SendSmtpEmail, to_email: str):
        """Run the blocking API call in a worker thread, retrying timeouts and API errors"""
        attempts = max(1, Config.EMAIL_SEND_MAX_RETRIES)
        attempt = 1
        while True:
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(self.transactional_emails_api.send_transac_email, message),
                    timeout=Config.EMAIL_SEND_TIMEOUT,
                )
            except (asyncio.TimeoutError, ApiException) as e:
                if attempt >= attempts:
                    raise
                delay = RETRY_BASE_DELAY_SECONDS * 2 ** (attempt - 1)
                logger.warning(
                    f"🔄 EMAIL: Attempt {attempt}/{attempts} for {to_email} failed "
                    f"({type(e).__name__}), retrying in {delay}s"
                )
                attempt += 1
                await asyncio.sleep(delay)

    def test_connection(self) -> bool:
        """True when the API key is accepted by Brevo's account endpoint"""
        if not self.is_configured:
            return False
        try:
            sib_api_v3_sdk.AccountApi(self.api_client).get_account()
            return True
        except Exception as e:
            logger.warning(f"⚠️ EMAIL: Brevo account check failed: {e}")
            return False
