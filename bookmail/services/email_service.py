import asyncio
from typing import Any, Protocol

import resend
from resend.exceptions import ResendError

from bookmail.config import AppConfig, Settings
from bookmail.core.errors import EmailProviderError
from bookmail.core.logging import get_logger

logger = get_logger(__name__)


class EmailSender(Protocol):
    """Email capability used by the delivery engine."""

    async def send(
        self,
        from_email: str,
        to: str,
        subject: str,
        html: str,
        headers: dict[str, str] | None = None,
    ) -> str:
        """Send one email and return the provider's message id.

        Raises:
            EmailProviderError: If the provider rejects the email, fails, or times out
        """
        ...


class ResendEmailSender:
    """Sends email through the Resend API.

    The SDK is synchronous, so each call runs in a worker thread and is
    bounded by ``timeout_seconds``. A timed-out call may still have been
    accepted by Resend; it is reported as a failure and left to an explicit
    retry rather than retried here.
    """

    def __init__(self, api_key: str, timeout_seconds: float = 15.0) -> None:
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings, config: AppConfig) -> "ResendEmailSender":
        return cls(api_key=settings.resend_api_key, timeout_seconds=config.email.timeout_seconds)

    async def send(
        self,
        from_email: str,
        to: str,
        subject: str,
        html: str,
        headers: dict[str, str] | None = None,
    ) -> str:
        if not self.api_key:
            logger.bind(email=to).warning("resend_api_key_not_set")
            raise EmailProviderError("Resend API key is not configured")

        resend.api_key = self.api_key
        params: dict[str, Any] = {
            "from": from_email,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if headers:
            params["headers"] = headers

        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(resend.Emails.send, params),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as e:
            raise EmailProviderError(
                f"Email provider timed out after {self.timeout_seconds}s"
            ) from e
        except ResendError as e:
            status_code = getattr(e, "code", None)
            raise EmailProviderError(
                f"Resend rejected email: {e}",
                status_code=status_code if isinstance(status_code, int) else None,
            ) from e
        except Exception as e:
            raise EmailProviderError(f"Email provider error: {e}") from e

        message_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
        if not message_id:
            raise EmailProviderError("Email provider returned no message id")

        logger.bind(email=to, message_id=message_id).debug("email_sent")
        return str(message_id)
