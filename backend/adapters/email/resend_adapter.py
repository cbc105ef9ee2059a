"""
Resend email service adapter.

Billing emails only: admin payment notifications and the welcome email sent
on a user's first paid activation.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

import resend

from infrastructure.config.settings import settings

logger = logging.getLogger(__name__)

# Seconds to wait before the single retry
RETRY_DELAY_SECONDS = 1.0

NOTIFICATION_SUBJECTS = {
    "new_subscription": "New subscription",
    "renewal": "Subscription renewed",
    "cancellation": "Subscription cancelled",
    "payment_failed": "Payment failed",
    "lifetime_purchase": "Lifetime purchase",
    "payment_issue": "Payment issue",
}


@dataclass
class EmailResult:
    """Outcome of a send attempt."""

    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None


class ResendEmailService:
    """Email service using Resend API."""

    def __init__(self, api_key: str | None = None, from_email: str | None = None):
        self._api_key = api_key if api_key is not None else settings.resend_api_key
        if self._api_key:
            resend.api_key = self._api_key
        self._from_email = from_email or settings.resend_from_email
        self._frontend_url = settings.frontend_url

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def send_email(
        self,
        to: Union[str, list[str]],
        subject: str,
        html: str,
        retries: int = 1,
    ) -> EmailResult:
        """
        Send an email, retrying once on failure.

        Args:
            to: Recipient address or list of addresses
            subject: Subject line
            html: HTML body
            retries: Extra attempts after the first failure

        Returns:
            EmailResult; never raises for delivery failures
        """
        recipients = [to] if isinstance(to, str) else list(to)
        if not recipients:
            return EmailResult(success=False, error="no recipients")

        if not self.is_configured:
            logger.info(f"[DEV] Email '{subject}' to {', '.join(recipients)} not sent (Resend not configured)")
            return EmailResult(success=True)

        params = {
            "from": self._from_email,
            "to": recipients,
            "subject": subject,
            "html": html,
        }

        last_error = None
        for attempt in range(retries + 1):
            try:
                response = await asyncio.to_thread(resend.Emails.send, params)
                message_id = response.get("id") if isinstance(response, dict) else None
                return EmailResult(success=True, message_id=message_id)
            except Exception as e:
                last_error = str(e)
                logger.warning(f"Email send attempt {attempt + 1} failed for '{subject}': {e}")
                if attempt < retries:
                    await asyncio.sleep(RETRY_DELAY_SECONDS)

        logger.error(f"Failed to send email '{subject}' to {', '.join(recipients)}: {last_error}")
        return EmailResult(success=False, error=last_error)

    async def send_payment_notification(
        self,
        notification_type: str,
        user_email: str,
        amount: Decimal,
        currency: str,
        provider: str,
        plan_name: str,
        subscription_id: str | None = None,
        details: str | None = None,
    ) -> EmailResult:
        """Notify the configured admins about a billing event."""
        recipients = settings.admin_notification_emails_list
        if not recipients:
            logger.debug("No admin notification recipients configured")
            return EmailResult(success=False, error="no admin recipients configured")

        label = NOTIFICATION_SUBJECTS.get(notification_type, notification_type.replace("_", " ").title())
        subject = f"[{settings.app_name}] {label}: {user_email} ({amount} {currency})"
        html = self._get_payment_notification_html(
            label=label,
            user_email=user_email,
            amount=f"{amount} {currency}",
            provider=provider,
            plan_name=plan_name,
            subscription_id=subscription_id,
            details=details,
        )
        return await self.send_email(recipients, subject, html)

    async def send_welcome_email(
        self,
        to_email: str,
        user_name: str | None,
        plan_name: str,
        plan_type: str,
        character_limit: int,
    ) -> EmailResult:
        """Welcome email for a user's first paid activation."""
        subject = f"Welcome to {settings.app_name} {plan_name}!"
        html = self._get_welcome_email_html(user_name or "there", plan_name, plan_type, character_limit)
        return await self.send_email(to_email, subject, html)

    def _get_payment_notification_html(
        self,
        label: str,
        user_email: str,
        amount: str,
        provider: str,
        plan_name: str,
        subscription_id: str | None,
        details: str | None,
    ) -> str:
        """Generate admin payment notification HTML."""
        extra = f"<li><strong>Details:</strong> {details}</li>" if details else ""
        return f"""
        <!DOCTYPE html>
        <html>
        <head>
            <meta charset="utf-8">
        </head>
        <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background-color: #F8F9FA; padding: 24px;">
            <div style="max-width: 560px; margin: 0 auto; background: white; border-radius: 12px; padding: 32px;">
                <h2 style="color: #1A1A2E; font-size: 20px; margin: 0 0 16px;">{label}</h2>
                <ul style="color: #4A4A68; margin: 0; padding-left: 20px; line-height: 1.8;">
                    <li><strong>User:</strong> {user_email}</li>
                    <li><strong>Plan:</strong> {plan_name}</li>
                    <li><strong>Amount:</strong> {amount}</li>
                    <li><strong>Provider:</strong> {provider}</li>
                    <li><strong>Subscription:</strong> {subscription_id or "n/a"}</li>
                    {extra}
                </ul>
            </div>
        </body>
        </html>
        """

    def _get_welcome_email_html(
        self, user_name: str, plan_name: str, plan_type: str, character_limit: int
    ) -> str:
        """Generate welcome email HTML."""
        limit = "Unlimited" if character_limit < 0 else f"{character_limit:,}"
        return f"""
        <!DOCTYPE html>
        <html>
        <head>
            <meta charset="utf-8">
            <meta name="viewport" content="width=device-width, initial-scale=1.0">
        </head>
        <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background-color: #FFF8F0; padding: 40px 20px;">
            <div style="max-width: 560px; margin: 0 auto; background: white; border-radius: 16px; padding: 40px; box-shadow: 0 2px 8px rgba(0,0,0,0.05);">
                <h2 style="color: #1A1A2E; font-size: 20px; margin-bottom: 16px;">Thanks for upgrading!</h2>

                <p style="color: #4A4A68; line-height: 1.6; margin-bottom: 24px;">
                    Hi {user_name},<br><br>
                    Your <strong>{plan_name}</strong> ({plan_type}) is now active.
                </p>

                <div style="background: #F8F9FA; border-radius: 12px; padding: 24px; margin-bottom: 24px;">
                    <p style="color: #4A4A68; margin: 0;"><strong>Characters per month:</strong> {limit}</p>
                </div>

                <div style="text-align: center; margin: 32px 0;">
                    <a href="{self._frontend_url}/account" style="display: inline-block; background: #da7756; color: white; text-decoration: none; padding: 14px 32px; border-radius: 12px; font-weight: 500;">
                        Manage your plan
                    </a>
                </div>
            </div>
        </body>
        </html>
        """


# Singleton instance
email_service = ResendEmailService()
