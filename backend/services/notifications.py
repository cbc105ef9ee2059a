"""
Billing side effects.

Admin payment emails, welcome emails, analytics events and CRM conversion
rows. None of these may affect webhook acknowledgement or reconciliation
results, so ``BillingNotifier`` schedules each one on the background
dispatcher and returns immediately. ``NullNotifier`` is the do-nothing
implementation used when side effects are disabled.
"""

import logging
from decimal import Decimal
from typing import Any, Optional

from adapters.analytics.amplitude_adapter import AmplitudeClient, amplitude_client
from adapters.email.resend_adapter import ResendEmailService, email_service
from core.plans import get_plan, plan_features, plan_name
from infrastructure.database.connection import async_session_maker
from infrastructure.database.models.crm import CrmConversion
from services.task_queue import BackgroundDispatcher, dispatcher

logger = logging.getLogger(__name__)


class NullNotifier:
    """Notifier that drops every side effect."""

    def payment_notification(
        self,
        kind: str,
        *,
        user_email: str,
        amount: Decimal,
        currency: str,
        provider: str,
        plan_name: str,
        subscription_id: Optional[str] = None,
        details: Optional[str] = None,
    ) -> None:
        return None

    def welcome(self, *, email: str, name: Optional[str], plan_id: str) -> None:
        return None

    def track(
        self,
        user_id: str,
        event_type: str,
        properties: Optional[dict[str, Any]] = None,
        revenue: Optional[float] = None,
    ) -> None:
        return None

    def crm_conversion(
        self,
        *,
        user_id: str,
        conversion_type: str,
        plan_name: str,
        amount_cents: int,
        provider: str,
    ) -> None:
        return None


class BillingNotifier(NullNotifier):
    """Schedules side effects on the background dispatcher."""

    def __init__(
        self,
        task_dispatcher: BackgroundDispatcher | None = None,
        email: ResendEmailService | None = None,
        analytics: AmplitudeClient | None = None,
        session_factory=None,
    ):
        self.dispatcher = task_dispatcher or dispatcher
        self.email = email or email_service
        self.analytics = analytics or amplitude_client
        self.session_factory = session_factory or async_session_maker

    def payment_notification(
        self,
        kind: str,
        *,
        user_email: str,
        amount: Decimal,
        currency: str,
        provider: str,
        plan_name: str,
        subscription_id: Optional[str] = None,
        details: Optional[str] = None,
    ) -> None:
        self.dispatcher.dispatch(
            f"admin-email-{kind}",
            self.email.send_payment_notification(
                notification_type=kind,
                user_email=user_email,
                amount=amount,
                currency=currency,
                provider=provider,
                plan_name=plan_name,
                subscription_id=subscription_id,
                details=details,
            ),
        )

    def welcome(self, *, email: str, name: Optional[str], plan_id: str) -> None:
        plan = get_plan(plan_id)
        plan_type = "one-time purchase" if plan and plan["interval"] is None else "monthly subscription"
        self.dispatcher.dispatch(
            "welcome-email",
            self.email.send_welcome_email(
                to_email=email,
                user_name=name,
                plan_name=plan_name(plan_id),
                plan_type=plan_type,
                character_limit=plan_features(plan_id)["characters_per_month"],
            ),
        )

    def track(
        self,
        user_id: str,
        event_type: str,
        properties: Optional[dict[str, Any]] = None,
        revenue: Optional[float] = None,
    ) -> None:
        self.dispatcher.dispatch(
            f"analytics-{event_type}",
            self.analytics.track(user_id, event_type, properties, revenue=revenue),
        )

    def crm_conversion(
        self,
        *,
        user_id: str,
        conversion_type: str,
        plan_name: str,
        amount_cents: int,
        provider: str,
    ) -> None:
        self.dispatcher.dispatch(
            "crm-conversion",
            self._record_conversion(user_id, conversion_type, plan_name, amount_cents, provider),
        )

    async def _record_conversion(
        self,
        user_id: str,
        conversion_type: str,
        plan_name: str,
        amount_cents: int,
        provider: str,
    ) -> None:
        # Runs after the request session is gone, so it opens its own
        async with self.session_factory() as session:
            session.add(
                CrmConversion(
                    user_id=user_id,
                    conversion_type=conversion_type,
                    plan_name=plan_name,
                    amount_cents=amount_cents,
                    provider=provider,
                )
            )
            await session.commit()
        logger.info(f"Recorded {conversion_type} conversion for user {user_id}")


billing_notifier = BillingNotifier()
