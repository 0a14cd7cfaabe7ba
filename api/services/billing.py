import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe

from lib.error_handler import AppError

logger = logging.getLogger(__name__)

TRIAL_DAYS = {'enterprise': 14}
DEFAULT_TRIAL_DAYS = 7

class BillingService:
    """Stripe checkout sessions and the webhooks that keep subscription tiers in sync"""

    def __init__(self, database, secret_key: str, webhook_secret: str, price_ids: Dict[str, str]):
        self.database = database
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.price_ids = price_ids
        logger.info("Billing service initialized")

    def plan_for_price(self, price_id: Optional[str]) -> str:
        for plan, plan_price in self.price_ids.items():
            if plan_price and plan_price == price_id:
                return plan
        return 'basic'

    def create_checkout_session(self, business_id: str, plan_id: str, success_url: str, cancel_url: str) -> str:
        price_id = self.price_ids.get(plan_id)
        if not price_id:
            raise AppError(f"Invalid plan ID: {plan_id}", status_code=400)

        business = self.database.get_business_by_id(business_id)
        if not business:
            raise AppError("Business not found", status_code=404)

        params = {
            'mode': 'subscription',
            'payment_method_types': ['card'],
            'line_items': [{'price': price_id, 'quantity': 1}],
            'success_url': success_url,
            'cancel_url': cancel_url,
            'subscription_data': {'trial_period_days': TRIAL_DAYS.get(plan_id, DEFAULT_TRIAL_DAYS)},
            'metadata': {'businessId': business_id},
        }
        if business.get('stripe_customer_id'):
            params['customer'] = business['stripe_customer_id']
        elif business.get('email'):
            params['customer_email'] = business['email']

        try:
            session = stripe.checkout.Session.create(api_key=self.secret_key, **params)
        except stripe.StripeError as e:
            logger.error(f"Error creating checkout session: {str(e)}")
            raise AppError(f"Error creating checkout session: {str(e)}", status_code=502)

        logger.info(f"Created checkout session {session.id} for business {business_id} ({plan_id})")
        return session.id

    def construct_event(self, payload: bytes, signature: Optional[str]):
        if not signature:
            raise AppError("Missing Stripe signature", status_code=400)
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.error(f"Webhook signature verification failed: {str(e)}")
            raise AppError(f"Webhook Error: {str(e)}", status_code=400)

    def handle_event(self, event) -> None:
        event_type = event['type']
        obj = event['data']['object']
        logger.info(f"Processing Stripe event {event_type}")

        if event_type == 'checkout.session.completed':
            self._checkout_completed(obj)
        elif event_type in ('customer.subscription.created', 'customer.subscription.updated'):
            self._subscription_changed(obj)
        elif event_type == 'customer.subscription.deleted':
            self._subscription_deleted(obj)
        else:
            logger.info(f"Unhandled Stripe event type {event_type}")

    def _checkout_completed(self, session) -> None:
        metadata = session.get('metadata') or {}
        business_id = metadata.get('businessId') or metadata.get('userId')
        subscription_id = session.get('subscription')
        if not business_id or not subscription_id:
            logger.warning("Checkout session completed without business id or subscription")
            return

        subscription = stripe.Subscription.retrieve(subscription_id, api_key=self.secret_key)
        fields = self._subscription_fields(subscription)
        fields['stripe_customer_id'] = session.get('customer')
        fields['stripe_subscription_id'] = subscription_id
        try:
            self.database.update_business(business_id, fields)
        except AppError as e:
            if e.status_code != 404:
                raise
            logger.warning(f"Checkout completed for unknown business {business_id}")
            return
        logger.info(f"Business {business_id} subscribed to {fields['subscription_tier']}")

    def _subscription_changed(self, subscription) -> None:
        business = self.database.get_business_by_stripe_customer(subscription.get('customer'))
        if not business:
            logger.warning(f"No business found for Stripe customer {subscription.get('customer')}")
            return
        self.database.update_business(business['id'], self._subscription_fields(subscription))

    def _subscription_deleted(self, subscription) -> None:
        business = self.database.get_business_by_stripe_customer(subscription.get('customer'))
        if not business:
            logger.warning(f"No business found for Stripe customer {subscription.get('customer')}")
            return
        self.database.update_business(business['id'], {
            'subscription_status': 'canceled',
            'subscription_updated_at': _now_iso()
        })

    def _subscription_fields(self, subscription) -> Dict[str, Any]:
        items = subscription['items']['data']
        price_id = items[0]['price']['id'] if items else None
        trial_end = subscription.get('trial_end')
        fields = {
            'subscription_tier': self.plan_for_price(price_id),
            'subscription_status': subscription.get('status'),
            'subscription_updated_at': _now_iso()
        }
        if trial_end:
            fields['trial_ends_at'] = datetime.fromtimestamp(trial_end, tz=timezone.utc).isoformat()
        return fields

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
