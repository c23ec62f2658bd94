"""
Clients for the two external payment processors.

* Card checkout goes through Stripe. `StripeCheckout` is what the checkout
  helper endpoint uses; `HttpCheckoutGateway` is how the purchase flow talks
  to that helper over HTTP.
* PayPal orders are created and captured with the Orders v2 REST API.

Every failure is raised as PaymentProcessorError carrying the processor's
own message, so the user sees what actually went wrong.
"""

import logging
import random
from typing import Any, Dict, Optional

import requests
import stripe

from errors import PaymentProcessorError

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 15

# Line item names shown on the card statement page; the video title is never sent.
PRODUCT_NAMES = [
    "Personal Development Ebook",
    "Financial Freedom Ebook",
    "Digital Marketing Guide",
    "Health & Wellness Ebook",
    "Productivity Masterclass",
    "Mindfulness & Meditation Guide",
    "Entrepreneurship Blueprint",
    "Wellness Program",
    "Success Coaching",
    "Executive Mentoring",
    "Learning Resources",
    "Online Course Access",
    "Premium Content Subscription",
    "Digital Asset Package",
]


class StripeCheckout:
    def create_session(
        self,
        secret_key: str,
        amount: int,
        success_url: str,
        cancel_url: str,
        currency: str = "usd",
    ) -> str:
        product_name = random.choice(PRODUCT_NAMES)
        logger.info("Creating checkout session: amount=%s currency=%s product=%s", amount, currency, product_name)
        session = stripe.checkout.Session.create(
            api_key=secret_key,
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": product_name},
                        "unit_amount": int(round(amount)),
                    },
                    "quantity": 1,
                }
            ],
            mode="payment",
            success_url=success_url,
            cancel_url=cancel_url,
        )
        logger.info("Checkout session created: %s", session.id)
        return session.id

    def payment_status(self, secret_key: str, session_id: str) -> str:
        session = stripe.checkout.Session.retrieve(session_id, api_key=secret_key)
        return session.payment_status


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:200]}"
    if not isinstance(body, dict):
        return f"HTTP {response.status_code}"
    message = body.get("error") or body.get("message") or body.get("error_description") or f"HTTP {response.status_code}"
    if isinstance(message, dict):
        message = message.get("message") or str(message)
    details = body.get("details")
    if isinstance(details, str) and details:
        message = f"{message}: {details}"
    return str(message)


def _json_body(response: requests.Response, processor: str) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        raise PaymentProcessorError(f"Unreadable reply from {processor} processor: {response.text[:200]}", processor=processor)
    if not isinstance(body, dict):
        raise PaymentProcessorError(f"Unexpected reply from {processor} processor", processor=processor)
    return body


class HttpCheckoutGateway:
    """Client for the checkout helper's /api/create-checkout-session endpoint."""

    def __init__(self, base_url: str, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self._http = session or requests.Session()

    def create_session(self, amount: int, currency: str, name: str, success_url: str, cancel_url: str) -> str:
        payload = {
            "amount": amount,
            "currency": currency,
            "name": name,
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        try:
            response = self._http.post(f"{self.base_url}/api/create-checkout-session", json=payload, timeout=REQUEST_TIMEOUT)
        except requests.exceptions.RequestException as e:
            raise PaymentProcessorError(f"Checkout service unreachable: {e}", processor="card")
        if response.status_code != 200:
            raise PaymentProcessorError(_error_message(response), processor="card")
        session_id = _json_body(response, "card").get("sessionId")
        if not session_id:
            raise PaymentProcessorError("Checkout service returned no session id", processor="card")
        return session_id

    def is_paid(self, session_id: str) -> bool:
        try:
            response = self._http.get(f"{self.base_url}/api/checkout-session/{session_id}", timeout=REQUEST_TIMEOUT)
        except requests.exceptions.RequestException as e:
            raise PaymentProcessorError(f"Checkout service unreachable: {e}", processor="card")
        if response.status_code != 200:
            raise PaymentProcessorError(_error_message(response), processor="card")
        return _json_body(response, "card").get("paymentStatus") == "paid"


class PayPalClient:
    """Orders v2: create an order, then capture it once the buyer approved it."""

    def __init__(self, api_base: str, session: Optional[requests.Session] = None):
        self.api_base = api_base.rstrip("/")
        self._http = session or requests.Session()

    def _access_token(self, client_id: str, client_secret: str) -> str:
        if not client_id or not client_secret:
            raise PaymentProcessorError("PayPal is not configured", processor="paypal")
        try:
            response = self._http.post(
                f"{self.api_base}/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(client_id, client_secret),
                timeout=REQUEST_TIMEOUT,
            )
        except requests.exceptions.RequestException as e:
            raise PaymentProcessorError(f"PayPal unreachable: {e}", processor="paypal")
        if response.status_code != 200:
            raise PaymentProcessorError(_error_message(response), processor="paypal")
        token = _json_body(response, "paypal").get("access_token")
        if not token:
            raise PaymentProcessorError("PayPal returned no access token", processor="paypal")
        return token

    def _post(self, path: str, token: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = self._http.post(
                f"{self.api_base}{path}",
                json=body or {},
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
                timeout=REQUEST_TIMEOUT,
            )
        except requests.exceptions.RequestException as e:
            raise PaymentProcessorError(f"PayPal unreachable: {e}", processor="paypal")
        if response.status_code not in (200, 201):
            raise PaymentProcessorError(_error_message(response), processor="paypal")
        return _json_body(response, "paypal")

    def create_order(self, client_id: str, client_secret: str, amount: str, description: str) -> str:
        token = self._access_token(client_id, client_secret)
        order = self._post(
            "/v2/checkout/orders",
            token,
            {
                "intent": "CAPTURE",
                "purchase_units": [
                    {
                        "description": description,
                        "amount": {"currency_code": "USD", "value": amount},
                    }
                ],
            },
        )
        order_id = order.get("id")
        if not order_id:
            raise PaymentProcessorError("PayPal returned no order id", processor="paypal")
        return order_id

    def capture_order(self, client_id: str, client_secret: str, order_id: str) -> Dict[str, Any]:
        token = self._access_token(client_id, client_secret)
        result = self._post(f"/v2/checkout/orders/{order_id}/capture", token)
        if result.get("status") != "COMPLETED":
            raise PaymentProcessorError(f"PayPal order {order_id} not completed: {result.get('status')}", processor="paypal")
        return result
