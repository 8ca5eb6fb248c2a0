"""
Payment gateway checkout.

Orders paid through the gateway do not reserve stock when the checkout session
is created; stock is taken when the payment is confirmed, either by the client
polling its session or by the gateway webhook. Both paths go through
``orders.confirm_payment``, which applies the transition once.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

import stripe
from pydantic import BaseModel, Field

import config
from codes import condition_label, storage_label
from database import create_document, now, parse_object_id
from errors import AuthorizationError, ConflictError, NotFoundError, PaymentGatewayError, WebhookSignatureError
from orders import ResolvedLine, confirm_payment, get_order, order_item, order_total, resolve_lines
from schemas import CheckoutIn, Order, validate_document

logger = logging.getLogger(__name__)

PAID_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")
PRICE_TOLERANCE = 0.005


class CheckoutSession(BaseModel):
    id: str
    url: Optional[str] = None


class GatewaySession(BaseModel):
    id: str
    payment_status: Optional[str] = None
    client_reference_id: Optional[str] = None
    customer_email: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    # Already in the order's shippingAddress shape
    shipping_address: Optional[Dict[str, Any]] = None

    def summary(self) -> dict:
        return {
            "id": self.id,
            "paymentStatus": self.payment_status,
            "customerEmail": self.customer_email,
            "amountTotal": self.amount_total / 100 if self.amount_total is not None else None,
            "currency": self.currency,
            "metadata": self.metadata,
        }


def _plain(obj) -> dict:
    to_dict = getattr(obj, "to_dict", None)
    return to_dict() if callable(to_dict) else dict(obj)


def _shipping_address(session: dict) -> Optional[dict]:
    details = session.get("shipping_details") or (session.get("collected_information") or {}).get("shipping_details")
    address = (details or {}).get("address")
    if not address:
        return None
    return {
        "street": address.get("line1") or "",
        "city": address.get("city") or "",
        "postalCode": address.get("postal_code") or "",
        "country": address.get("country") or "",
    }


def _gateway_session(session: dict) -> GatewaySession:
    return GatewaySession(
        id=session["id"],
        payment_status=session.get("payment_status"),
        client_reference_id=session.get("client_reference_id"),
        customer_email=session.get("customer_email") or (session.get("customer_details") or {}).get("email"),
        amount_total=session.get("amount_total"),
        currency=session.get("currency"),
        metadata=dict(session.get("metadata") or {}),
        shipping_address=_shipping_address(session),
    )


class StripeGateway:
    """Stripe Checkout behind the three calls the storefront needs."""

    def __init__(self, api_key: str, webhook_secret: str):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def _require_key(self):
        if not self.api_key:
            raise PaymentGatewayError("Payment gateway is not configured")

    def create_checkout_session(self, line_items: List[dict], metadata: Dict[str, str],
                                customer_email: Optional[str], client_reference_id: str) -> CheckoutSession:
        self._require_key()
        stripe_items = []
        for item in line_items:
            product_data = {"name": item["name"], "metadata": item.get("metadata", {})}
            if item.get("description"):
                product_data["description"] = item["description"]
            if item.get("image"):
                product_data["images"] = [item["image"]]
            stripe_items.append({
                "price_data": {
                    "currency": config.PAYMENT_CURRENCY,
                    "product_data": product_data,
                    "unit_amount": item["unit_amount"],
                },
                "quantity": item["quantity"],
            })
        try:
            session = stripe.checkout.Session.create(
                api_key=self.api_key,
                payment_method_types=["card"],
                mode="payment",
                line_items=stripe_items,
                success_url=f"{config.FRONTEND_URL}/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{config.FRONTEND_URL}/cancel",
                customer_email=customer_email,
                client_reference_id=client_reference_id,
                metadata=metadata,
                shipping_address_collection={"allowed_countries": config.ALLOWED_SHIPPING_COUNTRIES},
                billing_address_collection="required",
            )
        except stripe.StripeError as exc:
            logger.error("Stripe checkout session creation failed: %s", exc)
            raise PaymentGatewayError("Could not create the payment session")
        return CheckoutSession(id=session.id, url=session.url)

    def retrieve_session(self, session_id: str) -> GatewaySession:
        self._require_key()
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self.api_key)
        except stripe.InvalidRequestError:
            raise NotFoundError("Payment session not found")
        except stripe.StripeError as exc:
            logger.error("Stripe session retrieval failed for %s: %s", session_id, exc)
            raise PaymentGatewayError("Could not retrieve the payment session")
        return _gateway_session(_plain(session))

    def parse_event(self, payload: bytes, signature: Optional[str]) -> Tuple[str, Optional[GatewaySession]]:
        if not signature:
            raise WebhookSignatureError("Webhook Error: missing signature header")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            logger.error("Webhook signature verification failed: %s", exc)
            raise WebhookSignatureError(f"Webhook Error: {exc}")
        event = _plain(event)
        event_type = event.get("type", "")
        if not event_type.startswith("checkout.session."):
            return event_type, None
        return event_type, _gateway_session(event["data"]["object"])


gateway = StripeGateway(config.STRIPE_SECRET_KEY, config.STRIPE_WEBHOOK_SECRET)


def get_gateway():
    return gateway


def display_name(line: ResolvedLine) -> str:
    name = line.name
    selection = line.selection
    if line.kind == "variants":
        name += f" - {storage_label(selection.storage)} - {condition_label(selection.condition)}"
    elif line.kind == "conditions":
        name += f" - {condition_label(selection.condition)}"
    color = line.resolution.color or selection.color
    if color:
        name += f" - {color}"
    return name


def gateway_line_item(line: ResolvedLine) -> dict:
    images = line.product.get("images") or []
    return {
        "name": display_name(line),
        "description": (line.product.get("description") or "")[:200],
        "image": images[0] if images else None,
        "unit_amount": round(line.resolution.unit_price * 100),
        "quantity": line.quantity,
        "metadata": {
            "productId": str(line.product["_id"]),
            "storage": line.selection.storage or "",
            "condition": line.selection.condition or "",
            "color": line.resolution.color or line.selection.color or "",
        },
    }


def start_checkout(db, gateway, user: dict, payload: CheckoutIn) -> dict:
    """Create a pending order and the gateway session that will pay it."""
    lines = resolve_lines(db["product"], payload.items)
    for item, line in zip(payload.items, lines):
        if abs(line.resolution.unit_price - item.price) > PRICE_TOLERANCE:
            raise ConflictError(f"The price of {line.name} has changed. Please refresh your cart.")

    items = [order_item(line) for line in lines]
    total = order_total(items)
    user_id = str(user["_id"])
    doc = validate_document(Order, {
        "user": user_id,
        "items": items,
        "paymentMethod": "stripe",
        "totalAmount": total,
        "stockReserved": False,
    })
    order_id = create_document(db, "order", doc)

    try:
        session = gateway.create_checkout_session(
            line_items=[gateway_line_item(line) for line in lines],
            metadata={"orderId": order_id, "userId": user_id, "itemsCount": str(len(items)), "totalAmount": f"{total:.2f}"},
            customer_email=user.get("email"),
            client_reference_id=user_id,
        )
    except PaymentGatewayError:
        db["order"].delete_one({"_id": parse_object_id(order_id)})
        raise

    db["order"].update_one({"_id": parse_object_id(order_id)}, {"$set": {"checkoutSessionId": session.id}})
    logger.info("Checkout session %s opened for order %s", session.id, order_id)
    return {"sessionId": session.id, "url": session.url, "totalAmount": total, "orderId": order_id}


def _payment_result(session: GatewaySession) -> dict:
    return {
        "id": session.id,
        "status": session.payment_status,
        "updateTime": now().isoformat(),
        "emailAddress": session.customer_email,
    }


def sync_session(db, gateway, user: dict, session_id: str) -> Tuple[GatewaySession, dict]:
    """Client-side confirmation: look the session up and settle its order if paid."""
    session = gateway.retrieve_session(session_id)
    if session.client_reference_id != str(user["_id"]):
        raise AuthorizationError("Not allowed to access this payment session")

    order_id = session.metadata.get("orderId")
    if not order_id:
        raise NotFoundError("Order not found")
    order = get_order(db, order_id)
    if session.payment_status == "paid":
        order, _ = confirm_payment(db, order["_id"], "checkout session",
                                   shipping_address=session.shipping_address,
                                   payment_result=_payment_result(session))
    return session, order


def handle_webhook(db, gateway, payload: bytes, signature: Optional[str]):
    """
    Settle the order of a completed checkout session.

    Only a bad signature is reported to the caller; once the event is
    authentic it is always acknowledged and failures are left in the logs.
    """
    event_type, session = gateway.parse_event(payload, signature)
    if event_type not in PAID_EVENTS or session is None:
        return
    if session.payment_status != "paid":
        logger.info("Session %s completed without payment yet (%s)", session.id, session.payment_status)
        return

    order_id = session.metadata.get("orderId")
    if not order_id:
        logger.error("No orderId in metadata of session %s", session.id)
        return
    try:
        _, transitioned = confirm_payment(db, order_id, "webhook",
                                          shipping_address=session.shipping_address,
                                          payment_result=_payment_result(session))
    except Exception:
        logger.exception("Error processing webhook for order %s", order_id)
        return
    if transitioned:
        logger.info("Order %s successfully paid and updated via webhook", order_id)
