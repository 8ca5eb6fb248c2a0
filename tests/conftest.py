import json

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import get_db, now
from errors import NotFoundError, PaymentGatewayError, WebhookSignatureError
from main import app
from payments import CheckoutSession, GatewaySession, get_gateway
from security import create_access_token, get_password_hash

PASSWORD = "secret123"
PASSWORD_HASH = get_password_hash(PASSWORD)
VALID_SIGNATURE = "t=1,v1=valid"


class FakeGateway:
    """In-process stand-in for the payment gateway."""

    def __init__(self):
        self.sessions = {}
        self.line_items = {}
        self.fail = False

    def create_checkout_session(self, line_items, metadata, customer_email, client_reference_id):
        if self.fail:
            raise PaymentGatewayError("Could not create the payment session")
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions[session_id] = GatewaySession(
            id=session_id,
            payment_status="unpaid",
            client_reference_id=client_reference_id,
            customer_email=customer_email,
            amount_total=sum(i["unit_amount"] * i["quantity"] for i in line_items),
            currency="eur",
            metadata=dict(metadata),
        )
        self.line_items[session_id] = line_items
        return CheckoutSession(id=session_id, url=f"https://checkout.test/{session_id}")

    def pay(self, session_id, shipping_address=None):
        session = self.sessions[session_id]
        session.payment_status = "paid"
        session.shipping_address = shipping_address

    def retrieve_session(self, session_id):
        if session_id not in self.sessions:
            raise NotFoundError("Payment session not found")
        return self.sessions[session_id]

    def parse_event(self, payload, signature):
        if signature != VALID_SIGNATURE:
            raise WebhookSignatureError("Webhook Error: no signatures found matching the expected signature")
        event = json.loads(payload)
        return event["type"], self.sessions.get(event["session"])


def webhook_body(event_type, session_id):
    return json.dumps({"type": event_type, "session": session_id})


@pytest.fixture
def db():
    return mongomock.MongoClient()["sphone_test"]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db, gateway):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_gateway] = lambda: gateway
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def make_user(db, email="jean@example.com", role="user"):
    doc = {
        "firstname": "Jean",
        "lastname": "Dupont",
        "email": email,
        "phone": "0600000000",
        "passwordHash": PASSWORD_HASH,
        "role": role,
        "createdAt": now(),
    }
    doc["_id"] = db["user"].insert_one(doc).inserted_id
    return doc


def auth(user):
    return {"Authorization": f"Bearer {create_access_token(user['_id'])}"}


@pytest.fixture
def user(db):
    return make_user(db)


@pytest.fixture
def admin(db):
    return make_user(db, email="admin@example.com", role="admin")


def base_product(**fields):
    doc = {
        "name": "Produit test",
        "description": "Produit utilisé par les tests",
        "category": "phones",
        "images": [],
        "variants": {},
        "availableStorages": [],
        "conditions": {},
        "price": 0,
        "stock": 0,
        "colors": [],
        "isBestSeller": False,
        "bestSellerOrder": None,
        "soldCount": 0,
        "createdAt": now(),
    }
    doc.update(fields)
    return doc


def insert_product(db, **fields):
    doc = base_product(**fields)
    doc["_id"] = db["product"].insert_one(doc).inserted_id
    return doc


def variant_product(db, stock=2, **fields):
    variants = {"128": {"etat_parfait": {"price": 300, "colors": [{"name": "Noir", "stock": stock}]}}}
    fields.setdefault("name", "iPhone 13")
    return insert_product(db, variants=variants, availableStorages=["128"], **fields)


def conditions_product(db, **fields):
    conditions = {
        "perfect": {"price": 329, "stock": 5, "colors": ["Gris", "Violet"]},
        "good": {"price": 289, "stock": 3, "colors": ["Gris"]},
    }
    fields.setdefault("name", "Galaxy S21")
    return insert_product(db, conditions=conditions, **fields)


def flat_product(db, price=50, stock=5, **fields):
    fields.setdefault("name", "Coque silicone")
    fields.setdefault("category", "cases")
    return insert_product(db, price=price, stock=stock, colors=["Noir"], **fields)


def fresh(db, product):
    return db["product"].find_one({"_id": product["_id"]})
