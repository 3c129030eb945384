import mongomock
import pytest
from fastapi.testclient import TestClient

import config
import main
from auth import create_token, get_db
from database import create_document, ensure_indexes
from notifications import NotificationSink
from orders import OrderWorkflow
from payments import PaymentGateway, PaymentService

ADDRESS = {
    "name": "Asha Rao",
    "phone": "9800000000",
    "line1": "12 Residency Road",
    "city": "Bengaluru",
    "state": "KA",
    "postalCode": "560025",
    "country": "IN",
}

KEY_SECRET = "test_key_secret"


class RecordingSink(NotificationSink):
    def __init__(self):
        self.orders = []
        self.stock = []

    def publish_order_update(self, order):
        self.orders.append(order)

    def publish_stock_update(self, variant):
        self.stock.append(variant)


class RecordingMailer:
    def __init__(self):
        self.sent = []

    def send_order_invoice(self, order_id):
        self.sent.append(order_id)


class FakeGateway(PaymentGateway):
    def __init__(self):
        self.orders = []
        self.refunds = []

    def create_order(self, amount, currency, receipt):
        order = {
            "id": f"order_rzp{len(self.orders) + 1}",
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "status": "created",
        }
        self.orders.append(order)
        return order

    def refund(self, payment_id, amount=None):
        refund = {"id": f"rfnd_{len(self.refunds) + 1}", "payment_id": payment_id, "amount": amount}
        self.refunds.append(refund)
        return refund


def auth_header(user):
    return {"Authorization": f"Bearer {create_token(user)}"}


@pytest.fixture(autouse=True)
def settings(monkeypatch):
    monkeypatch.setattr(config, "MONGO_TRANSACTIONS", False)
    monkeypatch.setattr(config, "RAZORPAY_KEY_SECRET", KEY_SECRET)
    monkeypatch.setattr(config, "RAZORPAY_WEBHOOK_SECRET", None)


@pytest.fixture
def database():
    db = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(db)
    return db


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(database, sink, mailer, gateway):
    main.app.dependency_overrides[get_db] = lambda: database
    main.app.dependency_overrides[main.get_notifier] = lambda: sink
    main.app.dependency_overrides[main.get_mailer] = lambda: mailer
    main.app.dependency_overrides[main.get_gateway] = lambda: gateway
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def workflow(database, sink, mailer):
    return OrderWorkflow(database, notifier=sink, mailer=mailer, transactions=False)


@pytest.fixture
def payments(database, sink, mailer, gateway):
    return PaymentService(database, gateway, notifier=sink, mailer=mailer, key_secret=KEY_SECRET)


@pytest.fixture
def product(database):
    doc = {
        "title": "Linen Shirt",
        "brand": "Nilal",
        "images": ["https://cdn.example.com/linen.jpg"],
        "price": 100.0,
        "stock": 5,
    }
    create_document("product", doc, database=database)
    return doc


@pytest.fixture
def make_variant(database, product):
    def _make(stock=5, price=100.0, size="M", color=None, sku=None, product_id=None):
        doc = {
            "product_id": product_id or product["_id"],
            "size": size,
            "color": color,
            "sku": sku or f"LINEN-{size}-{color or 'NA'}".upper(),
            "price": price,
            "stock": stock,
            "availability": "InStock" if stock > 0 else "OutOfStock",
        }
        create_document("variant", doc, database=database)
        return doc

    return _make


@pytest.fixture
def customer(database):
    doc = {"name": "Asha Rao", "email": "asha@example.com", "password_hash": "x", "is_admin": False}
    create_document("user", doc, database=database)
    return doc


@pytest.fixture
def other_customer(database):
    doc = {"name": "Ravi Iyer", "email": "ravi@example.com", "password_hash": "x", "is_admin": False}
    create_document("user", doc, database=database)
    return doc


@pytest.fixture
def admin(database):
    doc = {"name": "Admin", "email": "admin@example.com", "password_hash": "x", "is_admin": True}
    create_document("user", doc, database=database)
    return doc


class TransactionRecorder:
    """Stands in for a MongoDB session on mongomock, which has no transactions.

    Records the ``with_transaction`` options and restores the touched
    collections when the callback raises, as an aborted transaction would.
    """

    collections = ("variant", "order", "payment", "cart")

    def __init__(self, database):
        self.database = database
        self.calls = []

    def start_session(self):
        return self

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def with_transaction(self, callback, **kwargs):
        self.calls.append(kwargs)
        snapshot = {name: list(self.database[name].find()) for name in self.collections}
        try:
            # mongomock rejects session objects, so the callback runs sessionless.
            return callback(None)
        except Exception:
            for name, docs in snapshot.items():
                self.database[name].delete_many({})
                if docs:
                    self.database[name].insert_many(docs)
            raise


@pytest.fixture
def recorder(database, monkeypatch):
    recorder = TransactionRecorder(database)
    monkeypatch.setattr(database.client, "start_session", recorder.start_session, raising=False)
    return recorder


@pytest.fixture
def tx_workflow(database, sink, mailer, recorder):
    return OrderWorkflow(database, notifier=sink, mailer=mailer, transactions=True)
