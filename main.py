import logging
import os
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError
from starlette.concurrency import run_in_threadpool

import config
from auth import create_token, get_current_user, get_db, get_optional_user, pwd_context, require_admin
from cart import CartService
from database import create_document, db, ensure_indexes, serialize_doc
from errors import AuthError, ConflictError, StoreError
from inventory import VariantStore
from invoice import InvoiceMailer
from notifications import NotificationSink, WebSocketHub
from orders import OrderWorkflow
from payments import PaymentGateway, PaymentService, RazorpayGateway
from schemas import (
    CartAddRequest,
    CartUpdateRequest,
    CreatePaymentIntentRequest,
    LoginRequest,
    OrderStatusUpdate,
    PaymentFailedRequest,
    PlaceOrderRequest,
    RefundRequest,
    SignupRequest,
    TrackOrderRequest,
    User as UserSchema,
    VariantCreateRequest,
    VariantUpdateRequest,
    VerifyPaymentRequest,
)

logger = logging.getLogger(__name__)

# App init
app = FastAPI(title="Storefront Order API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

hub = WebSocketHub()
_gateway: Optional[PaymentGateway] = None


# Errors
@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = []
    for err in exc.errors():
        name = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        if name and name not in fields:
            fields.append(name)
    return JSONResponse(
        status_code=400,
        content={
            "detail": f"Invalid request: {', '.join(fields) or 'body'}",
            "error": "ValidationError",
            "fields": fields,
            "messages": [str(err.get("msg")) for err in exc.errors()],
        },
    )


# Services
def get_notifier() -> NotificationSink:
    return hub


def get_mailer(database=Depends(get_db)):
    return InvoiceMailer(database)


def get_gateway() -> Optional[PaymentGateway]:
    global _gateway
    if _gateway is None and config.RAZORPAY_KEY_ID and config.RAZORPAY_KEY_SECRET:
        _gateway = RazorpayGateway(config.RAZORPAY_KEY_ID, config.RAZORPAY_KEY_SECRET)
    return _gateway


def get_variant_store(database=Depends(get_db), notifier=Depends(get_notifier)) -> VariantStore:
    return VariantStore(database, notifier)


def get_cart_service(variants: VariantStore = Depends(get_variant_store)) -> CartService:
    return CartService(variants.db, variants)


def get_order_workflow(database=Depends(get_db), notifier=Depends(get_notifier), mailer=Depends(get_mailer)) -> OrderWorkflow:
    return OrderWorkflow(
        database,
        notifier=notifier,
        mailer=mailer,
        transactions=config.MONGO_TRANSACTIONS,
        currency=config.PAYMENT_CURRENCY,
    )


def get_payment_service(
    database=Depends(get_db),
    gateway=Depends(get_gateway),
    notifier=Depends(get_notifier),
    mailer=Depends(get_mailer),
) -> PaymentService:
    return PaymentService(
        database,
        gateway,
        notifier=notifier,
        mailer=mailer,
        key_secret=config.RAZORPAY_KEY_SECRET,
        webhook_secret=config.RAZORPAY_WEBHOOK_SECRET,
        currency=config.PAYMENT_CURRENCY,
    )


@app.on_event("startup")
def prepare():
    config.setup_logging()
    if not config.RAZORPAY_WEBHOOK_SECRET:
        logger.warning("RAZORPAY_WEBHOOK_SECRET not set; webhook calls are accepted without a signature")
    if db is None:
        logger.warning("DATABASE_URL/DATABASE_NAME not set; database routes will fail")
        return
    ensure_indexes(db)
    logger.info("Order placement uses %s", "transactions" if config.MONGO_TRANSACTIONS else "compensation")


# Routes
@app.get("/")
def root():
    return {"message": "Storefront Order API running"}


# Auth
@app.post("/api/auth/signup", status_code=201)
def signup(req: SignupRequest, database=Depends(get_db)):
    if database["user"].find_one({"email": req.email}):
        raise ConflictError("Email already registered")
    user = UserSchema(name=req.name, email=req.email, password_hash=pwd_context.hash(req.password), is_admin=False)
    document = user.model_dump()
    try:
        create_document("user", document, database=database)
    except DuplicateKeyError:
        raise ConflictError("Email already registered")
    return {
        "token": create_token(document),
        "user": {"id": str(document["_id"]), "name": document["name"], "email": document["email"], "is_admin": False},
    }


@app.post("/api/auth/login")
def login(req: LoginRequest, database=Depends(get_db)):
    user = database["user"].find_one({"email": req.email})
    if not user or not pwd_context.verify(req.password, user.get("password_hash", "")):
        raise AuthError("Invalid credentials")
    return {
        "token": create_token(user),
        "user": {"id": str(user["_id"]), "name": user["name"], "email": user["email"], "is_admin": user.get("is_admin", False)},
    }


# Variants
@app.get("/api/products/{product_id}/variants")
def list_variants(product_id: str, variants: VariantStore = Depends(get_variant_store)):
    return serialize_doc(variants.list_for_product(product_id))


@app.post("/api/variants", status_code=201)
def create_variant(req: VariantCreateRequest, admin=Depends(require_admin), variants: VariantStore = Depends(get_variant_store)):
    return serialize_doc(variants.create(req))


@app.put("/api/variants/{variant_id}")
def update_variant(variant_id: str, req: VariantUpdateRequest, admin=Depends(require_admin),
                   variants: VariantStore = Depends(get_variant_store)):
    return serialize_doc(variants.update(variant_id, req))


@app.delete("/api/variants/{variant_id}")
def delete_variant(variant_id: str, admin=Depends(require_admin), variants: VariantStore = Depends(get_variant_store)):
    variants.delete(variant_id)
    return {"deleted": True}


# Cart
@app.get("/api/cart")
def get_cart(user=Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    return serialize_doc(carts.get_cart(user["_id"]))


@app.post("/api/cart")
def add_to_cart(req: CartAddRequest, user=Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    return serialize_doc(carts.add_item(user["_id"], req.product_id, req.quantity, req.variant_id))


@app.put("/api/cart")
def update_cart_item(req: CartUpdateRequest, user=Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    return serialize_doc(carts.update_item(user["_id"], req.variant_id, req.quantity))


@app.delete("/api/cart/{variant_id}")
def remove_cart_item(variant_id: str, user=Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    return serialize_doc(carts.remove_item(user["_id"], variant_id))


# Orders
@app.post("/api/orders", status_code=201)
def create_order(req: PlaceOrderRequest, background_tasks: BackgroundTasks, user=Depends(get_optional_user),
                 workflow: OrderWorkflow = Depends(get_order_workflow)):
    order, _payment = workflow.place_order(req, user, defer=background_tasks.add_task)
    return serialize_doc(order)


@app.post("/api/orders/track")
def track_order(req: TrackOrderRequest, workflow: OrderWorkflow = Depends(get_order_workflow)):
    return serialize_doc(workflow.track_guest_order(req.order_id, req.email))


@app.get("/api/orders")
def list_orders(user=Depends(get_current_user), workflow: OrderWorkflow = Depends(get_order_workflow)):
    return serialize_doc(workflow.list_orders(user["_id"]))


@app.get("/api/orders/admin/all")
def list_all_orders(admin=Depends(require_admin), workflow: OrderWorkflow = Depends(get_order_workflow)):
    return serialize_doc(workflow.list_admin_orders())


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, req: OrderStatusUpdate, background_tasks: BackgroundTasks,
                        admin=Depends(require_admin), workflow: OrderWorkflow = Depends(get_order_workflow)):
    return serialize_doc(workflow.update_status(order_id, req.status, defer=background_tasks.add_task))


@app.post("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, background_tasks: BackgroundTasks, admin=Depends(require_admin),
                 workflow: OrderWorkflow = Depends(get_order_workflow)):
    return serialize_doc(workflow.cancel_order(order_id, defer=background_tasks.add_task))


# Payments
@app.post("/api/payments/razorpay/order")
def create_razorpay_order(req: CreatePaymentIntentRequest, user=Depends(get_optional_user),
                          payments: PaymentService = Depends(get_payment_service)):
    return payments.create_intent(req.order_id, user, req.email)


@app.post("/api/payments/razorpay/verify")
def verify_payment(req: VerifyPaymentRequest, background_tasks: BackgroundTasks,
                   payments: PaymentService = Depends(get_payment_service)):
    payments.confirm(req.razorpay_order_id, req.razorpay_payment_id, req.razorpay_signature,
                     defer=background_tasks.add_task)
    return {"message": "Payment verified"}


@app.post("/api/payments/razorpay/failed")
def payment_failed(req: PaymentFailedRequest, background_tasks: BackgroundTasks, user=Depends(get_optional_user),
                   payments: PaymentService = Depends(get_payment_service)):
    payload = {"reason": req.reason, "error": req.error, "source": "client"}
    payment = payments.report_failure(req.razorpay_order_id, user, req.email, payload, defer=background_tasks.add_task)
    return {"status": payment.get("status")}


@app.post("/api/payments/razorpay/refund")
def refund_payment(req: RefundRequest, background_tasks: BackgroundTasks, admin=Depends(require_admin),
                   payments: PaymentService = Depends(get_payment_service)):
    return payments.refund(req.payment_id, req.amount, defer=background_tasks.add_task)


@app.post("/api/payments/razorpay/webhook")
async def razorpay_webhook(request: Request, background_tasks: BackgroundTasks,
                           x_razorpay_signature: Optional[str] = Header(None),
                           payments: PaymentService = Depends(get_payment_service)):
    body = await request.body()
    return await run_in_threadpool(payments.handle_webhook, body, x_razorpay_signature, background_tasks.add_task)


# Real-time
@app.websocket("/ws")
async def realtime(websocket: WebSocket):
    await hub.connect(websocket)
    try:
        while True:
            message = await websocket.receive_json()
            if isinstance(message, dict) and message.get("event") == "join" and message.get("room"):
                hub.join(websocket, str(message["room"]))
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
