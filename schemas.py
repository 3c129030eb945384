"""
Database Schemas for the storefront order service

Each Pydantic model maps to a MongoDB collection (lowercased class name).
Request payloads accept camelCase names as well as snake_case.

Collections:
- user
- product (owned by the catalog, read only here)
- variant
- cart
- order
- payment
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

OrderStatus = Literal["Created", "Paid", "Packed", "Shipped", "Delivered", "Cancelled"]
PaymentStatus = Literal["Pending", "Paid", "Failed", "Refunded"]
Availability = Literal["InStock", "OutOfStock"]
PaymentMethod = Literal["COD", "Razorpay"]


class Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ---------- Collections ----------

class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="BCrypt password hash")
    is_admin: bool = Field(False, description="Admin user flag")


class Variant(BaseModel):
    """
    One purchasable SKU of a product
    Collection name: "variant"
    """
    product_id: Any
    size: str
    color: Optional[str] = None
    sku: str
    price: float = Field(..., ge=0)
    stock: int = Field(..., ge=0)
    availability: Availability = "InStock"


class CartItem(BaseModel):
    product_id: Any
    variant_id: Any
    quantity: int = Field(..., ge=1)
    price_snapshot: float = Field(..., ge=0)


class Cart(BaseModel):
    """
    Per-user cart
    Collection name: "cart"
    """
    user_id: Any
    items: List[CartItem] = Field(default_factory=list)


class OrderItem(BaseModel):
    product_id: Any
    variant_id: Any
    quantity: int = Field(..., ge=1)
    price_snapshot: float = Field(..., ge=0)


class ShippingAddress(Payload):
    name: Optional[str] = None
    phone: Optional[str] = None
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = Field(None, alias="postalCode")
    country: Optional[str] = None


class GuestContact(BaseModel):
    email: EmailStr
    name: Optional[str] = None
    phone: Optional[str] = None


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    user_id: Any = None
    guest: Optional[GuestContact] = None
    items: List[OrderItem]
    address: ShippingAddress
    subtotal: float = Field(..., ge=0)
    shipping_fee: float = Field(0, ge=0)
    tax: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    status: OrderStatus = "Created"
    payment_status: PaymentStatus = "Pending"
    payment_method: PaymentMethod = "COD"
    razorpay_order_id: Optional[str] = None
    restocked: bool = False


class Payment(BaseModel):
    """
    Settlement record, exactly one per order
    Collection name: "payment"
    """
    order_id: Any
    provider: str = "Razorpay"
    amount: float
    currency: str = "INR"
    status: PaymentStatus = "Pending"
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None
    raw_payload: Optional[Dict[str, Any]] = None
    attempts: int = 0


# ---------- Request payloads ----------

class SignupRequest(BaseModel):
    name: str
    email: EmailStr
    password: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class VariantCreateRequest(Payload):
    product_id: str = Field(..., alias="productId")
    size: str
    color: Optional[str] = None
    sku: str
    price: float = Field(..., ge=0)
    stock: int = Field(..., ge=0)


class VariantUpdateRequest(Payload):
    size: Optional[str] = None
    color: Optional[str] = None
    sku: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)


class CartAddRequest(Payload):
    product_id: str = Field(..., alias="productId")
    variant_id: Optional[str] = Field(None, alias="variantId")
    quantity: int = Field(1, ge=1)


class CartUpdateRequest(Payload):
    variant_id: str = Field(..., alias="variantId")
    quantity: int


class OrderLineRequest(Payload):
    variant_id: str = Field(..., alias="variantId")
    quantity: int = Field(..., ge=1)


class PlaceOrderRequest(Payload):
    items: List[OrderLineRequest] = Field(default_factory=list)
    address: Optional[ShippingAddress] = None
    shipping_fee: float = Field(0, ge=0, alias="shippingFee")
    tax: float = Field(0, ge=0)
    payment_method: str = Field("COD", alias="paymentMethod")
    guest_email: Optional[EmailStr] = Field(None, alias="guestEmail")


class TrackOrderRequest(Payload):
    order_id: str = Field(..., alias="orderId")
    email: str


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class CreatePaymentIntentRequest(Payload):
    order_id: str = Field(..., alias="orderId")
    email: Optional[str] = None


class VerifyPaymentRequest(Payload):
    razorpay_order_id: str = Field(..., alias="razorpayOrderId")
    razorpay_payment_id: str = Field(..., alias="razorpayPaymentId")
    razorpay_signature: str = Field(..., alias="razorpaySignature")


class PaymentFailedRequest(Payload):
    razorpay_order_id: str = Field(..., alias="razorpayOrderId")
    email: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[Dict[str, Any]] = None


class RefundRequest(Payload):
    payment_id: str = Field(..., alias="paymentId")
    amount: Optional[int] = Field(None, gt=0, description="Amount in the smallest currency unit")
