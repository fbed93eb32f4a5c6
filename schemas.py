"""
Database Schemas

MongoDB collection schemas for the FullyBooked store, as Pydantic models.
These schemas validate documents before they are written.

Each Pydantic model represents a collection in your database.
Model name is converted to lowercase for the collection name:
- User -> "user" collection
- Book -> "book" collection
- Order -> "order" collection
- OrderList -> "orderlist" collection (the cart)
- Review -> "review" collection
- OutboxEvent -> "outbox" collection

Attributes are snake_case; documents are stored and served with camelCase
keys (totalAmount, discountPrice, notificationSent, ...).
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, get_args

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator
from pydantic.alias_generators import to_camel

BookCategory = Literal["Adventure", "Fiction", "Business", "Action", "Comedy", "Drama"]
BookTag = Literal["New", "Sale", "Hot", "None"]
OrderStatus = Literal["Pending", "Processing", "Shipping", "Delivered"]
PaymentMethod = Literal["COD", "Card", "PayPal", "Bank Transfer"]
Role = Literal["customer", "admin", "courier"]
ApplicationStatus = Literal["pending", "approved", "rejected"]
EventType = Literal["ORDER_PLACED", "ORDER_STATUS_UPDATE", "ORDER_COMPLETED", "BOOK_SALE"]

BOOK_CATEGORIES = get_args(BookCategory)
BOOK_TAGS = get_args(BookTag)
ORDER_STATUSES = get_args(OrderStatus)
ROLES = get_args(Role)

# Status that completes an order and triggers the one-off completion notice
COMPLETION_STATUS = "Delivered"


class Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Address(Document):
    city: Optional[str] = None
    country: Optional[str] = None
    state: Optional[str] = None
    zipcode: Optional[str] = None


class ServiceArea(Document):
    country: Optional[str] = None
    city: Optional[str] = None


class CourierInfo(Document):
    application_status: Optional[ApplicationStatus] = None
    application_date: Optional[datetime] = None
    approval_date: Optional[datetime] = None
    is_available: bool = False
    vehicle_info: Optional[str] = None
    service_area: ServiceArea = Field(default_factory=ServiceArea)
    valid_id: Optional[str] = None


class User(Document):
    """
    Users collection schema
    Collection name: "user"
    """
    firebase_uid: Optional[str] = Field(None, description="Federated identity (Firebase) UID")
    username: str = Field(..., min_length=1, description="Unique display/login name")
    email: EmailStr = Field(..., description="Email address, stored lower-cased")
    password: str = Field(..., description="bcrypt hash, never plaintext")
    role: Role = Field("customer", description="Role: customer | admin | courier")
    avatar: Optional[str] = Field(None, description="Avatar image URL")
    address: Address = Field(default_factory=Address)
    phone: Optional[str] = None
    push_token: Optional[str] = Field(None, description="Expo push token without the ExponentPushToken[] wrapper")
    courier: CourierInfo = Field(default_factory=CourierInfo)


class Book(Document):
    """
    Books collection schema
    Collection name: "book"
    """
    title: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    category: BookCategory
    description: str
    price: float = Field(..., ge=0, description="List price")
    tag: BookTag = "None"
    discount_price: Optional[float] = Field(None, gt=0, description="Only set while tag is 'Sale'")
    cover_image: List[str] = Field(..., min_length=1, description="Cover image URLs")
    stock: int = Field(0, ge=0, description="Units in stock")
    average_rating: float = Field(0, ge=0, le=5, description="Mean of review ratings")
    reviews: List[str] = Field(default_factory=list, description="Review ids")

    @model_validator(mode="after")
    def check_discount_price(self):
        if self.tag == "Sale" and self.discount_price is None:
            raise ValueError("Discount price is required when the tag is 'Sale'.")
        if self.tag != "Sale" and self.discount_price is not None:
            raise ValueError("Discount price is only allowed when the tag is 'Sale'.")
        return self


class OrderItem(Document):
    book: str = Field(..., description="Book id")
    quantity: int = Field(..., ge=1)
    is_reviewed: bool = False


class Order(Document):
    """
    Orders collection schema
    Collection name: "order"
    """
    user: str = Field(..., description="Purchasing user id")
    name: Optional[str] = Field(None, description="Purchaser name")
    email: EmailStr
    address: Address = Field(default_factory=Address)
    phone: Optional[str] = None
    items: List[OrderItem] = Field(..., min_length=1)
    payment_method: PaymentMethod = "COD"
    total_amount: float = Field(..., ge=0)
    status: OrderStatus = "Pending"
    courier: Optional[str] = Field(None, description="Courier user id")
    delivered_at: Optional[datetime] = None
    notification_sent: bool = False


class OrderList(Document):
    """
    Cart rows, one per (user, product)
    Collection name: "orderlist"
    """
    user: str
    product: str = Field(..., description="Book id")
    quantity: int = Field(1, ge=1)
    added_at: Optional[datetime] = None


class Review(Document):
    """
    Reviews collection schema
    Collection name: "review"
    """
    book_id: str
    user: Optional[str] = None
    email: EmailStr
    rating: float = Field(..., ge=0, le=5)
    comment: str = Field(..., min_length=1)
    order: Optional[str] = None


class OutboxEvent(Document):
    """
    Notification events waiting for dispatch
    Collection name: "outbox"
    """
    key: str = Field(..., description="Idempotency key, unique per event")
    type: EventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: Literal["pending", "processing", "sent", "failed"] = "pending"
    attempts: int = 0
    last_error: Optional[str] = None
    sent_at: Optional[datetime] = None
