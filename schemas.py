"""
Database Schemas for FarmLink (local record store collections)

Each Pydantic model describes the records of one collection:
- UserProfile -> "users"      (key: uid)
- Product     -> "products"   (key: id, auto-increment)
- Order       -> "orders"     (key: id, auto-increment)
- Activity    -> "activities" (key: id, auto-increment)

Activity payloads are a tagged variant: one model per known activity type,
holding only the fields that type's display text and stats effect read.
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

ORDER_STATUSES = ["pending", "processing", "completed"]

DEFAULT_STATS = {
    "totalListings": 0,
    "pendingOrders": 0,
    "rating": 0,
    "totalBuyers": 0,
    "totalSales": 0,
    "totalRevenue": 0,
    "completedOrders": 0,
    "customerReviews": 0,
}

PROFILE_FIELDS = ["fullName", "phone", "location", "farmSize", "farmType", "experience", "bio"]


# ------------------------- Users -------------------------

class Preferences(BaseModel):
    notifications: bool = True
    emailUpdates: bool = True
    marketAlerts: bool = True


class FinancialSummary(BaseModel):
    monthlyRevenue: Optional[float] = None
    monthlyExpenses: Optional[float] = None
    profitMargin: Optional[float] = None


class Inventory(BaseModel):
    totalProducts: int = 0
    lowStockItems: List[dict] = []
    outOfStockItems: List[dict] = []


class OrderBuckets(BaseModel):
    pending: List[dict] = []
    processing: List[dict] = []
    completed: List[dict] = []


class Dashboard(BaseModel):
    recentActivity: List[dict] = []
    upcomingTasks: List[dict] = []
    marketInsights: Optional[dict] = None
    weatherAlerts: List[dict] = []
    financialSummary: FinancialSummary = Field(default_factory=FinancialSummary)
    inventory: Inventory = Field(default_factory=Inventory)
    orders: OrderBuckets = Field(default_factory=OrderBuckets)


class UserProfile(BaseModel):
    uid: str
    email: str
    passwordHash: str
    fullName: str = ""
    role: str = Field("Farmer", description="Farmer | Buyer | Admin")
    phone: str = ""
    location: str = ""
    farmSize: str = ""
    farmType: str = ""
    experience: str = ""
    bio: str = ""
    profileImage: str = ""
    stats: Dict[str, Union[int, float]] = Field(default_factory=lambda: dict(DEFAULT_STATS))
    preferences: Preferences = Field(default_factory=Preferences)
    achievements: List[str] = []
    dashboard: Dashboard = Field(default_factory=Dashboard)
    createdAt: Optional[int] = None
    lastActive: Optional[int] = None


class ProfileUpdate(BaseModel):
    """Self-service profile edits. Role is fixed at registration."""

    fullName: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[str] = None
    farmSize: Optional[str] = None
    farmType: Optional[str] = None
    experience: Optional[str] = None
    bio: Optional[str] = None
    profileImage: Optional[str] = None
    preferences: Optional[Preferences] = None


# ------------------------- Products & orders -------------------------

class Product(BaseModel):
    name: str = Field(..., min_length=1)
    price: float = Field(..., ge=0, description="Unit price in cedis")
    unit: str = "kg"
    stock: int = Field(0, ge=0)
    category: Optional[str] = None
    description: Optional[str] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0)
    unit: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    category: Optional[str] = None
    description: Optional[str] = None


class Order(BaseModel):
    productId: Optional[int] = None
    productName: str = "Product"
    buyerName: Optional[str] = None
    location: Optional[str] = None
    quantity: int = Field(1, ge=1)
    amount: float = Field(0, ge=0)
    status: Literal["pending", "processing", "completed"] = "pending"


# ------------------------- Activity payloads -------------------------

class ActivityPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ProductAdded(ActivityPayload):
    type: Literal["product_added"] = "product_added"
    productId: Optional[int] = None
    productName: str
    price: float = 0
    stock: int = 0


class ProductUpdated(ActivityPayload):
    type: Literal["product_updated"] = "product_updated"
    productId: Optional[int] = None
    oldName: str
    newName: str
    newPrice: Optional[float] = None
    newStock: Optional[int] = None


class ProductDeleted(ActivityPayload):
    type: Literal["product_deleted"] = "product_deleted"
    productId: Optional[int] = None
    productName: str


class OrderReceived(ActivityPayload):
    type: Literal["order_received"] = "order_received"
    orderId: Optional[int] = None
    productName: str = "Product"
    buyerName: Optional[str] = None
    location: Optional[str] = None
    quantity: Optional[int] = None
    amount: float = Field(0, ge=0)


class OrderCompleted(ActivityPayload):
    type: Literal["order_completed"] = "order_completed"
    orderId: Optional[int] = None
    productName: str = "Product"
    buyerName: Optional[str] = None
    amount: float = Field(0, ge=0)


class ProductViewed(ActivityPayload):
    type: Literal["product_viewed"] = "product_viewed"
    productName: str
    viewerLocation: str = "Unknown"
    viewCount: int = Field(1, ge=1)


class BuyerContacted(ActivityPayload):
    type: Literal["buyer_contacted"] = "buyer_contacted"
    buyerName: Optional[str] = None
    location: Optional[str] = None
    productName: Optional[str] = None


class ProfileUpdated(ActivityPayload):
    type: Literal["profile_updated"] = "profile_updated"
    fullName: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[str] = None
    farmSize: Optional[str] = None
    farmType: Optional[str] = None
    experience: Optional[str] = None
    bio: Optional[str] = None


class AchievementUnlocked(ActivityPayload):
    type: Literal["achievement_unlocked"] = "achievement_unlocked"
    achievement: str


class WeatherCheck(ActivityPayload):
    type: Literal["weather_check"] = "weather_check"
    location: str


class MarketplaceBrowse(ActivityPayload):
    type: Literal["marketplace_browse"] = "marketplace_browse"
    category: str


class ResourceViewed(ActivityPayload):
    type: Literal["resource_viewed"] = "resource_viewed"
    resourceType: Optional[str] = None
    resourceName: str


class LoginAttempt(ActivityPayload):
    type: Literal["login_attempt"] = "login_attempt"
    method: str = "email"


class SignupAttempt(ActivityPayload):
    type: Literal["signup_attempt"] = "signup_attempt"
    method: str = "email"


class ContactSubmitted(ActivityPayload):
    type: Literal["contact_submitted"] = "contact_submitted"
    name: Optional[str] = None
    email: Optional[str] = None
    subject: Optional[str] = None


class GenericActivity(ActivityPayload):
    """Any activity type outside the known set; keeps its payload as-is."""
    model_config = ConfigDict(extra="allow")
    type: str


KnownActivity = Union[
    ProductAdded, ProductUpdated, ProductDeleted, OrderReceived, OrderCompleted,
    ProductViewed, BuyerContacted, ProfileUpdated, AchievementUnlocked, WeatherCheck,
    MarketplaceBrowse, ResourceViewed, LoginAttempt, SignupAttempt, ContactSubmitted,
]

PAYLOAD_MODELS = {
    model.model_fields["type"].default: model
    for model in KnownActivity.__args__
}

ACTIVITY_TYPES = list(PAYLOAD_MODELS)


def parse_activity(activity_type: str, payload: Optional[Dict[str, Any]] = None) -> ActivityPayload:
    """Validate a raw payload into the variant for ``activity_type``."""
    data = dict(payload or {})
    data["type"] = activity_type
    model = PAYLOAD_MODELS.get(activity_type, GenericActivity)
    return model.model_validate(data)


def payload_dict(activity: ActivityPayload) -> Dict[str, Any]:
    return activity.model_dump(exclude={"type"}, exclude_none=True)


class Activity(BaseModel):
    userId: str
    type: str
    payload: Dict[str, Any] = {}
    timestamp: int
    displayText: str
    icon: str
