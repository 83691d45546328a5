from pydantic import BaseModel, Field, ConfigDict, field_validator
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import secrets
import time
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class PlanType(str, Enum):
    BASIC = "basic"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"
    CUSTOM = "custom"

class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"

class Currency(str, Enum):
    INR = "INR"
    USD = "USD"
    EUR = "EUR"

class PlanStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"

class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

# Statuses that grant entitlements; a user holds at most one subscription in these.
LIVE_STATUSES = (SubscriptionStatus.TRIALING.value, SubscriptionStatus.ACTIVE.value)
TERMINAL_STATUSES = (SubscriptionStatus.CANCELLED.value, SubscriptionStatus.COMPLETED.value)

class PaymentStatus(str, Enum):
    PENDING = "pending"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"

# Forward-only payment status machine: target -> statuses it may be reached from.
PAYMENT_STATUS_SOURCES = {
    PaymentStatus.CAPTURED.value: (PaymentStatus.PENDING.value, PaymentStatus.FAILED.value),
    PaymentStatus.FAILED.value: (PaymentStatus.PENDING.value,),
    PaymentStatus.PARTIALLY_REFUNDED.value: (PaymentStatus.CAPTURED.value, PaymentStatus.PARTIALLY_REFUNDED.value),
    PaymentStatus.REFUNDED.value: (PaymentStatus.CAPTURED.value, PaymentStatus.PARTIALLY_REFUNDED.value),
}

class PaymentMethodType(str, Enum):
    CARD = "card"
    NETBANKING = "netbanking"
    WALLET = "wallet"
    UPI = "upi"
    EMI = "emi"

class ResourceType(str, Enum):
    TEAMS = "teams"
    USERS = "users"
    PROJECTS = "projects"
    CLIENTS = "clients"
    LEADS = "leads"
    STORAGE = "storage"  # GB, may be fractional

class FeatureFlag(str, Enum):
    AI_ESTIMATES = "aiEstimates"
    ADVANCED_ANALYTICS = "advancedAnalytics"
    CUSTOM_BRANDING = "customBranding"
    PRIORITY_SUPPORT = "prioritySupport"
    API_ACCESS = "apiAccess"
    WHITE_LABEL = "whiteLabel"

class GatewaySyncStatus(str, Enum):
    SYNCED = "synced"
    PENDING = "pending"
    FAILED = "failed"

class CancellationOutcome(str, Enum):
    CANCELLED = "cancelled"
    LOCAL_CANCELLED_REMOTE_PENDING = "local_cancelled_remote_pending"
    FAILED = "failed"

class WebhookEventStatus(str, Enum):
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"

class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"

class NotificationKind(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

UNLIMITED = -1

DEFAULT_QUOTAS = {
    ResourceType.TEAMS.value: 1,
    ResourceType.USERS.value: 5,
    ResourceType.PROJECTS.value: 10,
    ResourceType.CLIENTS.value: 50,
    ResourceType.LEADS.value: 100,
    ResourceType.STORAGE.value: 5,
}


def _check_resource_keys(value: Dict[str, Any]) -> Dict[str, Any]:
    allowed = {r.value for r in ResourceType}
    unknown = [k for k in value if k not in allowed]
    if unknown:
        raise ValueError(f"Unknown resource type(s): {', '.join(sorted(unknown))}")
    return value


def _check_feature_keys(value: Dict[str, bool]) -> Dict[str, bool]:
    allowed = {f.value for f in FeatureFlag}
    unknown = [k for k in value if k not in allowed]
    if unknown:
        raise ValueError(f"Unknown feature(s): {', '.join(sorted(unknown))}")
    return value


# ============================================================================
# PLANS
# ============================================================================

class Money(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    amount: float = Field(ge=0)
    currency: Currency = Currency.INR

class QuotaSpec(BaseModel):
    max: float = Field(0, ge=0)
    unlimited: bool = False

    @property
    def limit(self) -> float:
        return UNLIMITED if self.unlimited else self.max

class TrialPolicy(BaseModel):
    enabled: bool = False
    days: int = Field(14, ge=0)


def default_quotas() -> Dict[str, QuotaSpec]:
    return {k: QuotaSpec(max=v) for k, v in DEFAULT_QUOTAS.items()}


def default_features() -> Dict[str, bool]:
    return {f.value: False for f in FeatureFlag}


class PlanCreate(BaseModel):
    """Input for a new plan template. Unknown fields are rejected."""
    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    name: str = Field(min_length=1, max_length=100)
    description: str = Field("", max_length=500)
    plan_type: PlanType
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    price: Money
    quotas: Dict[str, QuotaSpec] = Field(default_factory=default_quotas)
    features: Dict[str, bool] = Field(default_factory=default_features)
    trial: TrialPolicy = Field(default_factory=TrialPolicy)
    status: PlanStatus = PlanStatus.ACTIVE
    external_plan_id: Optional[str] = None
    yearly_discount: float = Field(0, ge=0, le=100)
    popular: bool = False
    sort_order: int = 0
    tags: List[str] = Field(default_factory=list)

    @field_validator("quotas")
    @classmethod
    def check_quota_keys(cls, v):
        return _check_resource_keys(v)

    @field_validator("features")
    @classmethod
    def check_feature_keys(cls, v):
        return _check_feature_keys(v)


class PlanUpdate(BaseModel):
    """Allow-listed partial update of a plan. Identity and timestamps are not patchable."""
    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    plan_type: Optional[PlanType] = None
    billing_cycle: Optional[BillingCycle] = None
    price: Optional[Money] = None
    quotas: Optional[Dict[str, QuotaSpec]] = None
    features: Optional[Dict[str, bool]] = None
    trial: Optional[TrialPolicy] = None
    status: Optional[PlanStatus] = None
    external_plan_id: Optional[str] = None
    yearly_discount: Optional[float] = Field(None, ge=0, le=100)
    popular: Optional[bool] = None
    sort_order: Optional[int] = None
    tags: Optional[List[str]] = None

    @field_validator("quotas")
    @classmethod
    def check_quota_keys(cls, v):
        return _check_resource_keys(v) if v is not None else v

    @field_validator("features")
    @classmethod
    def check_feature_keys(cls, v):
        return _check_feature_keys(v) if v is not None else v


class Plan(BaseModel):
    """Stored plan template. Subscriptions copy from it; they never point back to it for entitlements."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    plan_id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    plan_type: PlanType
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    price: Money
    quotas: Dict[str, QuotaSpec] = Field(default_factory=default_quotas)
    features: Dict[str, bool] = Field(default_factory=default_features)
    trial: TrialPolicy = Field(default_factory=TrialPolicy)
    status: PlanStatus = PlanStatus.ACTIVE
    external_plan_id: Optional[str] = None
    yearly_discount: float = 0
    popular: bool = False
    sort_order: int = 0
    tags: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def limit_for(self, resource_type: str) -> float:
        spec = self.quotas.get(resource_type)
        if spec is None:
            return DEFAULT_QUOTAS.get(resource_type, 0)
        return spec.limit

    @property
    def yearly_price(self) -> Optional[float]:
        """Twelve times the price less the yearly discount; None for monthly plans."""
        if self.billing_cycle != BillingCycle.YEARLY.value:
            return None
        return round(self.price.amount * 12 * (1 - self.yearly_discount / 100), 2)

    @property
    def monthly_equivalent(self) -> float:
        if self.billing_cycle == BillingCycle.MONTHLY.value:
            return self.price.amount
        return round(self.price.amount / 12, 2)


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

class UsageCounter(BaseModel):
    current: float = 0
    limit: float = UNLIMITED

    @property
    def remaining(self) -> float:
        if self.limit == UNLIMITED:
            return UNLIMITED
        return max(0, self.limit - self.current)

class HistoryEntry(BaseModel):
    action: str
    timestamp: datetime = Field(default_factory=utcnow)
    detail: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

class TrialPeriod(BaseModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    used: bool = False

class CancellationDetail(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)
    feedback: Optional[str] = Field(None, max_length=1000)
    cancelled_by: Optional[str] = None

class GatewaySync(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    status: GatewaySyncStatus = GatewaySyncStatus.SYNCED
    operation: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    updated_at: Optional[datetime] = None


class Subscription(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    subscription_id: str = Field(default_factory=new_id)
    user_id: str
    plan_id: str
    plan_name: Optional[str] = None
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    status: SubscriptionStatus
    is_live: bool = True
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    price: Money
    trial: Optional[TrialPeriod] = None
    start_date: datetime = Field(default_factory=utcnow)
    end_date: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    payment_method: PaymentMethodType = PaymentMethodType.CARD
    auto_renew: bool = True
    usage: Dict[str, UsageCounter] = Field(default_factory=dict)
    features: Dict[str, bool] = Field(default_factory=dict)
    history: List[HistoryEntry] = Field(default_factory=list)
    cancellation: Optional[CancellationDetail] = None
    gateway_sync: GatewaySync = Field(default_factory=GatewaySync)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.end_date is None:
            return False
        return self.end_date < (now or utcnow())


class SubscriptionSettingsUpdate(BaseModel):
    """The only subscription fields a caller may patch directly."""
    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    auto_renew: Optional[bool] = None
    payment_method: Optional[PaymentMethodType] = None


class QuotaDecision(BaseModel):
    allowed: bool
    resource_type: str
    current: float
    limit: float
    reason: Optional[str] = None


class Entitlement(BaseModel):
    user_id: str
    source: str  # "subscription" or "free_tier"
    subscription_id: Optional[str] = None
    plan_id: Optional[str] = None
    status: Optional[str] = None
    features: Dict[str, bool]
    quotas: Dict[str, float]


class CancellationResult(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    outcome: CancellationOutcome
    subscription: Optional[Subscription] = None
    error: Optional[str] = None


# ============================================================================
# PAYMENTS
# ============================================================================

_RECEIPT_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def generate_receipt_number() -> str:
    """RCP-<epoch ms>-<9 base36 chars>."""
    suffix = "".join(secrets.choice(_RECEIPT_ALPHABET) for _ in range(9))
    return f"RCP-{int(time.time() * 1000)}-{suffix}"


class CardDetail(BaseModel):
    last4: Optional[str] = None
    network: Optional[str] = None
    type: Optional[str] = None

class PaymentMethodDetail(BaseModel):
    type: Optional[str] = None
    card: Optional[CardDetail] = None
    bank: Optional[str] = None
    wallet: Optional[str] = None
    vpa: Optional[str] = None

class PaymentErrorDetail(BaseModel):
    code: Optional[str] = None
    description: Optional[str] = None
    source: Optional[str] = None
    step: Optional[str] = None
    reason: Optional[str] = None

class RefundDetail(BaseModel):
    amount: float = 0
    # claimed by refunds still waiting on the gateway
    pending_amount: float = 0
    reason: Optional[str] = None
    refunded_at: Optional[datetime] = None
    external_refund_id: Optional[str] = None
    refunded_by: Optional[str] = None

class Receipt(BaseModel):
    number: str = Field(default_factory=generate_receipt_number)
    generated_at: datetime = Field(default_factory=utcnow)

class PaymentNote(BaseModel):
    content: str = Field(max_length=500)
    created_at: datetime = Field(default_factory=utcnow)
    created_by: Optional[str] = None


class Payment(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    payment_id: str = Field(default_factory=new_id)
    user_id: Optional[str] = None
    subscription_id: Optional[str] = None
    external_payment_id: str
    external_order_id: Optional[str] = None
    signature: Optional[str] = None
    amount: float = Field(ge=0)
    currency: str = Currency.INR.value
    status: PaymentStatus = PaymentStatus.PENDING
    method: PaymentMethodDetail = Field(default_factory=PaymentMethodDetail)
    description: Optional[str] = None
    paid_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error: Optional[PaymentErrorDetail] = None
    refund: RefundDetail = Field(default_factory=RefundDetail)
    receipt: Receipt = Field(default_factory=Receipt)
    notes: List[PaymentNote] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def refundable_amount(self) -> float:
        return round(self.amount - self.refund.amount - self.refund.pending_amount, 2)


# ============================================================================
# MIRRORS, EVENTS, NOTIFICATIONS
# ============================================================================

class UserBilling(BaseModel):
    """Per-user billing mirror: gateway customer and last known subscription state."""
    model_config = ConfigDict(extra="ignore")

    user_id: str
    external_customer_id: Optional[str] = None
    subscription_status: Optional[str] = None
    subscription_expiry: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)


class Notification(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    notification_id: str = Field(default_factory=new_id)
    user_id: str
    title: str
    message: str
    kind: NotificationKind = NotificationKind.INFO
    priority: str = "medium"
    related: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None
    read: bool = False
    created_at: datetime = Field(default_factory=utcnow)
