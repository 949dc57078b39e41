from pydantic import BaseModel, field_validator, model_validator
from typing import Optional, List, Any
from datetime import datetime, timezone
from enum import Enum


# ─────────────── Enums ───────────────

class DiscountType(str, Enum):
    percent = "percent"
    fixed_amount = "fixed_amount"
    fixed_price = "fixed_price"


class GroupOperator(str, Enum):
    and_ = "and"
    or_ = "or"
    not_ = "not"
    min = "min"
    max = "max"


class TargetType(str, Enum):
    product = "product"
    modification = "modification"
    section = "section"
    all = "all"


class ConditionType(str, Enum):
    user_category = "user_category"
    min_quantity = "min_quantity"
    min_order_amount = "min_order_amount"
    user_logged_in = "user_logged_in"


# ─────────────── Helpers ───────────────

def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored datetimes are naive UTC; aware input is converted first."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def check_window(starts_at: Optional[datetime], ends_at: Optional[datetime]) -> None:
    if starts_at is not None and ends_at is not None and to_naive_utc(starts_at) > to_naive_utc(ends_at):
        raise ValueError("starts_at must not be after ends_at")


# ─────────────── Rule tree (engine input) ───────────────

class DiscountTarget(BaseModel):
    target_type: TargetType
    target_id: Optional[int] = None  # None only for 'all'

    model_config = {"from_attributes": True}


class DiscountCondition(BaseModel):
    condition_type: str  # Unknown types are rejected by the engine, not here
    operator: str = ">="
    value: Any = None

    model_config = {"from_attributes": True}


class Discount(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    discount_type: DiscountType
    discount_value: float
    priority: int = 0
    is_active: bool = True
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    targets: List[DiscountTarget] = []  # Empty = applies everywhere
    conditions: List[DiscountCondition] = []  # All must hold

    model_config = {"from_attributes": True}


class DiscountGroup(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    operator: GroupOperator = GroupOperator.and_
    is_active: bool = True
    priority: int = 0
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    discounts: List[Discount] = []
    children: List["DiscountGroup"] = []


class DiscountContext(BaseModel):
    user_id: Optional[int] = None
    user_category_id: Optional[int] = None
    quantity: int = 1
    cart_total: float = 0.0
    product_id: int
    modification_id: Optional[int] = None
    section_id: Optional[int] = None
    is_logged_in: bool = False
    now: Optional[datetime] = None  # Wall-clock time when omitted


# ─────────────── Resolution result ───────────────

class AppliedDiscount(BaseModel):
    id: int
    name: str
    type: DiscountType
    value: float
    calculated_amount: float
    group_name: str


class RejectedDiscount(BaseModel):
    id: int
    name: str
    reason: str
    group_name: str


class DiscountResult(BaseModel):
    final_price: float
    total_discount: float
    applied_discounts: List[AppliedDiscount] = []
    rejected_discounts: List[RejectedDiscount] = []


# ─────────────── Price types / categories / prices ───────────────

class PriceTypeCreate(BaseModel):
    name: str
    is_default: bool = False


class PriceTypeResponse(BaseModel):
    id: int
    name: str
    is_default: bool

    model_config = {"from_attributes": True}


class UserCategoryCreate(BaseModel):
    name: str
    price_type_id: Optional[int] = None


class UserCategoryResponse(BaseModel):
    id: int
    name: str
    price_type_id: Optional[int] = None

    model_config = {"from_attributes": True}


class ProductPriceCreate(BaseModel):
    product_id: int
    modification_id: Optional[int] = None
    price_type_id: int
    price: float
    old_price: Optional[float] = None

    @field_validator("price")
    @classmethod
    def price_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Price must be positive")
        return v


class ProductPriceResponse(BaseModel):
    id: int
    product_id: int
    modification_id: Optional[int] = None
    price_type_id: int
    price: float
    old_price: Optional[float] = None

    model_config = {"from_attributes": True}


# ─────────────── Discount group CRUD ───────────────

class DiscountGroupCreate(BaseModel):
    name: str
    description: Optional[str] = None
    operator: GroupOperator = GroupOperator.and_
    is_active: bool = True
    priority: int = 0
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    parent_group_id: Optional[int] = None

    @field_validator("starts_at", "ends_at")
    @classmethod
    def normalize_datetime(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)

    @model_validator(mode="after")
    def validate_window(self) -> "DiscountGroupCreate":
        check_window(self.starts_at, self.ends_at)
        return self


class DiscountGroupUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None  # Explicit null clears it
    operator: Optional[GroupOperator] = None
    is_active: Optional[bool] = None
    priority: Optional[int] = None
    starts_at: Optional[datetime] = None  # Explicit null removes the bound
    ends_at: Optional[datetime] = None
    parent_group_id: Optional[int] = None  # Explicit null moves the group to the root

    @field_validator("starts_at", "ends_at")
    @classmethod
    def normalize_datetime(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)


class DiscountGroupResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    operator: GroupOperator
    is_active: bool
    priority: int
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    parent_group_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ─────────────── Discount CRUD ───────────────

class DiscountTargetCreate(BaseModel):
    target_type: TargetType
    target_id: Optional[int] = None

    @model_validator(mode="after")
    def target_id_required(self) -> "DiscountTargetCreate":
        if self.target_type != TargetType.all and self.target_id is None:
            raise ValueError(f"target_id is required for '{self.target_type.value}' targets")
        return self


class DiscountConditionCreate(BaseModel):
    condition_type: ConditionType
    operator: str = ">="
    value: Any = None

    @model_validator(mode="after")
    def category_ids_as_int(self) -> "DiscountConditionCreate":
        # Category ids are matched by equality against integer user_category_id
        if self.condition_type == ConditionType.user_category:
            ids = self.value if isinstance(self.value, list) else [self.value]
            try:
                self.value = [int(i) for i in ids]
            except (TypeError, ValueError):
                raise ValueError("user_category value must be a list of category ids")
        return self


class DiscountTargetResponse(BaseModel):
    id: int
    target_type: TargetType
    target_id: Optional[int] = None

    model_config = {"from_attributes": True}


class DiscountConditionResponse(BaseModel):
    id: int
    condition_type: str
    operator: str
    value: Any = None

    model_config = {"from_attributes": True}


class DiscountCreate(BaseModel):
    group_id: int
    price_type_id: Optional[int] = None
    name: str
    description: Optional[str] = None
    discount_type: DiscountType
    discount_value: float
    priority: int = 0
    is_active: bool = True
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    targets: List[DiscountTargetCreate] = []
    conditions: List[DiscountConditionCreate] = []

    @field_validator("discount_value")
    @classmethod
    def value_not_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Discount value cannot be negative")
        return v

    @field_validator("starts_at", "ends_at")
    @classmethod
    def normalize_datetime(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)

    @model_validator(mode="after")
    def validate_value_and_window(self) -> "DiscountCreate":
        if self.discount_type == DiscountType.percent and self.discount_value > 100:
            raise ValueError("Discount percentage cannot exceed 100")
        check_window(self.starts_at, self.ends_at)
        return self


class DiscountUpdate(BaseModel):
    price_type_id: Optional[int] = None  # Explicit null offers it in every tier
    name: Optional[str] = None
    description: Optional[str] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[float] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    targets: Optional[List[DiscountTargetCreate]] = None  # Replaces all targets when given
    conditions: Optional[List[DiscountConditionCreate]] = None  # Replaces all conditions when given

    @field_validator("discount_value")
    @classmethod
    def value_not_negative(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v < 0:
            raise ValueError("Discount value cannot be negative")
        return v

    @field_validator("starts_at", "ends_at")
    @classmethod
    def normalize_datetime(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)


class DiscountResponse(BaseModel):
    id: int
    group_id: int
    price_type_id: Optional[int] = None
    name: str
    description: Optional[str] = None
    discount_type: DiscountType
    discount_value: float
    priority: int
    is_active: bool
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    targets: List[DiscountTargetResponse] = []
    conditions: List[DiscountConditionResponse] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ─────────────── Evaluation requests ───────────────

class EvaluateRequest(BaseModel):
    base_price: float
    groups: List[DiscountGroup] = []
    context: DiscountContext


class PriceCheckRequest(BaseModel):
    product_id: int
    modification_id: Optional[int] = None
    section_id: Optional[int] = None
    user_id: Optional[int] = None
    user_category_id: Optional[int] = None
    is_logged_in: bool = False
    quantity: int = 1
    cart_total: float = 0.0
    now: Optional[datetime] = None

    @field_validator("quantity")
    @classmethod
    def qty_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Quantity must be positive")
        return v


class PriceCheckResponse(BaseModel):
    price_type_id: Optional[int] = None
    price_type_reason: str
    base_price: float
    old_price: Optional[float] = None
    result: DiscountResult
