from sqlalchemy import Column, Integer, String, JSON, DateTime, Boolean, Float, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base


class PriceType(Base):
    """
    A price tier (e.g. retail, wholesale). Exactly one tier should carry
    is_default=True; it is the fallback when a user's tier has no price row.
    """
    __tablename__ = "price_types"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)


class UserCategory(Base):
    """User segment. price_type_id selects the tier its members buy at."""
    __tablename__ = "user_categories"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String, nullable=False)
    price_type_id = Column(Integer, ForeignKey("price_types.id"), nullable=True)


class ProductPrice(Base):
    """
    Stored price of a product (or one of its modifications) in one tier.
    modification_id is NULL for the product's own price.
    """
    __tablename__ = "product_prices"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    product_id = Column(Integer, nullable=False, index=True)
    modification_id = Column(Integer, nullable=True)
    price_type_id = Column(Integer, ForeignKey("price_types.id"), nullable=False)
    price = Column(Float, nullable=False)
    old_price = Column(Float, nullable=True)


class DiscountGroup(Base):
    """
    Node of the discount tree.

    operator: 'and' | 'or' | 'not' | 'min' | 'max'
    parent_group_id: NULL for root groups.
    """
    __tablename__ = "discount_groups"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    operator = Column(String, nullable=False, default="and")
    is_active = Column(Boolean, default=True, nullable=False)
    priority = Column(Integer, default=0, nullable=False)
    starts_at = Column(DateTime, nullable=True)
    ends_at = Column(DateTime, nullable=True)
    parent_group_id = Column(Integer, ForeignKey("discount_groups.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    discounts = relationship(
        "Discount", back_populates="group", cascade="all, delete-orphan", order_by="Discount.id"
    )


class Discount(Base):
    """
    A single pricing rule owned by one group.

    discount_type: 'percent' | 'fixed_amount' | 'fixed_price'
    price_type_id: tier the rule is offered in; NULL means every tier.
    """
    __tablename__ = "discounts"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    group_id = Column(Integer, ForeignKey("discount_groups.id"), nullable=False, index=True)
    price_type_id = Column(Integer, ForeignKey("price_types.id"), nullable=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    discount_type = Column(String, nullable=False)
    discount_value = Column(Float, nullable=False)
    priority = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    starts_at = Column(DateTime, nullable=True)
    ends_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    group = relationship("DiscountGroup", back_populates="discounts")
    targets = relationship(
        "DiscountTarget", cascade="all, delete-orphan", order_by="DiscountTarget.id"
    )
    conditions = relationship(
        "DiscountCondition", cascade="all, delete-orphan", order_by="DiscountCondition.id"
    )


class DiscountTarget(Base):
    """target_type: 'product' | 'modification' | 'section' | 'all'"""
    __tablename__ = "discount_targets"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    discount_id = Column(Integer, ForeignKey("discounts.id"), nullable=False, index=True)
    target_type = Column(String, nullable=False)
    target_id = Column(Integer, nullable=True)


class DiscountCondition(Base):
    """
    Eligibility predicate of a discount.

    condition_type: 'user_category' | 'min_quantity' | 'min_order_amount' | 'user_logged_in'
    value: JSON scalar or list, interpreted per condition_type.
        - user_category:    [<category id>, ...] with operator 'in' / 'not_in'
        - min_quantity:     <number> with operator '>=' | '>' | '<=' | '<' | '='
        - min_order_amount: <number> with the same operators
        - user_logged_in:   true | false
    """
    __tablename__ = "discount_conditions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    discount_id = Column(Integer, ForeignKey("discounts.id"), nullable=False, index=True)
    condition_type = Column(String, nullable=False)
    operator = Column(String, nullable=False, default=">=")
    value = Column(JSON, nullable=True)
