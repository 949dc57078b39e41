"""
repository.py
=============
Database reads that assemble what the discount engine and the price lookup
consume. Rows become schemas objects here, so the engine never touches the
session.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

import models
import schemas

logger = logging.getLogger(__name__)


def load_discount_forest(db: Session, price_type_id: Optional[int] = None) -> List[schemas.DiscountGroup]:
    """
    Build the discount group forest for one price tier.

    Discounts without a tier belong to every tier. A group whose parent does
    not exist is treated as a root. Groups stuck in a parent cycle cannot be
    reached from any root and are left out, so the result is always acyclic.
    Inactive groups are kept; the engine gates them itself.
    """
    groups = db.query(models.DiscountGroup).order_by(models.DiscountGroup.id).all()

    query = db.query(models.Discount)
    if price_type_id is not None:
        query = query.filter(or_(
            models.Discount.price_type_id == price_type_id,
            models.Discount.price_type_id.is_(None),
        ))
    discounts_by_group: Dict[int, List[schemas.Discount]] = {}
    for row in query.order_by(models.Discount.id).all():
        discounts_by_group.setdefault(row.group_id, []).append(schemas.Discount.model_validate(row))

    known_ids = {g.id for g in groups}
    children_of: Dict[int, List[models.DiscountGroup]] = {}
    roots = []
    for group in groups:
        if group.parent_group_id is None or group.parent_group_id not in known_ids:
            roots.append(group)
        else:
            children_of.setdefault(group.parent_group_id, []).append(group)

    built = 0

    def build(row: models.DiscountGroup) -> schemas.DiscountGroup:
        nonlocal built
        built += 1
        return schemas.DiscountGroup(
            id=row.id,
            name=row.name,
            description=row.description,
            operator=row.operator,
            is_active=row.is_active,
            priority=row.priority,
            starts_at=row.starts_at,
            ends_at=row.ends_at,
            discounts=discounts_by_group.get(row.id, []),
            children=[build(child) for child in children_of.get(row.id, [])],
        )

    forest = [build(root) for root in roots]
    if built < len(groups):
        logger.warning("Skipped %d discount group(s) caught in a parent cycle", len(groups) - built)
    return forest


def would_create_cycle(db: Session, group_id: int, new_parent_id: Optional[int]) -> bool:
    """True if making new_parent_id the parent of group_id closes a loop."""
    seen = set()
    current = new_parent_id
    while current is not None:
        if current == group_id or current in seen:
            return True
        seen.add(current)
        parent = db.get(models.DiscountGroup, current)
        if parent is None:
            return False
        current = parent.parent_group_id
    return False


def find_default_price_type(db: Session) -> Optional[models.PriceType]:
    return (
        db.query(models.PriceType)
        .filter(models.PriceType.is_default == True)
        .order_by(models.PriceType.id)
        .first()
    )


def list_product_prices(db: Session, product_id: int) -> List[schemas.ProductPriceResponse]:
    rows = (
        db.query(models.ProductPrice)
        .filter(models.ProductPrice.product_id == product_id)
        .order_by(models.ProductPrice.id)
        .all()
    )
    return [schemas.ProductPriceResponse.model_validate(row) for row in rows]
