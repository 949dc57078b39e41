"""
main.py
=======
FastAPI application entry point.

Endpoints:
  POST   /price-types                  - Create a price tier
  GET    /price-types                  - List price tiers
  POST   /user-categories              - Create a user category
  GET    /user-categories              - List user categories
  POST   /product-prices               - Store a product price in a tier
  GET    /products/{id}/prices         - List stored prices of a product
  POST   /discount-groups              - Create a discount group
  GET    /discount-groups              - List all discount groups (flat)
  GET    /discount-groups/tree         - Assembled group forest, as the engine sees it
  GET    /discount-groups/{id}         - Get a discount group by ID
  PUT    /discount-groups/{id}         - Update a discount group
  DELETE /discount-groups/{id}         - Delete a discount group and its discounts
  POST   /discounts                    - Create a discount with targets and conditions
  GET    /discounts                    - List discounts, optionally for one group
  GET    /discounts/{id}               - Get a discount by ID
  PUT    /discounts/{id}               - Update a discount
  DELETE /discounts/{id}               - Delete a discount
  POST   /evaluate                     - Resolve a price against a supplied rule tree
  POST   /price-check                  - Resolve a stored product price against stored rules
"""

import logging
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends, status
from sqlalchemy.orm import Session

import config
import discount_engine
import models
import pricing
import repository
import schemas
from database import engine, get_db

config.setup_logging()
logger = logging.getLogger(__name__)

# Create DB tables on startup
models.Base.metadata.create_all(bind=engine)

app = FastAPI(
    title=config.APP_TITLE,
    description="Manage hierarchical discount rules and resolve the final price of a line item with a full audit trail.",
    version=config.APP_VERSION,
)


def _get_group_or_404(db: Session, group_id: int) -> models.DiscountGroup:
    group = db.get(models.DiscountGroup, group_id)
    if not group:
        raise HTTPException(status_code=404, detail=f"Discount group with id={group_id} not found")
    return group


def _get_discount_or_404(db: Session, discount_id: int) -> models.Discount:
    discount = db.get(models.Discount, discount_id)
    if not discount:
        raise HTTPException(status_code=404, detail=f"Discount with id={discount_id} not found")
    return discount


def _check_window(starts_at, ends_at):
    try:
        schemas.check_window(starts_at, ends_at)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# ═══════════════════════════════════════════════════
#  PRICE TYPES / USER CATEGORIES / PRODUCT PRICES
# ═══════════════════════════════════════════════════

@app.post(
    "/price-types",
    response_model=schemas.PriceTypeResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Prices"],
    summary="Create a price tier",
)
def create_price_type(price_type: schemas.PriceTypeCreate, db: Session = Depends(get_db)):
    """Create a price tier. Marking it default clears the flag on every other tier."""
    if price_type.is_default:
        db.query(models.PriceType).update({models.PriceType.is_default: False})
    db_price_type = models.PriceType(name=price_type.name, is_default=price_type.is_default)
    db.add(db_price_type)
    db.commit()
    db.refresh(db_price_type)
    return db_price_type


@app.get(
    "/price-types",
    response_model=List[schemas.PriceTypeResponse],
    tags=["Prices"],
    summary="Get all price tiers",
)
def get_price_types(db: Session = Depends(get_db)):
    return db.query(models.PriceType).order_by(models.PriceType.id).all()


@app.post(
    "/user-categories",
    response_model=schemas.UserCategoryResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Prices"],
    summary="Create a user category",
)
def create_user_category(category: schemas.UserCategoryCreate, db: Session = Depends(get_db)):
    if category.price_type_id is not None and not db.get(models.PriceType, category.price_type_id):
        raise HTTPException(status_code=404, detail=f"Price type with id={category.price_type_id} not found")
    db_category = models.UserCategory(name=category.name, price_type_id=category.price_type_id)
    db.add(db_category)
    db.commit()
    db.refresh(db_category)
    return db_category


@app.get(
    "/user-categories",
    response_model=List[schemas.UserCategoryResponse],
    tags=["Prices"],
    summary="Get all user categories",
)
def get_user_categories(db: Session = Depends(get_db)):
    return db.query(models.UserCategory).order_by(models.UserCategory.id).all()


@app.post(
    "/product-prices",
    response_model=schemas.ProductPriceResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Prices"],
    summary="Store a product price in a tier",
)
def create_product_price(entry: schemas.ProductPriceCreate, db: Session = Depends(get_db)):
    if not db.get(models.PriceType, entry.price_type_id):
        raise HTTPException(status_code=404, detail=f"Price type with id={entry.price_type_id} not found")
    db_price = models.ProductPrice(**entry.model_dump())
    db.add(db_price)
    db.commit()
    db.refresh(db_price)
    return db_price


@app.get(
    "/products/{product_id}/prices",
    response_model=List[schemas.ProductPriceResponse],
    tags=["Prices"],
    summary="Get stored prices of a product",
)
def get_product_prices(product_id: int, db: Session = Depends(get_db)):
    return repository.list_product_prices(db, product_id)


# ═══════════════════════════════════════════════════
#  DISCOUNT GROUPS
# ═══════════════════════════════════════════════════

@app.post(
    "/discount-groups",
    response_model=schemas.DiscountGroupResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Discount Groups"],
    summary="Create a discount group",
)
def create_discount_group(group: schemas.DiscountGroupCreate, db: Session = Depends(get_db)):
    """
    Create a group. Operators:
    - **and**: sum every applicable discount and child group.
    - **or**: only the first applicable entry by priority.
    - **not**: anything applicable suppresses the whole group.
    - **min** / **max**: only the smallest / largest entry.
    """
    if group.parent_group_id is not None:
        _get_group_or_404(db, group.parent_group_id)

    db_group = models.DiscountGroup(
        name=group.name,
        description=group.description,
        operator=group.operator.value,
        is_active=group.is_active,
        priority=group.priority,
        starts_at=group.starts_at,
        ends_at=group.ends_at,
        parent_group_id=group.parent_group_id,
    )
    db.add(db_group)
    db.commit()
    db.refresh(db_group)
    logger.info("Created discount group %s (%s)", db_group.id, db_group.operator)
    return db_group


@app.get(
    "/discount-groups",
    response_model=List[schemas.DiscountGroupResponse],
    tags=["Discount Groups"],
    summary="Get all discount groups",
)
def get_all_discount_groups(db: Session = Depends(get_db)):
    """Retrieve every group (active and inactive) as flat rows."""
    return db.query(models.DiscountGroup).order_by(models.DiscountGroup.id).all()


@app.get(
    "/discount-groups/tree",
    response_model=List[schemas.DiscountGroup],
    tags=["Discount Groups"],
    summary="Get the assembled discount group forest",
)
def get_discount_tree(price_type_id: Optional[int] = None, db: Session = Depends(get_db)):
    """
    Root groups with nested children and discounts, in the shape `/evaluate` accepts.
    With `price_type_id`, only discounts of that tier (or of no tier) are included.
    """
    return repository.load_discount_forest(db, price_type_id)


@app.get(
    "/discount-groups/{group_id}",
    response_model=schemas.DiscountGroupResponse,
    tags=["Discount Groups"],
    summary="Get a discount group by ID",
)
def get_discount_group(group_id: int, db: Session = Depends(get_db)):
    return _get_group_or_404(db, group_id)


@app.put(
    "/discount-groups/{group_id}",
    response_model=schemas.DiscountGroupResponse,
    tags=["Discount Groups"],
    summary="Update a discount group",
)
def update_discount_group(group_id: int, update_data: schemas.DiscountGroupUpdate, db: Session = Depends(get_db)):
    """
    Update a group. Only provided fields change. An explicit `null` clears
    `description`, `starts_at` or `ends_at`; `parent_group_id: null` turns the group into a root.
    """
    group = _get_group_or_404(db, group_id)

    fields_set = update_data.model_fields_set
    if "parent_group_id" in fields_set:
        new_parent = update_data.parent_group_id
        if new_parent is not None:
            if not db.get(models.DiscountGroup, new_parent):
                raise HTTPException(status_code=400, detail=f"Parent group with id={new_parent} not found")
            if repository.would_create_cycle(db, group_id, new_parent):
                raise HTTPException(status_code=400, detail="A group cannot be nested inside itself or its descendants")
        group.parent_group_id = new_parent

    if update_data.name is not None:
        group.name = update_data.name
    if "description" in fields_set:
        group.description = update_data.description
    if update_data.operator is not None:
        group.operator = update_data.operator.value
    if update_data.is_active is not None:
        group.is_active = update_data.is_active
    if update_data.priority is not None:
        group.priority = update_data.priority
    if "starts_at" in fields_set:
        group.starts_at = update_data.starts_at
    if "ends_at" in fields_set:
        group.ends_at = update_data.ends_at

    _check_window(group.starts_at, group.ends_at)

    db.commit()
    db.refresh(group)
    return group


@app.delete(
    "/discount-groups/{group_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Discount Groups"],
    summary="Delete a discount group",
)
def delete_discount_group(group_id: int, db: Session = Depends(get_db)):
    """Delete a group together with its discounts. Child groups must be moved or deleted first."""
    group = _get_group_or_404(db, group_id)
    has_children = (
        db.query(models.DiscountGroup).filter(models.DiscountGroup.parent_group_id == group_id).first()
    )
    if has_children:
        raise HTTPException(status_code=409, detail="Discount group still has child groups")
    db.delete(group)
    db.commit()
    logger.info("Deleted discount group %s", group_id)
    return None


# ═══════════════════════════════════════════════════
#  DISCOUNTS
# ═══════════════════════════════════════════════════

def _build_targets(targets: List[schemas.DiscountTargetCreate]) -> List[models.DiscountTarget]:
    return [models.DiscountTarget(target_type=t.target_type.value, target_id=t.target_id) for t in targets]


def _build_conditions(conditions: List[schemas.DiscountConditionCreate]) -> List[models.DiscountCondition]:
    return [
        models.DiscountCondition(condition_type=c.condition_type.value, operator=c.operator, value=c.value)
        for c in conditions
    ]


@app.post(
    "/discounts",
    response_model=schemas.DiscountResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Discounts"],
    summary="Create a discount",
)
def create_discount(discount: schemas.DiscountCreate, db: Session = Depends(get_db)):
    """
    Create a discount inside a group. Supports three types:
    - **percent**: percentage of the base price.
    - **fixed_amount**: fixed sum off, never below zero.
    - **fixed_price**: the item is sold at exactly `discount_value`.
    """
    _get_group_or_404(db, discount.group_id)
    if discount.price_type_id is not None and not db.get(models.PriceType, discount.price_type_id):
        raise HTTPException(status_code=404, detail=f"Price type with id={discount.price_type_id} not found")

    db_discount = models.Discount(
        group_id=discount.group_id,
        price_type_id=discount.price_type_id,
        name=discount.name,
        description=discount.description,
        discount_type=discount.discount_type.value,
        discount_value=discount.discount_value,
        priority=discount.priority,
        is_active=discount.is_active,
        starts_at=discount.starts_at,
        ends_at=discount.ends_at,
        targets=_build_targets(discount.targets),
        conditions=_build_conditions(discount.conditions),
    )
    db.add(db_discount)
    db.commit()
    db.refresh(db_discount)
    logger.info("Created discount %s in group %s", db_discount.id, db_discount.group_id)
    return db_discount


@app.get(
    "/discounts",
    response_model=List[schemas.DiscountResponse],
    tags=["Discounts"],
    summary="Get all discounts",
)
def get_all_discounts(group_id: Optional[int] = None, db: Session = Depends(get_db)):
    query = db.query(models.Discount)
    if group_id is not None:
        query = query.filter(models.Discount.group_id == group_id)
    return query.order_by(models.Discount.id).all()


@app.get(
    "/discounts/{discount_id}",
    response_model=schemas.DiscountResponse,
    tags=["Discounts"],
    summary="Get a discount by ID",
)
def get_discount(discount_id: int, db: Session = Depends(get_db)):
    return _get_discount_or_404(db, discount_id)


@app.put(
    "/discounts/{discount_id}",
    response_model=schemas.DiscountResponse,
    tags=["Discounts"],
    summary="Update a discount",
)
def update_discount(discount_id: int, update_data: schemas.DiscountUpdate, db: Session = Depends(get_db)):
    """
    Update a discount. Only provided fields change; an explicit `null` clears
    `price_type_id`, `description`, `starts_at` or `ends_at`. `targets` and
    `conditions` replace the existing lists when present.
    """
    discount = _get_discount_or_404(db, discount_id)

    fields_set = update_data.model_fields_set
    if "price_type_id" in fields_set:
        if update_data.price_type_id is not None and not db.get(models.PriceType, update_data.price_type_id):
            raise HTTPException(status_code=404, detail=f"Price type with id={update_data.price_type_id} not found")
        discount.price_type_id = update_data.price_type_id
    if update_data.name is not None:
        discount.name = update_data.name
    if "description" in fields_set:
        discount.description = update_data.description
    if update_data.discount_type is not None:
        discount.discount_type = update_data.discount_type.value
    if update_data.discount_value is not None:
        discount.discount_value = update_data.discount_value
    if update_data.priority is not None:
        discount.priority = update_data.priority
    if update_data.is_active is not None:
        discount.is_active = update_data.is_active
    if "starts_at" in fields_set:
        discount.starts_at = update_data.starts_at
    if "ends_at" in fields_set:
        discount.ends_at = update_data.ends_at
    if update_data.targets is not None:
        discount.targets = _build_targets(update_data.targets)
    if update_data.conditions is not None:
        discount.conditions = _build_conditions(update_data.conditions)

    if discount.discount_type == schemas.DiscountType.percent.value and discount.discount_value > 100:
        raise HTTPException(status_code=400, detail="Discount percentage cannot exceed 100")
    _check_window(discount.starts_at, discount.ends_at)

    db.commit()
    db.refresh(discount)
    return discount


@app.delete(
    "/discounts/{discount_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Discounts"],
    summary="Delete a discount",
)
def delete_discount(discount_id: int, db: Session = Depends(get_db)):
    discount = _get_discount_or_404(db, discount_id)
    db.delete(discount)
    db.commit()
    logger.info("Deleted discount %s", discount_id)
    return None


# ═══════════════════════════════════════════════════
#  PRICE RESOLUTION
# ═══════════════════════════════════════════════════

@app.post(
    "/evaluate",
    response_model=schemas.DiscountResult,
    tags=["Resolve"],
    summary="Resolve a price against a supplied rule tree",
)
def evaluate(request: schemas.EvaluateRequest):
    """
    Stateless: nothing is read from or written to the database.
    Returns the final price plus every applied and rejected discount with its reason.
    """
    return discount_engine.resolve_discount(request.base_price, request.groups, request.context)


@app.post(
    "/price-check",
    response_model=schemas.PriceCheckResponse,
    tags=["Resolve"],
    summary="Resolve the final price of a stored product",
)
def price_check(request: schemas.PriceCheckRequest, db: Session = Depends(get_db)):
    """
    1. Pick the price tier: the user category's tier, else the default tier.
    2. Resolve the base price in that tier, falling back to the default tier.
    3. Run the stored discount rules of that tier against the purchase context.
    """
    category = None
    if request.user_category_id is not None:
        category = db.get(models.UserCategory, request.user_category_id)
        if not category:
            raise HTTPException(status_code=404, detail=f"User category with id={request.user_category_id} not found")

    default_price_type = repository.find_default_price_type(db)
    default_id = default_price_type.id if default_price_type else None

    choice = pricing.select_price_type(
        category.price_type_id if category else None,
        default_id,
        has_category=category is not None,
        is_logged_in=request.is_logged_in,
    )

    prices = repository.list_product_prices(db, request.product_id)
    resolved = pricing.resolve_price(prices, choice.price_type_id, default_id, request.modification_id)
    if resolved.price is None:
        raise HTTPException(status_code=404, detail=f"No price found for product id={request.product_id}")

    context = schemas.DiscountContext(
        user_id=request.user_id,
        user_category_id=request.user_category_id,
        quantity=request.quantity,
        cart_total=request.cart_total,
        product_id=request.product_id,
        modification_id=request.modification_id,
        section_id=request.section_id,
        is_logged_in=request.is_logged_in,
        now=request.now,
    )
    forest = repository.load_discount_forest(db, choice.price_type_id)
    result = discount_engine.resolve_discount(resolved.price, forest, context)

    return schemas.PriceCheckResponse(
        price_type_id=choice.price_type_id,
        price_type_reason=choice.reason,
        base_price=resolved.price,
        old_price=resolved.old_price,
        result=result,
    )


# ═══════════════════════════════════════════════════
#  HEALTH CHECK
# ═══════════════════════════════════════════════════

@app.get("/", tags=["Health"], summary="Health check")
def root():
    return {"status": "ok", "message": f"{config.APP_TITLE} is running"}
