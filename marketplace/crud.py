# marketplace/crud.py
# Query helpers. Nothing here commits: the caller owns the transaction.
from datetime import datetime, date
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, insert, update, delete, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    AuthUser, UserProfile, Category, Product, Order, OrderItem, Deal, DealProduct,
    DealCategory, ChatConversation, ChatMessage, RevenueAdjustment,
)


def row_to_dict(obj, exclude: Iterable[str] = ()) -> Dict[str, Any]:
    """Column values of an ORM row, JSON friendly (Decimal -> float, datetime -> iso)."""
    if obj is None:
        return None
    out = {}
    for col in obj.__table__.columns:
        if col.name in exclude:
            continue
        val = getattr(obj, col.name)
        if isinstance(val, Decimal):
            val = float(val)
        elif isinstance(val, (datetime, date)):
            val = val.isoformat()
        out[col.name] = val
    return out


def money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


# ---------- profiles ----------
async def get_profile(db: AsyncSession, user_id: str) -> Optional[UserProfile]:
    r = await db.execute(select(UserProfile).where(UserProfile.id == user_id))
    return r.scalar_one_or_none()

async def get_profiles_by_email(db: AsyncSession, email: str) -> List[UserProfile]:
    q = select(UserProfile).where(func.lower(UserProfile.email) == email.strip().lower())
    r = await db.execute(q)
    return r.scalars().all()

async def get_profiles_by_ids(db: AsyncSession, user_ids: Iterable[str]) -> Dict[str, UserProfile]:
    ids = list(set(user_ids))
    if not ids:
        return {}
    r = await db.execute(select(UserProfile).where(UserProfile.id.in_(ids)))
    return {p.id: p for p in r.scalars().all()}

async def list_profiles(db: AsyncSession, status: Optional[str] = None, search: Optional[str] = None,
                        limit: int = 200) -> List[UserProfile]:
    q = select(UserProfile)
    if status:
        q = q.where(UserProfile.status == status)
    if search:
        like = f"%{search.strip().lower()}%"
        q = q.where(or_(func.lower(UserProfile.name).like(like), func.lower(UserProfile.email).like(like)))
    q = q.order_by(UserProfile.created_at.desc()).limit(limit)
    r = await db.execute(q)
    return r.scalars().all()

async def insert_profile(db: AsyncSession, data: Dict[str, Any]) -> UserProfile:
    profile = UserProfile(**data)
    db.add(profile)
    await db.flush()
    return profile

async def update_profile(db: AsyncSession, user_id: str, values: Dict[str, Any]) -> Optional[UserProfile]:
    values = {**values, "updated_at": datetime.utcnow()}
    await db.execute(
        update(UserProfile).where(UserProfile.id == user_id).values(**values)
        .execution_options(synchronize_session=False)
    )
    profile = await get_profile(db, user_id)
    if profile is not None:
        await db.refresh(profile)
    return profile

async def anonymize_profile(db: AsyncSession, user_id: str, anonymized_email: str) -> int:
    r = await db.execute(
        update(UserProfile).where(UserProfile.id == user_id).values(
            name="[Deleted User]",
            email=anonymized_email,
            phone=None,
            address_street=None,
            address_city=None,
            address_state=None,
            address_zip=None,
            company_name=None,
            status="inactive",
            updated_at=datetime.utcnow(),
        ).execution_options(synchronize_session=False)
    )
    return r.rowcount

async def delete_profile(db: AsyncSession, user_id: str) -> int:
    r = await db.execute(delete(UserProfile).where(UserProfile.id == user_id))
    return r.rowcount

async def charge_credit(db: AsyncSession, user_id: str, amount: Decimal) -> Optional[Decimal]:
    """
    Atomic credit draw:
    UPDATE user_profiles SET credit_used = round(credit_used + :amount, 2)
     WHERE id = :user_id AND round(credit_used + :amount, 2) <= credit_limit
    RETURNING credit_used
    Returns the new credit_used, or None when the line cannot cover the amount.
    """
    # compare in cents, sqlite keeps Numeric columns as floats
    new_used = func.round(UserProfile.credit_used + amount, 2)
    stmt = (
        update(UserProfile)
        .where(UserProfile.id == user_id, new_used <= UserProfile.credit_limit)
        .values(credit_used=new_used, updated_at=datetime.utcnow())
        .returning(UserProfile.credit_used)
        .execution_options(synchronize_session=False)
    )
    r = await db.execute(stmt)
    row = r.first()
    return money(row[0]) if row else None


# ---------- local identity store ----------
async def get_auth_user(db: AsyncSession, user_id: str) -> Optional[AuthUser]:
    r = await db.execute(select(AuthUser).where(AuthUser.id == user_id))
    return r.scalar_one_or_none()

async def get_auth_users_by_email(db: AsyncSession, email: str) -> List[AuthUser]:
    r = await db.execute(select(AuthUser).where(func.lower(AuthUser.email) == email.strip().lower()))
    return r.scalars().all()

async def delete_auth_user(db: AsyncSession, user_id: str) -> int:
    r = await db.execute(delete(AuthUser).where(AuthUser.id == user_id))
    return r.rowcount


# ---------- categories ----------
async def list_categories(db: AsyncSession) -> List[Category]:
    r = await db.execute(select(Category).order_by(Category.name))
    return r.scalars().all()

async def get_category(db: AsyncSession, category_id: int) -> Optional[Category]:
    r = await db.execute(select(Category).where(Category.id == category_id))
    return r.scalar_one_or_none()

async def active_product_counts(db: AsyncSession) -> Dict[int, int]:
    q = (
        select(Product.category_id, func.count(Product.id))
        .where(Product.status == "active")
        .group_by(Product.category_id)
    )
    r = await db.execute(q)
    return {cid: n for cid, n in r.all() if cid is not None}

async def insert_category(db: AsyncSession, data: Dict[str, Any]) -> Category:
    cat = Category(**data)
    db.add(cat)
    await db.flush()
    return cat

async def update_category(db: AsyncSession, category_id: int, values: Dict[str, Any]) -> Optional[Category]:
    await db.execute(
        update(Category).where(Category.id == category_id).values(**values)
        .execution_options(synchronize_session=False)
    )
    cat = await get_category(db, category_id)
    if cat is not None:
        await db.refresh(cat)
    return cat

async def delete_category(db: AsyncSession, category_id: int) -> int:
    await db.execute(delete(DealCategory).where(DealCategory.category_id == category_id))
    r = await db.execute(delete(Category).where(Category.id == category_id))
    return r.rowcount


# ---------- products ----------
async def list_products(db: AsyncSession, featured: bool = False, category_id: Optional[int] = None,
                        limit: Optional[int] = None, status: str = "active"):
    """Rows of (Product, category_name)."""
    q = (
        select(Product, Category.name)
        .join(Category, Category.id == Product.category_id, isouter=True)
        .where(Product.status == status)
    )
    if featured:
        flagged = await db.execute(
            select(func.count(Product.id)).where(Product.is_featured.is_(True), Product.status == status)
        )
        if flagged.scalar_one() > 0:
            q = q.where(Product.is_featured.is_(True)).order_by(Product.created_at.desc())
        else:
            # nothing flagged: the most expensive products stand in
            q = q.order_by(Product.price.desc())
            limit = limit or 4
    else:
        q = q.order_by(Product.created_at.desc(), Product.id.desc())
    if category_id is not None:
        q = q.where(Product.category_id == category_id)
    if limit:
        q = q.limit(limit)
    r = await db.execute(q)
    return r.all()

async def get_product(db: AsyncSession, product_id: int) -> Optional[Product]:
    r = await db.execute(select(Product).where(Product.id == product_id))
    return r.scalar_one_or_none()

async def get_product_by_sku(db: AsyncSession, sku: str) -> Optional[Product]:
    r = await db.execute(select(Product).where(Product.sku == sku))
    return r.scalar_one_or_none()

async def get_product_names(db: AsyncSession, product_ids: Iterable[int]) -> Dict[int, str]:
    ids = list(set(product_ids))
    if not ids:
        return {}
    r = await db.execute(select(Product.id, Product.name).where(Product.id.in_(ids)))
    return {pid: name for pid, name in r.all()}

async def insert_product(db: AsyncSession, data: Dict[str, Any]) -> Product:
    product = Product(**data)
    db.add(product)
    await db.flush()
    return product

async def update_product(db: AsyncSession, product_id: int, values: Dict[str, Any]) -> Optional[Product]:
    values = {**values, "updated_at": datetime.utcnow()}
    r = await db.execute(
        update(Product).where(Product.id == product_id).values(**values)
        .execution_options(synchronize_session=False)
    )
    if r.rowcount == 0:
        return None
    product = await get_product(db, product_id)
    await db.refresh(product)
    return product

async def delete_product(db: AsyncSession, product_id: int) -> int:
    await db.execute(delete(DealProduct).where(DealProduct.product_id == product_id))
    r = await db.execute(delete(Product).where(Product.id == product_id))
    return r.rowcount

async def list_category_products(db: AsyncSession, category_id: int) -> List[Product]:
    q = (
        select(Product)
        .where(Product.category_id == category_id, Product.status == "active")
        .order_by(Product.created_at.desc(), Product.id.desc())
    )
    r = await db.execute(q)
    return r.scalars().all()


# ---------- orders ----------
async def order_number_exists(db: AsyncSession, order_number: str) -> bool:
    r = await db.execute(select(Order.id).where(Order.order_number == order_number))
    return r.first() is not None

async def insert_order(db: AsyncSession, data: Dict[str, Any]) -> Order:
    order = Order(**data)
    db.add(order)
    await db.flush()
    return order

async def insert_order_items(db: AsyncSession, items: List[Dict[str, Any]]) -> None:
    await db.execute(insert(OrderItem), items)

async def get_order(db: AsyncSession, order_id: int) -> Optional[Order]:
    r = await db.execute(select(Order).where(Order.id == order_id))
    return r.scalar_one_or_none()

async def get_order_items(db: AsyncSession, order_ids: Iterable[int]) -> Dict[int, List[OrderItem]]:
    ids = list(order_ids)
    out: Dict[int, List[OrderItem]] = {oid: [] for oid in ids}
    if not ids:
        return out
    r = await db.execute(select(OrderItem).where(OrderItem.order_id.in_(ids)).order_by(OrderItem.id))
    for item in r.scalars().all():
        out.setdefault(item.order_id, []).append(item)
    return out

async def get_orders_for_user(db: AsyncSession, user_id: str, limit: Optional[int] = None) -> List[Order]:
    q = select(Order).where(Order.user_id == user_id).order_by(Order.created_at.desc(), Order.id.desc())
    if limit:
        q = q.limit(limit)
    r = await db.execute(q)
    return r.scalars().all()

async def list_orders(db: AsyncSession, status: Optional[str] = None, limit: int = 500) -> List[Order]:
    q = select(Order)
    if status:
        q = q.where(Order.status == status)
    q = q.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit)
    r = await db.execute(q)
    return r.scalars().all()

async def update_order_status(db: AsyncSession, order_id: int, status: str) -> int:
    r = await db.execute(
        update(Order).where(Order.id == order_id)
        .values(status=status, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    return r.rowcount

async def delete_order_items(db: AsyncSession, order_ids: Iterable[int]) -> int:
    ids = list(order_ids)
    if not ids:
        return 0
    r = await db.execute(delete(OrderItem).where(OrderItem.order_id.in_(ids)))
    return r.rowcount

async def delete_order(db: AsyncSession, order_id: int) -> int:
    r = await db.execute(delete(Order).where(Order.id == order_id))
    return r.rowcount

async def delete_orders_for_user(db: AsyncSession, user_id: str) -> int:
    r = await db.execute(delete(Order).where(Order.user_id == user_id))
    return r.rowcount


# ---------- chat ----------
async def list_conversations(db: AsyncSession, user_id: str, is_admin: bool, archived: bool = False,
                             limit: int = 50) -> List[ChatConversation]:
    q = select(ChatConversation)
    if archived:
        q = q.where(ChatConversation.deleted_by_admin.is_(True))
    elif is_admin:
        q = q.where(ChatConversation.deleted_by_admin.is_(False))
    else:
        q = q.where(ChatConversation.deleted_by_user.is_(False), ChatConversation.deleted_by_admin.is_(False))
    if not is_admin:
        q = q.where(ChatConversation.user_id == user_id)
    q = q.order_by(ChatConversation.updated_at.desc(), ChatConversation.id.desc()).limit(limit)
    r = await db.execute(q)
    return r.scalars().all()

async def get_conversation(db: AsyncSession, conversation_id: int) -> Optional[ChatConversation]:
    r = await db.execute(select(ChatConversation).where(ChatConversation.id == conversation_id))
    return r.scalar_one_or_none()

async def insert_conversation(db: AsyncSession, data: Dict[str, Any]) -> ChatConversation:
    conv = ChatConversation(**data)
    db.add(conv)
    await db.flush()
    return conv

async def update_conversation(db: AsyncSession, conversation_id: int, values: Dict[str, Any]) -> Optional[ChatConversation]:
    values = {**values, "updated_at": datetime.utcnow()}
    await db.execute(
        update(ChatConversation).where(ChatConversation.id == conversation_id).values(**values)
        .execution_options(synchronize_session=False)
    )
    conv = await get_conversation(db, conversation_id)
    if conv is not None:
        await db.refresh(conv)
    return conv

async def insert_message(db: AsyncSession, data: Dict[str, Any]) -> ChatMessage:
    msg = ChatMessage(**data)
    db.add(msg)
    await db.flush()
    return msg

async def list_messages(db: AsyncSession, conversation_id: int) -> List[ChatMessage]:
    q = select(ChatMessage).where(ChatMessage.conversation_id == conversation_id).order_by(ChatMessage.created_at, ChatMessage.id)
    r = await db.execute(q)
    return r.scalars().all()

async def unread_counts(db: AsyncSession, conversation_ids: List[int], reader_id: str) -> Dict[int, int]:
    if not conversation_ids:
        return {}
    q = (
        select(ChatMessage.conversation_id, func.count(ChatMessage.id))
        .where(
            ChatMessage.conversation_id.in_(conversation_ids),
            ChatMessage.read.is_(False),
            ChatMessage.sender_id != reader_id,
        )
        .group_by(ChatMessage.conversation_id)
    )
    r = await db.execute(q)
    return dict(r.all())

async def latest_messages(db: AsyncSession, conversation_ids: List[int]) -> Dict[int, ChatMessage]:
    if not conversation_ids:
        return {}
    q = (
        select(ChatMessage)
        .where(ChatMessage.conversation_id.in_(conversation_ids))
        .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
    )
    r = await db.execute(q)
    latest: Dict[int, ChatMessage] = {}
    for msg in r.scalars().all():
        latest.setdefault(msg.conversation_id, msg)
    return latest

async def mark_messages_read(db: AsyncSession, conversation_id: int, reader_id: str) -> int:
    r = await db.execute(
        update(ChatMessage)
        .where(ChatMessage.conversation_id == conversation_id, ChatMessage.sender_id != reader_id)
        .values(read=True)
        .execution_options(synchronize_session=False)
    )
    return r.rowcount

async def delete_conversation(db: AsyncSession, conversation_id: int) -> int:
    await db.execute(delete(ChatMessage).where(ChatMessage.conversation_id == conversation_id))
    r = await db.execute(delete(ChatConversation).where(ChatConversation.id == conversation_id))
    return r.rowcount

async def delete_chat_messages_for_user(db: AsyncSession, user_id: str) -> int:
    """Messages the user sent plus everything inside the user's own conversations."""
    own = select(ChatConversation.id).where(ChatConversation.user_id == user_id)
    r = await db.execute(
        delete(ChatMessage).where(or_(ChatMessage.sender_id == user_id, ChatMessage.conversation_id.in_(own)))
    )
    return r.rowcount

async def delete_chat_conversations_for_user(db: AsyncSession, user_id: str) -> int:
    r = await db.execute(delete(ChatConversation).where(ChatConversation.user_id == user_id))
    return r.rowcount


# ---------- deals ----------
async def list_active_deals(db: AsyncSession, now: datetime, status: str = "active", featured: bool = False,
                            deal_type: Optional[str] = None, limit: Optional[int] = None) -> List[Deal]:
    q = select(Deal).where(Deal.status == status, Deal.end_date >= now, Deal.start_date <= now)
    if featured:
        q = q.where(Deal.is_featured.is_(True))
    if deal_type:
        q = q.where(Deal.deal_type == deal_type)
    q = q.order_by(Deal.created_at.desc(), Deal.id.desc())
    if limit:
        q = q.limit(limit)
    r = await db.execute(q)
    return r.scalars().all()

async def list_deals(db: AsyncSession, offset: int, limit: int, status: Optional[str] = None,
                     deal_type: Optional[str] = None) -> List[Deal]:
    q = select(Deal)
    if status:
        q = q.where(Deal.status == status)
    if deal_type:
        q = q.where(Deal.deal_type == deal_type)
    q = q.order_by(Deal.created_at.desc(), Deal.id.desc()).offset(offset).limit(limit)
    r = await db.execute(q)
    return r.scalars().all()

async def count_deals(db: AsyncSession, status: Optional[str] = None, deal_type: Optional[str] = None) -> int:
    q = select(func.count(Deal.id))
    if status:
        q = q.where(Deal.status == status)
    if deal_type:
        q = q.where(Deal.deal_type == deal_type)
    r = await db.execute(q)
    return r.scalar_one()

async def get_deal(db: AsyncSession, deal_id: int) -> Optional[Deal]:
    r = await db.execute(select(Deal).where(Deal.id == deal_id))
    return r.scalar_one_or_none()

async def deal_products_map(db: AsyncSession, deal_ids: List[int]) -> Dict[int, List[Product]]:
    out: Dict[int, List[Product]] = {d: [] for d in deal_ids}
    if not deal_ids:
        return out
    q = (
        select(DealProduct.deal_id, Product)
        .join(Product, Product.id == DealProduct.product_id)
        .where(DealProduct.deal_id.in_(deal_ids))
        .order_by(DealProduct.id)
    )
    r = await db.execute(q)
    for deal_id, product in r.all():
        out.setdefault(deal_id, []).append(product)
    return out

async def deal_categories_map(db: AsyncSession, deal_ids: List[int]) -> Dict[int, List[Category]]:
    out: Dict[int, List[Category]] = {d: [] for d in deal_ids}
    if not deal_ids:
        return out
    q = (
        select(DealCategory.deal_id, Category)
        .join(Category, Category.id == DealCategory.category_id)
        .where(DealCategory.deal_id.in_(deal_ids))
        .order_by(DealCategory.id)
    )
    r = await db.execute(q)
    for deal_id, category in r.all():
        out.setdefault(deal_id, []).append(category)
    return out

async def insert_deal(db: AsyncSession, data: Dict[str, Any]) -> Deal:
    deal = Deal(**data)
    db.add(deal)
    await db.flush()
    return deal

async def update_deal(db: AsyncSession, deal_id: int, values: Dict[str, Any]) -> Optional[Deal]:
    values = {**values, "updated_at": datetime.utcnow()}
    r = await db.execute(
        update(Deal).where(Deal.id == deal_id).values(**values)
        .execution_options(synchronize_session=False)
    )
    if r.rowcount == 0:
        return None
    deal = await get_deal(db, deal_id)
    await db.refresh(deal)
    return deal

async def replace_deal_products(db: AsyncSession, deal_id: int, product_ids: List[int]) -> None:
    await db.execute(delete(DealProduct).where(DealProduct.deal_id == deal_id))
    if product_ids:
        await db.execute(insert(DealProduct), [{"deal_id": deal_id, "product_id": pid} for pid in product_ids])

async def replace_deal_categories(db: AsyncSession, deal_id: int, category_ids: List[int]) -> None:
    await db.execute(delete(DealCategory).where(DealCategory.deal_id == deal_id))
    if category_ids:
        await db.execute(insert(DealCategory), [{"deal_id": deal_id, "category_id": cid} for cid in category_ids])

async def delete_deal(db: AsyncSession, deal_id: int) -> int:
    await db.execute(delete(DealProduct).where(DealProduct.deal_id == deal_id))
    await db.execute(delete(DealCategory).where(DealCategory.deal_id == deal_id))
    r = await db.execute(delete(Deal).where(Deal.id == deal_id))
    return r.rowcount


# ---------- revenue / stats ----------
async def insert_revenue_adjustment(db: AsyncSession, data: Dict[str, Any]) -> RevenueAdjustment:
    adj = RevenueAdjustment(**data)
    db.add(adj)
    await db.flush()
    return adj

async def list_revenue_adjustments(db: AsyncSession) -> List[RevenueAdjustment]:
    r = await db.execute(select(RevenueAdjustment).order_by(RevenueAdjustment.created_at.desc(), RevenueAdjustment.id.desc()))
    return r.scalars().all()

async def count_rows(db: AsyncSession, model, *where) -> int:
    q = select(func.count()).select_from(model)
    if where:
        q = q.where(*where)
    r = await db.execute(q)
    return r.scalar_one()

async def sum_order_totals(db: AsyncSession, since: Optional[datetime] = None,
                           until: Optional[datetime] = None) -> Decimal:
    q = select(func.coalesce(func.sum(Order.total_amount), 0))
    if since is not None:
        q = q.where(Order.created_at >= since)
    if until is not None:
        q = q.where(Order.created_at < until)
    r = await db.execute(q)
    return money(r.scalar_one())

async def net_revenue_adjustments(db: AsyncSession) -> Decimal:
    r = await db.execute(select(RevenueAdjustment.adjustment_type, RevenueAdjustment.amount))
    total = Decimal("0")
    for kind, amount in r.all():
        total += money(amount) if kind == "add" else -money(amount)
    return total
