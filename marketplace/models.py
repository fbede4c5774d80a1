# marketplace/models.py
from datetime import datetime
import uuid

from sqlalchemy import (
    Column, Integer, String, Numeric, JSON, TIMESTAMP, Text, Boolean, ForeignKey, func,
)
from .db import Base


def gen_uuid():
    return str(uuid.uuid4())


class AuthUser(Base):
    """Identity record for the local identity provider."""
    __tablename__ = "auth_users"
    id = Column(String, primary_key=True, default=gen_uuid)
    email = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    last_sign_in_at = Column(TIMESTAMP, nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, server_default=func.now())


class UserProfile(Base):
    __tablename__ = "user_profiles"
    # same value as the identity id
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    account_type = Column(String, nullable=False, default="personal")  # business | personal
    company_name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    credit_limit = Column(Numeric(12, 2), nullable=False, default=0)
    credit_used = Column(Numeric(12, 2), nullable=False, default=0)
    is_admin = Column(Boolean, nullable=False, default=False)
    status = Column(String, nullable=False, default="active")  # active | inactive | suspended
    address_street = Column(String, nullable=True)
    address_city = Column(String, nullable=True)
    address_state = Column(String, nullable=True)
    address_zip = Column(String, nullable=True)
    temporary_password = Column(Boolean, nullable=False, default=False)
    last_login = Column(TIMESTAMP, nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, server_default=func.now())
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow)


class Category(Base):
    __tablename__ = "categories"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, unique=True, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, server_default=func.now())


class Product(Base):
    __tablename__ = "products"
    id = Column(Integer, primary_key=True, autoincrement=True)
    sku = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    category_id = Column(Integer, ForeignKey("categories.id"), index=True, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    stock_quantity = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="active")  # active | inactive | out_of_stock
    image_url = Column(String, nullable=True)
    is_featured = Column(Boolean, nullable=False, default=False)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, server_default=func.now())
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow)


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(String, nullable=False, default="Credit Line")
    status = Column(String, nullable=False, default="pending")
    shipping_address = Column(String, nullable=True)
    billing_address = Column(String, nullable=True)
    tracking_number = Column(String, nullable=True)
    estimated_delivery = Column(TIMESTAMP, nullable=True)
    delivery_date = Column(TIMESTAMP, nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, server_default=func.now())
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow)


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), index=True, nullable=False)
    # products can be deleted after the fact, so no FK here
    product_id = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    total_price = Column(Numeric(12, 2), nullable=False)


class Deal(Base):
    __tablename__ = "deals"
    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    deal_type = Column(String, nullable=False)
    discount_type = Column(String, nullable=False)  # percentage | fixed_amount
    discount_value = Column(Numeric(10, 2), nullable=False)
    min_purchase_amount = Column(Numeric(10, 2), nullable=False, default=0)
    max_discount_amount = Column(Numeric(10, 2), nullable=True)
    start_date = Column(TIMESTAMP, nullable=False)
    end_date = Column(TIMESTAMP, nullable=False)
    usage_limit = Column(Integer, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="active")
    is_featured = Column(Boolean, nullable=False, default=False)
    banner_text = Column(String, nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, server_default=func.now())
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow)


class DealProduct(Base):
    __tablename__ = "deal_products"
    id = Column(Integer, primary_key=True, autoincrement=True)
    deal_id = Column(Integer, ForeignKey("deals.id"), index=True, nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), index=True, nullable=False)


class DealCategory(Base):
    __tablename__ = "deal_categories"
    id = Column(Integer, primary_key=True, autoincrement=True)
    deal_id = Column(Integer, ForeignKey("deals.id"), index=True, nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id"), index=True, nullable=False)


class ChatConversation(Base):
    __tablename__ = "chat_conversations"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, index=True, nullable=False)
    subject = Column(String, nullable=True)
    status = Column(String, nullable=False, default="open")  # open | closed | pending
    priority = Column(String, nullable=False, default="medium")  # low | medium | high | urgent
    deleted_by_user = Column(Boolean, nullable=False, default=False)
    deleted_by_admin = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(TIMESTAMP, nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, server_default=func.now())
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow)


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("chat_conversations.id"), index=True, nullable=False)
    sender_id = Column(String, index=True, nullable=False)
    message = Column(Text, nullable=False)
    is_admin = Column(Boolean, nullable=False, default=False)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, server_default=func.now())


class RevenueAdjustment(Base):
    __tablename__ = "revenue_adjustments"
    id = Column(Integer, primary_key=True, autoincrement=True)
    adjustment_type = Column(String, nullable=False)  # add | subtract
    amount = Column(Numeric(12, 2), nullable=False)
    reason = Column(Text, nullable=False)
    related_user_id = Column(String, nullable=True)
    related_order_ids = Column(JSON, nullable=True)
    created_by = Column(String, nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, server_default=func.now())
