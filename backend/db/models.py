from datetime import datetime
from sqlalchemy import (
    Column, Integer, Text, Float, Boolean, ForeignKey, Index,
    DateTime, text,
)
from sqlalchemy.orm import relationship
from db.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(Text, unique=True, nullable=False)
    username_normalized = Column(Text, unique=True, nullable=False)
    password_hash = Column(Text, nullable=False)
    display_name = Column(Text, nullable=False)
    email = Column(Text)
    contact_number = Column(Text)
    address_line1 = Column(Text)
    address_line2 = Column(Text)
    pincode = Column(Text)
    role = Column(Text, nullable=False, default="user")  # user | admin
    token_version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    orders = relationship("Order", back_populates="user", cascade="all, delete-orphan")
    subscriptions = relationship("Subscription", back_populates="user", cascade="all, delete-orphan")


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    payment_status = Column(Text)  # PAID | FAILED, unset until the gateway confirms
    acceptance_status = Column(Text)  # PENDING_REVIEW | CONFIRMED | DECLINED
    current_status = Column(Text, default="PAID")  # PAID | CONFIRMED | PREPARING | OUT_FOR_DELIVERY | DELIVERED
    status_history = Column(Text)  # JSON array of {status, changedAt, changedBy}
    delivery_address = Column(Text)  # JSON object snapshot
    subtotal = Column(Float, nullable=False, default=0.0)
    delivery_fee = Column(Float, nullable=False, default=0.0)
    total = Column(Float, nullable=False, default=0.0)
    admin_notes = Column(Text)
    moved_to_kitchen_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="orders")
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    cart_item_id = Column(Text, nullable=False, unique=True)  # doubles as the subscription id
    item_type = Column(Text, nullable=False)  # meal | addon | byo
    plan = Column(Text, nullable=False)  # single | trial | weekly | monthly
    title = Column(Text)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Float, nullable=False, default=0.0)
    meal_id = Column(Text)
    addon_id = Column(Text)
    start_date = Column(Text)  # YYYY-MM-DD
    delivery_time = Column(Text)  # HH:mm or h:mm AM/PM
    immediate_delivery = Column(Boolean, nullable=False, default=False)

    order = relationship("Order", back_populates="items")


class Subscription(Base):
    """DB-backed customMeal/addon subscription record."""

    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(Text, nullable=False, unique=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    kind = Column(Text, nullable=False)  # customMeal | addon
    frequency = Column(Text, nullable=False)  # weekly | monthly | trial
    status = Column(Text, nullable=False, default="active")  # active | paused
    title = Column(Text)
    start_date = Column(Text)  # YYYY-MM-DD
    servings = Column(Integer)
    price = Column(Float)
    selections = Column(Text)  # JSON array
    pause_start_date = Column(Text)
    pause_end_date = Column(Text)
    pause_reason = Column(Text)
    pause_request_id = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="subscriptions")


class Delivery(Base):
    __tablename__ = "deliveries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    subscription_id = Column(Text)  # unset for combined single/trial deliveries
    order_id = Column(Integer, ForeignKey("orders.id"))
    source_cart_item_id = Column(Text)  # "__ORDER__" for combined deliveries
    date = Column(Text, nullable=False)  # YYYY-MM-DD, local calendar date
    time = Column(Text, nullable=False, default="12:00")  # HH:mm
    group_key = Column(Text, nullable=False, unique=True)
    status = Column(Text, nullable=False, default="PENDING")
    status_history = Column(Text)  # JSON array of {status, changedAt, changedBy}
    items = Column(Text)  # JSON array snapshot for kitchen display
    address = Column(Text)  # JSON object snapshot
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class PauseSkipRequest(Base):
    __tablename__ = "pause_skip_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_type = Column(Text, nullable=False)  # PAUSE | SKIP | WITHDRAW_PAUSE
    status = Column(Text, nullable=False, default="PENDING")  # PENDING | APPROVED | DECLINED | WITHDRAWN
    kind = Column(Text, nullable=False, default="unknown")  # customMeal | addon | mealPack | delivery | unknown
    subscription_id = Column(Text)
    delivery_id = Column(Integer)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    reason = Column(Text)
    pause_start_date = Column(Text)
    pause_end_date = Column(Text)
    skip_date = Column(Text)
    linked_to = Column(Integer, ForeignKey("pause_skip_requests.id"))
    decided_by = Column(Integer, ForeignKey("users.id"))
    decided_at = Column(DateTime)
    decided_on = Column(Text)  # local YYYY-MM-DD of the decision
    admin_note = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", foreign_keys=[user_id])


class AdminAuditLog(Base):
    __tablename__ = "admin_audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    admin_user_id = Column(Integer, ForeignKey("users.id"))
    target_user_id = Column(Integer, ForeignKey("users.id"))
    action = Column(Text, nullable=False)
    details_json = Column(Text)
    success = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


# Indexes
Index("idx_users_role", User.role)
Index("idx_orders_user_date", Order.user_id, Order.created_at)
Index("idx_order_items_order", OrderItem.order_id)
Index("idx_subscriptions_user", Subscription.user_id, Subscription.created_at)
Index("idx_deliveries_user_sub_date", Delivery.user_id, Delivery.subscription_id, Delivery.date)
Index("idx_deliveries_date_status", Delivery.date, Delivery.status)
Index("idx_pause_skip_user_date", PauseSkipRequest.user_id, PauseSkipRequest.created_at)
Index("idx_pause_skip_status_date", PauseSkipRequest.status, PauseSkipRequest.created_at)
Index("idx_pause_skip_linked", PauseSkipRequest.request_type, PauseSkipRequest.linked_to)
Index(
    "uq_pause_skip_active_skip_per_delivery",
    PauseSkipRequest.delivery_id,
    unique=True,
    sqlite_where=text("request_type = 'SKIP' AND status IN ('PENDING', 'APPROVED')"),
    postgresql_where=text("request_type = 'SKIP' AND status IN ('PENDING', 'APPROVED')"),
)
Index(
    "uq_pause_skip_pending_withdraw_per_pause",
    PauseSkipRequest.linked_to,
    unique=True,
    sqlite_where=text("request_type = 'WITHDRAW_PAUSE' AND status = 'PENDING'"),
    postgresql_where=text("request_type = 'WITHDRAW_PAUSE' AND status = 'PENDING'"),
)
Index("idx_admin_audit_created_at", AdminAuditLog.created_at)
