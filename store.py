"""Database models and the stores the rest of the app talks to."""
import logging
from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, Session, SQLModel, create_engine, select

from config import FAVORITES_LIMIT, FAVORITES_ORDER_WINDOW

logger = logging.getLogger(__name__)

IDENTITY_EDITABLE_FIELDS = ("name", "email", "phone")
MENU_EDITABLE_FIELDS = ("title", "description", "price", "category", "available")


def utcnow():
    return datetime.now(timezone.utc)


class NotFoundError(LookupError):
    pass


# Database models
class Identity(SQLModel, table=True):
    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str
    email: str = ""
    phone: str = ""
    descriptor: str = ""        # JSON array of DESCRIPTOR_LENGTH floats
    snapshot_image: str = ""    # blob URL or data URI, display only
    registered_at: datetime = Field(default_factory=utcnow)
    last_greeted: Optional[datetime] = None


class MenuItem(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    description: str = ""
    price: float
    category: str = "Beverages"
    image_url: str = ""
    image_path: str = ""
    available: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Order(SQLModel, table=True):
    __tablename__ = "orders"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = "guest"
    user_name: str = "Guest"
    items: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    subtotal: float = 0.0
    tax: float = 0.0
    total_amount: float = 0.0
    status: str = "completed"
    order_date: datetime = Field(default_factory=utcnow)


def make_engine(db_url):
    connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}
    engine = create_engine(db_url, echo=False, connect_args=connect_args)
    SQLModel.metadata.create_all(engine)
    return engine


class IdentityStore:
    def __init__(self, engine):
        self.engine = engine

    @staticmethod
    def new_id():
        return str(uuid4())

    def list(self) -> List[Identity]:
        with Session(self.engine) as session:
            return session.exec(select(Identity).order_by(Identity.registered_at)).all()

    def get(self, identity_id) -> Identity:
        with Session(self.engine) as session:
            identity = session.get(Identity, identity_id)
            if identity is None:
                raise NotFoundError(f"User {identity_id} not found")
            return identity

    def create(self, fields, identity_id=None) -> str:
        identity_id = identity_id or self.new_id()
        identity = Identity(id=identity_id, **fields)
        with Session(self.engine) as session:
            session.add(identity)
            session.commit()
        return identity_id

    def update(self, identity_id, fields) -> Identity:
        """Edit contact fields; the descriptor is never re-enrolled here"""
        with Session(self.engine) as session:
            identity = session.get(Identity, identity_id)
            if identity is None:
                raise NotFoundError(f"User {identity_id} not found")
            for key in IDENTITY_EDITABLE_FIELDS:
                if key in fields and fields[key] is not None:
                    setattr(identity, key, fields[key])
            session.add(identity)
            session.commit()
            session.refresh(identity)
            return identity

    def delete(self, identity_id):
        with Session(self.engine) as session:
            identity = session.get(Identity, identity_id)
            if identity is None:
                raise NotFoundError(f"User {identity_id} not found")
            session.delete(identity)
            session.commit()

    def mark_greeted(self, identity_id):
        with Session(self.engine) as session:
            identity = session.get(Identity, identity_id)
            if identity is None:
                return
            identity.last_greeted = utcnow()
            session.add(identity)
            session.commit()


class MenuStore:
    def __init__(self, engine):
        self.engine = engine

    def list(self, category=None) -> List[MenuItem]:
        """Menu items, newest first"""
        with Session(self.engine) as session:
            query = select(MenuItem)
            if category:
                query = query.where(MenuItem.category == category)
            query = query.order_by(MenuItem.created_at.desc(), MenuItem.id.desc())
            return session.exec(query).all()

    def get(self, item_id) -> MenuItem:
        with Session(self.engine) as session:
            item = session.get(MenuItem, item_id)
            if item is None:
                raise NotFoundError(f"Menu item {item_id} not found")
            return item

    def create(self, fields) -> MenuItem:
        item = MenuItem(**fields)
        with Session(self.engine) as session:
            session.add(item)
            session.commit()
            session.refresh(item)
            return item

    def update(self, item_id, fields) -> MenuItem:
        with Session(self.engine) as session:
            item = session.get(MenuItem, item_id)
            if item is None:
                raise NotFoundError(f"Menu item {item_id} not found")
            for key in MENU_EDITABLE_FIELDS + ("image_url", "image_path"):
                if key in fields and fields[key] is not None:
                    setattr(item, key, fields[key])
            item.updated_at = utcnow()
            session.add(item)
            session.commit()
            session.refresh(item)
            return item

    def delete(self, item_id):
        with Session(self.engine) as session:
            item = session.get(MenuItem, item_id)
            if item is None:
                raise NotFoundError(f"Menu item {item_id} not found")
            session.delete(item)
            session.commit()

    def replace_all(self, items):
        """Clear the menu and insert the given items"""
        with Session(self.engine) as session:
            for existing in session.exec(select(MenuItem)).all():
                session.delete(existing)
            for fields in items:
                session.add(MenuItem(**fields))
            session.commit()
        return len(items)


class OrderStore:
    def __init__(self, engine):
        self.engine = engine

    def create(self, cart, user_id="guest", user_name="Guest") -> Order:
        order = Order(
            user_id=user_id,
            user_name=user_name,
            items=cart.as_order_items(),
            subtotal=cart.subtotal,
            tax=cart.tax,
            total_amount=cart.total,
            status="completed",
        )
        with Session(self.engine) as session:
            session.add(order)
            session.commit()
            session.refresh(order)
            logger.info("Order %s placed by %s: %d items, %.2f", order.id, user_name,
                        cart.item_count, order.total_amount)
            return order

    def list_for_user(self, user_id, limit=10) -> List[Order]:
        with Session(self.engine) as session:
            query = (
                select(Order)
                .where(Order.user_id == user_id)
                .order_by(Order.order_date.desc(), Order.id.desc())
                .limit(limit)
            )
            return session.exec(query).all()

    def frequent_items(self, user_id, window=FAVORITES_ORDER_WINDOW, limit=FAVORITES_LIMIT) -> List[dict]:
        """A customer's usual items: lines from their recent orders ranked by total quantity.

        Each entry is the most recent line for that menu item plus ``total_quantity``.
        Items with equal totals keep the order they were last ordered in.
        """
        totals = {}
        for order in self.list_for_user(user_id, limit=window):
            for line in order.items:
                key = line["menu_item_id"]
                if key in totals:
                    totals[key]["total_quantity"] += line["quantity"]
                else:
                    totals[key] = {**line, "total_quantity": line["quantity"]}

        ranked = sorted(totals.values(), key=lambda entry: entry["total_quantity"], reverse=True)
        return ranked[:limit]
