from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Float,
    Boolean,
    ForeignKey,
    Index,
)
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


Base = declarative_base()


# ----------------------------
# Order statuses
# ----------------------------
PENDING = "PENDING"
PAID = "PAID"
FULFILLED = "FULFILLED"
FAILED = "FAILED"
CANCELED = "CANCELED"

ORDER_STATUSES = (PENDING, PAID, FULFILLED, FAILED, CANCELED)

# allowed moves; nothing leaves FULFILLED, FAILED or CANCELED
TRANSITIONS = {
    PENDING: {PAID, FAILED, CANCELED},
    PAID: {FULFILLED, FAILED, CANCELED},
    FULFILLED: set(),
    FAILED: set(),
    CANCELED: set(),
}


# ----------------------------
# ORM models
# ----------------------------
class Product(Base):
    __tablename__ = "products"
    id = Column(Integer, primary_key=True, autoincrement=True)
    slug = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    price_idr = Column(Integer, nullable=False)  # whole rupiah
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, nullable=False, unique=True)
    buyer_id = Column(String, nullable=False)  # telegram chat id
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    price_idr = Column(Integer, nullable=False)

    # PENDING | PAID | FULFILLED | FAILED | CANCELED
    status = Column(String, nullable=False, default=PENDING)
    payment_ref = Column(String, nullable=True)
    payment_url = Column(String, nullable=True)
    qr_string = Column(Text, nullable=True)

    # set together with status=FULFILLED, never changed afterwards
    delivered_payload = Column(Text, nullable=True)
    credential_id = Column(
        Integer, ForeignKey("credentials.id"), nullable=True, unique=True
    )

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("ix_orders_status_created", "status", "created_at"),
        Index("ix_orders_buyer_product", "buyer_id", "product_id"),
    )

    def as_dict(self, with_payload: bool = True) -> dict:
        d = {
            "order_id": self.order_id,
            "buyer_id": self.buyer_id,
            "product_id": self.product_id,
            "price_idr": self.price_idr,
            "status": self.status,
            "payment_ref": self.payment_ref,
            "payment_url": self.payment_url,
            "qr_string": self.qr_string,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "paid_at": self.paid_at,
        }
        if with_payload:
            d["delivered_payload"] = self.delivered_payload
        return d


class Credential(Base):
    __tablename__ = "credentials"
    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    payload = Column(Text, nullable=False)
    used = Column(Boolean, nullable=False, default=False)
    used_at = Column(Float, nullable=True)
    # order the credential went to; set once, together with used=True
    order_id = Column(String, nullable=True, unique=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("ix_credentials_pick", "product_id", "used", "created_at"),
    )


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)


async def init_models(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await create_schema(conn)
