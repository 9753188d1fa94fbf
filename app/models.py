from datetime import date, datetime

from sqlalchemy import JSON, Date, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    username: Mapped[str] = mapped_column(String(128), unique=True)


class Branch(Base):
    __tablename__ = "branches"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(128), unique=True)
    state: Mapped[str | None] = mapped_column(Text)
    market_share: Mapped[float | None] = mapped_column(Float)
    penetration: Mapped[float | None] = mapped_column(Float)


class Product(Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(primary_key=True)
    material: Mapped[str] = mapped_column(String(128), unique=True)
    tonnage: Mapped[float | None] = mapped_column(Float)
    star: Mapped[int | None] = mapped_column(Integer)
    technology: Mapped[str | None] = mapped_column(Text)
    price: Mapped[float | None] = mapped_column(Float)
    factory_stock: Mapped[int | None] = mapped_column(Integer)


class InventoryRecord(Base):
    __tablename__ = "inventory"
    __table_args__ = (UniqueConstraint("product_id", "branch_id", name="inventory_product_branch_key"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"))
    branch_id: Mapped[int] = mapped_column(ForeignKey("branches.id", ondelete="CASCADE"))
    op_stock: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    avl_stock: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    transit: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    billing: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    month_plan: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    demand_plan: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    sku_opening_stock: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    goods_in_transit: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    final_balance_produce: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    mtd_invoicing: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    category: Mapped[str | None] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UploadHistory(Base):
    __tablename__ = "upload_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), index=True)
    filename: Mapped[str | None] = mapped_column(String(255))
    upload_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
    records_processed: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    records_new: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    records_updated: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    records_skipped: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    date_range_start: Mapped[date | None] = mapped_column(Date)
    date_range_end: Mapped[date | None] = mapped_column(Date)
    branches_affected: Mapped[list | None] = mapped_column(JSON)
    summary: Mapped[dict | None] = mapped_column(JSON)
    processing_time_ms: Mapped[int | None] = mapped_column(Integer)
