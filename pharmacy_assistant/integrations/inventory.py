from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
import logging
import re
from typing import Any

from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    create_engine,
    func,
    or_,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from pharmacy_assistant.types import InventoryFact

LOGGER = logging.getLogger("pipeline.inventory")

_STRENGTH_RE = re.compile(r"\b\d+(?:\.\d+)?\s?(?:mg|ml|mcg|g)\b", flags=re.IGNORECASE)


class Base(DeclarativeBase):
    pass


class Category(Base):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120))


class Product(Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    pharmacy_id: Mapped[int] = mapped_column(Integer, index=True)
    name: Mapped[str] = mapped_column(String(255))
    generic_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    brand_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    barcode: Mapped[str | None] = mapped_column(String(64), nullable=True)
    dosage_form: Mapped[str | None] = mapped_column(String(64), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, default=0)
    selling_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    unit: Mapped[str | None] = mapped_column(String(32), nullable=True)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    category_id: Mapped[int | None] = mapped_column(ForeignKey("categories.id"), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    category: Mapped[Category | None] = relationship(Category, lazy="joined")


class InventoryStore:
    """Read-only product lookups scoped to one pharmacy."""

    def __init__(self, session_factory: sessionmaker, *, max_results: int = 5) -> None:
        self._session_factory = session_factory
        self.max_results = max(1, int(max_results))

    @classmethod
    def from_url(cls, database_url: str, *, max_results: int = 5) -> "InventoryStore":
        kwargs: dict[str, Any] = {"pool_pre_ping": True}
        if database_url.startswith("sqlite") and ":memory:" in database_url:
            kwargs = {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
        engine = create_engine(database_url, **kwargs)
        return cls(sessionmaker(bind=engine, expire_on_commit=False), max_results=max_results)

    def lookup(self, subject: str, pharmacy_id: int) -> list[InventoryFact]:
        """Find live products whose names contain the subject or whose barcode equals it."""
        term = " ".join(str(subject or "").split())
        if not term:
            return []
        name_term = _STRENGTH_RE.sub(" ", term).strip() or term
        pattern = f"%{name_term.lower()}%"
        with self._session_factory() as db:
            rows = self._query(db, pattern=pattern, barcode=term, pharmacy_id=pharmacy_id)
            facts = [product_to_fact(row) for row in rows]
        LOGGER.info(
            "[PIPELINE] Inventory lookup | pharmacy_id=%s term='%s' matches=%s",
            pharmacy_id,
            name_term,
            len(facts),
        )
        return facts

    def _query(self, db: Session, *, pattern: str, barcode: str, pharmacy_id: int) -> list[Product]:
        return (
            db.query(Product)
            .filter(
                Product.pharmacy_id == int(pharmacy_id),
                Product.deleted_at.is_(None),
                or_(
                    func.lower(Product.name).like(pattern),
                    func.lower(Product.generic_name).like(pattern),
                    func.lower(Product.brand_name).like(pattern),
                    Product.barcode == barcode,
                ),
            )
            .order_by(Product.updated_at.desc())
            .limit(self.max_results)
            .all()
        )


def product_to_fact(product: Product) -> InventoryFact:
    return InventoryFact(
        id=int(product.id),
        name=product.name,
        quantity=int(product.quantity or 0),
        selling_price=f"{Decimal(product.selling_price or 0):.2f}",
        generic_name=product.generic_name,
        brand_name=product.brand_name,
        dosage_form=product.dosage_form,
        unit=product.unit,
        expiry_date=product.expiry_date.isoformat() if product.expiry_date else None,
        category_name=product.category.name if product.category else None,
    )
