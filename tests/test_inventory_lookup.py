from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from unittest import TestCase

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pharmacy_assistant.integrations.inventory import Base, Category, InventoryStore, Product


class InventoryLookupTests(TestCase):
    def setUp(self) -> None:
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(engine)
        self.session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        with self.session_factory() as db:
            analgesics = Category(id=1, name="Analgesics")
            db.add(analgesics)
            db.add_all(
                [
                    Product(
                        id=1,
                        pharmacy_id=7,
                        name="Biogesic 500 mg Tablet",
                        generic_name="Paracetamol",
                        brand_name="Biogesic",
                        barcode="4800010000011",
                        dosage_form="tablet",
                        quantity=120,
                        selling_price=Decimal("4.5"),
                        unit="tablet",
                        expiry_date=date(2027, 3, 31),
                        category_id=1,
                        updated_at=datetime(2026, 9, 1, 8, 0),
                    ),
                    Product(
                        id=2,
                        pharmacy_id=7,
                        name="Paracetamol 250 mg/5 ml Syrup",
                        generic_name="Paracetamol",
                        quantity=0,
                        selling_price=Decimal("85"),
                        unit="bottle",
                        updated_at=datetime(2026, 10, 1, 8, 0),
                    ),
                    Product(
                        id=3,
                        pharmacy_id=7,
                        name="Tempra 500 mg",
                        generic_name="Paracetamol",
                        quantity=40,
                        selling_price=Decimal("6"),
                        deleted_at=datetime(2026, 8, 1),
                        updated_at=datetime(2026, 10, 2, 8, 0),
                    ),
                    Product(
                        id=4,
                        pharmacy_id=9,
                        name="Paracetamol 500 mg",
                        generic_name="Paracetamol",
                        quantity=15,
                        selling_price=Decimal("2"),
                        updated_at=datetime(2026, 10, 3, 8, 0),
                    ),
                ]
            )
            db.commit()
        self.store = InventoryStore(self.session_factory, max_results=5)

    def test_lookup_matches_generic_name_ignoring_strength(self) -> None:
        facts = self.store.lookup("paracetamol 500 mg", 7)

        self.assertEqual([fact.id for fact in facts], [2, 1])

    def test_soft_deleted_and_other_pharmacy_rows_are_excluded(self) -> None:
        ids = {fact.id for fact in self.store.lookup("paracetamol", 7)}

        self.assertNotIn(3, ids)
        self.assertNotIn(4, ids)

    def test_barcode_match_is_exact(self) -> None:
        facts = self.store.lookup("4800010000011", 7)

        self.assertEqual([fact.id for fact in facts], [1])
        self.assertEqual(self.store.lookup("480001", 7), [])

    def test_fact_fields_are_formatted_for_display(self) -> None:
        fact = self.store.lookup("Biogesic", 7)[0]

        self.assertEqual(fact.selling_price, "4.50")
        self.assertEqual(fact.expiry_date, "2027-03-31")
        self.assertEqual(fact.category_name, "Analgesics")
        self.assertTrue(fact.in_stock)
        payload = fact.to_payload()
        self.assertEqual(payload["brandName"], "Biogesic")
        self.assertEqual(payload["dosageForm"], "tablet")

    def test_out_of_stock_product_defaults(self) -> None:
        fact = next(item for item in self.store.lookup("syrup", 7) if item.id == 2)

        self.assertFalse(fact.in_stock)
        self.assertEqual(fact.to_payload()["dosageForm"], "Unknown")
        self.assertIsNone(fact.category_name)

    def test_blank_subject_returns_nothing(self) -> None:
        self.assertEqual(self.store.lookup("   ", 7), [])

    def test_results_are_capped(self) -> None:
        store = InventoryStore(self.session_factory, max_results=1)

        self.assertEqual(len(store.lookup("paracetamol", 7)), 1)
