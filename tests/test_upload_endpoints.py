from datetime import datetime
from io import BytesIO
from pathlib import Path
import random
import sys

import pytest
from fastapi.testclient import TestClient
from openpyxl import Workbook
from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app import inventory_import, main
from app.database import Base
from app.errors import ReferenceCreationFailure, StorageFailure, describe_db_error
from app.inventory_import import classify_record, derive_stock_fields, import_inventory_upload

HEADERS = ["Date", "Branch", "Model", "Billing", "Star Rating", "Ton", "Technology"]


@pytest.fixture()
def client_and_engine(tmp_path):
    db_path = tmp_path / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def register_now(dbapi_conn, _):
        dbapi_conn.create_function("NOW", 0, lambda: datetime.now().isoformat(sep=" "))

    SessionTesting = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    with engine.begin() as conn:
        conn.execute(text("INSERT INTO users (id, username) VALUES (1, 'planner')"))

    def override_get_db():
        db = SessionTesting()
        try:
            yield db
        finally:
            db.close()

    original_lifespan = main.app.router.lifespan_context

    async def _noop_lifespan(_app):
        yield

    main.app.router.lifespan_context = _noop_lifespan
    main.app.dependency_overrides[main.get_db] = override_get_db

    client = TestClient(main.app)
    try:
        yield client, engine
    finally:
        client.close()
        main.app.dependency_overrides.clear()
        main.app.router.lifespan_context = original_lifespan
        engine.dispose()


@pytest.fixture()
def session_factory(client_and_engine):
    _, engine = client_and_engine
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def _build_workbook_bytes(rows, headers=HEADERS):
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Stock"
    sheet.append(headers)
    for row in rows:
        sheet.append(row)
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def _upload(client, workbook_bytes, filename="daily_stock.xlsx", user_id="1"):
    return client.post(
        "/upload",
        headers={"X-User-Id": user_id},
        files={
            "file": (
                filename,
                workbook_bytes,
                "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            )
        },
    )


def seed_inventory(engine, material: str, branch: str, billing: int):
    with engine.begin() as conn:
        conn.execute(
            text("INSERT INTO branches (id, name, state, market_share, penetration) VALUES (1, :name, 'TN', 20, 60)"),
            {"name": branch},
        )
        conn.execute(
            text(
                """
                INSERT INTO products (id, material, tonnage, star, technology, price, factory_stock)
                VALUES (1, :material, 1.5, 5, 'Inverter', 42000, 12)
                """
            ),
            {"material": material},
        )
        conn.execute(
            text(
                """
                INSERT INTO inventory (
                  product_id, branch_id, op_stock, avl_stock, transit, billing, month_plan,
                  demand_plan, sku_opening_stock, goods_in_transit, final_balance_produce, mtd_invoicing,
                  category, updated_at
                )
                VALUES (1, 1, 10, 10, 0, :billing, 0, 0, 0, 0, 0, 0, '', NOW())
                """
            ),
            {"billing": billing},
        )


def _count(engine, table: str) -> int:
    with engine.begin() as conn:
        return conn.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar_one()


def test_upload_requires_user_identity(client_and_engine):
    client, _ = client_and_engine

    response = client.post(
        "/upload",
        files={"file": ("daily.xlsx", _build_workbook_bytes([]), "application/octet-stream")},
    )

    assert response.status_code == 401


def test_upload_without_data_rows_is_rejected(client_and_engine):
    client, engine = client_and_engine

    response = _upload(client, _build_workbook_bytes([]))

    assert response.status_code == 400
    assert response.json()["details"] == "No data found in the uploaded file."
    assert _count(engine, "upload_history") == 0


def test_upload_creates_entities_inventory_and_history(client_and_engine):
    client, engine = client_and_engine

    response = _upload(
        client,
        _build_workbook_bytes(
            [
                ["05-03-2024", "Madurai", "ac-new-1", 10, "4*", "1.5 Tr", "Inverter"],
                ["05-03-2024", "Madurai", "AC-NEW-1", 15, "", "", ""],
                ["06-03-2024", "Madurai", "", 3, "", "", ""],
            ]
        ),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["recordsProcessed"] == 2
    assert body["recordsNew"] == 1
    assert body["recordsUpdated"] == 0
    assert body["recordsSkipped"] == 0
    assert body["createdEntities"] == {"branches": 1, "products": 1}
    assert body["branchesAffected"] == ["MADURAI"]
    assert body["dateRange"] == {"start": "2024-03-05", "end": "2024-03-05"}
    assert body["summary"].startswith("Processed 2 records in ")

    with engine.begin() as conn:
        product = conn.execute(
            text("SELECT id, material, tonnage, star, technology, price, factory_stock FROM products")
        ).mappings().one()
        branch = conn.execute(text("SELECT id, name, state, market_share, penetration FROM branches")).mappings().one()
        inventory = conn.execute(
            text("SELECT product_id, branch_id, billing, month_plan, avl_stock, transit, op_stock FROM inventory")
        ).mappings().one()
        history = conn.execute(
            text("SELECT user_id, filename, records_processed, records_new FROM upload_history")
        ).mappings().one()

    assert product["material"] == "AC-NEW-1"
    assert product["tonnage"] == 1.5
    assert product["star"] == 4
    assert product["technology"] == "Inverter"
    assert product["price"] == 35000
    assert product["factory_stock"] == 0
    assert branch["name"] == "MADURAI"
    assert branch["state"] == "Unknown"
    assert inventory["product_id"] == product["id"]
    assert inventory["branch_id"] == branch["id"]
    assert inventory["billing"] == 25
    assert inventory["month_plan"] == 80
    assert 38 <= inventory["avl_stock"] <= 58
    assert 8 <= inventory["transit"] <= 18
    assert inventory["op_stock"] == max(0, inventory["avl_stock"] + 25 - inventory["transit"])
    assert history["user_id"] == 1
    assert history["filename"] == "daily_stock.xlsx"
    assert history["records_processed"] == 2
    assert history["records_new"] == 1


def test_unknown_item_code_creates_exactly_one_product(client_and_engine):
    client, engine = client_and_engine
    seed_inventory(engine, "AC-100", "CHENNAI", 100)

    response = _upload(
        client,
        _build_workbook_bytes(
            [
                ["05-03-2024", "Chennai", "AC-100", 100, "", "", ""],
                ["05-03-2024", "Chennai", "AC-200", 7, "", "", ""],
            ]
        ),
    )

    assert response.status_code == 200
    assert response.json()["createdEntities"] == {"branches": 0, "products": 1}
    with engine.begin() as conn:
        materials = conn.execute(text("SELECT material FROM products ORDER BY material")).scalars().all()
    assert materials == ["AC-100", "AC-200"]


def test_equal_billing_is_unchanged_and_not_written(client_and_engine):
    client, engine = client_and_engine
    seed_inventory(engine, "AC-100", "CHENNAI", 100)

    response = _upload(client, _build_workbook_bytes([["05-03-2024", "Chennai", "ac-100", 100, "", "", ""]]))

    body = response.json()
    assert body["recordsNew"] == 0
    assert body["recordsUpdated"] == 0
    assert body["recordsSkipped"] == 1
    with engine.begin() as conn:
        row = conn.execute(text("SELECT op_stock, avl_stock FROM inventory")).mappings().one()
    assert (row["op_stock"], row["avl_stock"]) == (10, 10)


def test_changed_billing_is_updated_with_delta(client_and_engine):
    client, engine = client_and_engine
    seed_inventory(engine, "AC-100", "CHENNAI", 100)

    response = _upload(client, _build_workbook_bytes([["05-03-2024", "Chennai", "AC-100", 101, "", "", ""]]))

    body = response.json()
    assert body["recordsUpdated"] == 1
    assert body["recordsSkipped"] == 0
    assert body["significantChanges"] == []
    with engine.begin() as conn:
        summary_row = conn.execute(text("SELECT summary FROM upload_history")).scalar_one()
        billing = conn.execute(text("SELECT billing FROM inventory")).scalar_one()
    assert billing == 101
    assert '"change": 1' in summary_row


def test_large_change_is_reported_as_significant(client_and_engine):
    client, engine = client_and_engine
    seed_inventory(engine, "AC-100", "CHENNAI", 100)

    response = _upload(client, _build_workbook_bytes([["05-03-2024", "Chennai", "AC-100", 60, "", "", ""]]))

    assert response.json()["significantChanges"] == [
        {
            "type": "updated",
            "product": "AC-100",
            "branch": "CHENNAI",
            "date": "2024-03-05",
            "oldValue": 100,
            "newValue": 60,
            "change": -40,
        }
    ]


def test_reupload_of_same_file_skips_everything(client_and_engine):
    client, engine = client_and_engine
    workbook_bytes = _build_workbook_bytes(
        [
            ["05-03-2024", "Chennai", "AC-1", 12, "", "", ""],
            ["05-03-2024", "Coimbatore", "AC-1", 4, "", "", ""],
            ["05-03-2024", "Chennai", "AC-2", 0, "", "", ""],
        ]
    )

    first = _upload(client, workbook_bytes).json()
    second = _upload(client, workbook_bytes).json()

    assert first["recordsNew"] == 3
    assert second["recordsNew"] == 0
    assert second["recordsUpdated"] == 0
    assert second["recordsSkipped"] == second["recordsProcessed"] == 3
    assert second["createdEntities"] == {"branches": 0, "products": 0}
    assert _count(engine, "inventory") == 3
    assert _count(engine, "upload_history") == 2


def test_later_date_wins_for_the_same_product_and_branch(client_and_engine):
    client, engine = client_and_engine

    response = _upload(
        client,
        _build_workbook_bytes(
            [
                ["05-03-2024", "Chennai", "AC-1", 12, "", "", ""],
                ["06-03-2024", "Chennai", "AC-1", 30, "", "", ""],
            ]
        ),
    )

    assert response.json()["dateRange"] == {"start": "2024-03-05", "end": "2024-03-06"}
    assert response.json()["recordsNew"] == 1
    assert response.json()["recordsSkipped"] == 1
    with engine.begin() as conn:
        billing = conn.execute(text("SELECT billing FROM inventory")).scalars().all()
    assert billing == [30]


def test_later_date_wins_even_when_it_comes_first_in_the_file(client_and_engine):
    client, engine = client_and_engine

    response = _upload(
        client,
        _build_workbook_bytes(
            [
                ["06-03-2024", "Chennai", "AC-1", 30, "", "", ""],
                ["05-03-2024", "Chennai", "AC-1", 12, "", "", ""],
            ]
        ),
    )

    assert response.json()["recordsNew"] == 1
    with engine.begin() as conn:
        billing = conn.execute(text("SELECT billing FROM inventory")).scalars().all()
    assert billing == [30]


def test_reupload_with_two_dates_for_same_product_and_branch_is_unchanged(client_and_engine):
    client, engine = client_and_engine
    workbook_bytes = _build_workbook_bytes(
        [
            ["05-03-2024", "Chennai", "AC-1", 12, "", "", ""],
            ["06-03-2024", "Chennai", "AC-1", 30, "", "", ""],
        ]
    )

    first = _upload(client, workbook_bytes).json()
    second = _upload(client, workbook_bytes).json()

    assert first["recordsNew"] == 1
    assert first["recordsSkipped"] == 1
    assert second["recordsNew"] == 0
    assert second["recordsUpdated"] == 0
    assert second["recordsSkipped"] == second["recordsProcessed"] == 2
    assert second["significantChanges"] == []
    with engine.begin() as conn:
        billing = conn.execute(text("SELECT billing FROM inventory")).scalars().all()
    assert billing == [30]


def test_failed_last_batch_rolls_back_everything(session_factory, client_and_engine, monkeypatch):
    _, engine = client_and_engine
    real_batch = inventory_import._upsert_inventory_batch
    calls = []

    def flaky_batch(db, batch):
        calls.append(len(batch))
        if len(calls) == 2:
            raise OperationalError("INSERT INTO inventory", {}, Exception("disk I/O error"))
        real_batch(db, batch)

    monkeypatch.setattr(inventory_import, "_upsert_inventory_batch", flaky_batch)
    workbook_bytes = _build_workbook_bytes(
        [["05-03-2024", "Salem", f"AC-{i}", i + 1, "", "", ""] for i in range(3)]
    )

    db = session_factory()
    try:
        with pytest.raises(StorageFailure) as exc_info:
            import_inventory_upload(db, workbook_bytes, "daily.xlsx", 1, batch_size=2)
    finally:
        db.close()

    assert calls == [2, 1]
    assert "disk I/O error" in str(exc_info.value)
    assert "INSERT" not in str(exc_info.value)
    for table in ("inventory", "upload_history", "products", "branches"):
        assert _count(engine, table) == 0


def test_upload_endpoint_reports_storage_failure(client_and_engine, monkeypatch):
    client, engine = client_and_engine

    def broken_batch(db, batch):
        raise OperationalError("INSERT INTO inventory", {}, Exception("database is locked"))

    monkeypatch.setattr(inventory_import, "_upsert_inventory_batch", broken_batch)

    response = _upload(client, _build_workbook_bytes([["05-03-2024", "Salem", "AC-1", 3, "", "", ""]]))

    assert response.status_code == 500
    assert "database is locked" in response.json()["details"]
    assert _count(engine, "branches") == 0


def _failing_product_creation(monkeypatch):
    def broken_products(self, codes):
        raise OperationalError("INSERT INTO products", {}, Exception("disk I/O error"))

    monkeypatch.setattr(inventory_import.ReferenceResolver, "_create_products", broken_products)


def test_failed_product_creation_rolls_back_created_branches(session_factory, client_and_engine, monkeypatch):
    _, engine = client_and_engine
    _failing_product_creation(monkeypatch)
    workbook_bytes = _build_workbook_bytes([["05-03-2024", "Madurai", "AC-9", 4, "", "", ""]])

    db = session_factory()
    try:
        with pytest.raises(ReferenceCreationFailure) as exc_info:
            import_inventory_upload(db, workbook_bytes, "daily.xlsx", 1)
    finally:
        db.close()

    assert "disk I/O error" in str(exc_info.value)
    assert "INSERT" not in str(exc_info.value)
    for table in ("branches", "products", "inventory", "upload_history"):
        assert _count(engine, table) == 0


def test_upload_endpoint_reports_reference_creation_failure(client_and_engine, monkeypatch):
    client, engine = client_and_engine
    _failing_product_creation(monkeypatch)

    response = _upload(client, _build_workbook_bytes([["05-03-2024", "Madurai", "AC-9", 4, "", "", ""]]))

    assert response.status_code == 500
    assert response.json()["error"] == "Failed to process upload."
    assert "disk I/O error" in response.json()["details"]
    assert "INSERT" not in response.json()["details"]
    assert _count(engine, "branches") == 0
    assert _count(engine, "upload_history") == 0


def test_db_error_description_hides_connection_details():
    refused = OperationalError(
        "SELECT 1",
        {},
        Exception('connection to server at "db.internal" (10.0.0.5), port 5432 failed: Connection refused'),
    )
    locked = OperationalError("INSERT INTO inventory", {}, Exception("database is locked"))

    described = describe_db_error(refused)

    assert described == "Exception: database connection failed"
    assert "db.internal" not in described
    assert "10.0.0.5" not in described
    assert describe_db_error(locked) == "Exception: database is locked"


def test_oversized_upload_is_rejected_before_import(client_and_engine, monkeypatch):
    client, engine = client_and_engine
    monkeypatch.setattr(main.settings, "upload_max_file_mb", 0)

    response = _upload(client, _build_workbook_bytes([["05-03-2024", "Salem", "AC-1", 3, "", "", ""]]))

    assert response.status_code == 400
    assert response.json()["error"] == "File exceeds the 0MB upload limit."
    assert _count(engine, "branches") == 0
    assert _count(engine, "upload_history") == 0


def test_records_are_capped_at_max_records(session_factory):
    rows = [["05-03-2024", "Chennai", f"AC-{i}", i, "", "", ""] for i in range(1, 9)]

    db = session_factory()
    try:
        result = import_inventory_upload(db, _build_workbook_bytes(rows), "daily.xlsx", 1, max_records=5)
    finally:
        db.close()

    assert result["recordsProcessed"] == 5
    assert result["recordsNew"] == 5


def test_classify_record():
    assert classify_record(100, None) == ("new", 100)
    assert classify_record(100, 100) == ("unchanged", 0)
    assert classify_record(101, 100) == ("updated", 1)
    assert classify_record(90, 100) == ("updated", -10)


def test_derived_fields_stay_within_jitter_bounds():
    rng = random.Random(7)
    for _ in range(200):
        fields = derive_stock_fields(100, rng=rng)
        assert fields["month_plan"] == 170
        assert 150 <= fields["avl_stock"] <= 170
        assert 30 <= fields["transit"] <= 40
        assert fields["op_stock"] == max(0, fields["avl_stock"] + 100 - fields["transit"])


def test_derived_fields_without_jitter_are_linear():
    fields = derive_stock_fields(10, avl_jitter=0, transit_jitter=0)

    assert fields == {"month_plan": 62, "avl_stock": 15, "transit": 3, "op_stock": 22}


def test_upload_history_lists_newest_first(client_and_engine):
    client, _ = client_and_engine
    _upload(client, _build_workbook_bytes([["05-03-2024", "Chennai", "AC-1", 1, "", "", ""]]), filename="first.xlsx")
    _upload(client, _build_workbook_bytes([["05-03-2024", "Chennai", "AC-1", 2, "", "", ""]]), filename="second.xlsx")

    response = client.get("/upload/history", params={"limit": 1}, headers={"X-User-Id": "1"})

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert body["hasMore"] is True
    assert body["history"][0]["filename"] == "second.xlsx"
    assert body["history"][0]["uploaded_by"] == "planner"
    assert body["history"][0]["branches_affected"] == ["CHENNAI"]
    assert body["history"][0]["summary"]["topChanges"][0]["change"] == 1


def test_freshness_reports_latest_update_per_branch(client_and_engine):
    client, engine = client_and_engine
    _upload(client, _build_workbook_bytes([["05-03-2024", "Chennai", "AC-1", 1, "", "", ""]]))
    with engine.begin() as conn:
        conn.execute(text("INSERT INTO branches (name, state) VALUES ('IDLE', 'Unknown')"))

    response = client.get("/upload/freshness", headers={"X-User-Id": "1"})

    assert response.status_code == 200
    body = response.json()
    assert body["overview"] == {"totalBranches": 2, "upToDate": 1, "needsUpdate": 0, "totalRecords": 1}
    assert body["freshness"][0]["branch_name"] == "CHENNAI"
    assert body["freshness"][0]["days_old"] == 0
    assert body["freshness"][1]["days_old"] is None
