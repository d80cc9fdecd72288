"""
HTTP-level tests: request context, role checks, error envelopes and the
relationship / query endpoints wired to an in-memory SQLite store.

Services are injected through dependency overrides, so the startup
environment guard never runs.
"""

import unittest

from fastapi.middleware.cors import CORSMiddleware
from fastapi.testclient import TestClient
from sqlalchemy import text

from config import Settings
from database import create_store_engine
from main import APP_SETTINGS, app, build_services, get_services
from model_catalog import POSTGRES_ENGINE

EDITOR = {"X-Workspace-Id": "ws-1", "X-User-Role": "Editor", "X-User-Email": "editor@example.com"}
VIEWER = {"X-Workspace-Id": "ws-1", "X-User-Role": "Viewer"}


class ApiTestCase(unittest.TestCase):

    def setUp(self):
        engine = create_store_engine("sqlite://")
        self.services = build_services(Settings(database_url="sqlite://"), engine=engine)

        with engine.begin() as conn:
            conn.execute(text("CREATE TABLE customers (id INTEGER, name TEXT, country TEXT)"))
            conn.execute(text("CREATE TABLE orders (id INTEGER, customer_id INTEGER, amount REAL)"))
            conn.execute(text("INSERT INTO customers VALUES (1, 'Ann', 'US'), (2, 'Bob', 'DE')"))
            conn.execute(text("INSERT INTO orders VALUES (1, 1, 10.0), (2, 1, 5.0), (3, 2, 7.5)"))

        store = self.services.store
        conn_id = store.register_connection("ws-1", "PostgreSQL")
        self.customers_id = store.register_synced_table(conn_id, "customers", "public", [
            {"name": "id", "type": "INTEGER"}, {"name": "name", "type": "TEXT"}, {"name": "country", "type": "TEXT"},
        ])
        self.orders_id = store.register_synced_table(conn_id, "orders", "public", [
            {"name": "id", "type": "INTEGER"}, {"name": "customer_id", "type": "INTEGER"},
            {"name": "amount", "type": "NUMERIC"},
        ])
        store.register_runtime_table(self.customers_id, POSTGRES_ENGINE, '"customers"')
        store.register_runtime_table(self.orders_id, POSTGRES_ENGINE, '"orders"')

        bq_conn = store.register_connection("ws-1", "BigQuery", project_id="acme")
        self.events_id = store.register_synced_table(bq_conn, "events", "analytics", [
            {"name": "event_name", "type": "STRING"},
        ])

        app.dependency_overrides[get_services] = lambda: self.services
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()

    def _create_relationship(self, headers=EDITOR, **overrides):
        body = {
            "fromTableId": self.orders_id,
            "fromColumn": "customer_id",
            "toTableId": self.customers_id,
            "toColumn": "id",
        }
        body.update(overrides)
        return self.client.post("/relationships", json=body, headers=headers)

    def _assert_error(self, response, status, code):
        self.assertEqual(response.status_code, status)
        body = response.json()
        self.assertFalse(body["success"])
        self.assertEqual(body["code"], code)
        self.assertTrue(body["message"])


class TestContextAndRoles(ApiTestCase):

    def test_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["engines"], ["postgres"])

    def test_cors_origins_come_from_settings(self):
        cors = next(m for m in app.user_middleware if m.cls is CORSMiddleware)
        self.assertEqual(cors.kwargs["allow_origins"], APP_SETTINGS.cors_origins)

    def test_uninitialized_services(self):
        app.dependency_overrides.clear()
        self._assert_error(self.client.get("/health"), 503, "SERVICE_UNAVAILABLE")

    def test_missing_workspace(self):
        response = self.client.get("/tables")
        self._assert_error(response, 401, "UNAUTHORIZED")
        self.assertEqual(response.json()["message"], "Missing workspace context")

    def test_viewer_cannot_manage_relationships(self):
        self._assert_error(self._create_relationship(headers=VIEWER), 403, "FORBIDDEN")
        self._assert_error(self.client.delete("/relationships/any", headers=VIEWER), 403, "FORBIDDEN")

    def test_default_model(self):
        first = self.client.get("/default-model", headers=VIEWER).json()["data"]
        second = self.client.get("/default-model", headers=VIEWER).json()["data"]
        self.assertEqual(first["id"], second["id"])
        self.assertTrue(first["isDefault"])

    def test_tables(self):
        response = self.client.get("/tables", headers=VIEWER)
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual([t["tableName"] for t in body["data"]], ["events", "customers", "orders"])
        self.assertEqual(body["meta"]["dataModelName"], "Workspace Default Model")

    def test_unknown_model(self):
        response = self.client.get("/tables", params={"dataModelId": "missing"}, headers=VIEWER)
        self._assert_error(response, 404, "MODEL_NOT_FOUND")


class TestRelationshipEndpoints(ApiTestCase):

    def test_create_list_delete(self):
        response = self._create_relationship(relationshipType="1-1")
        self.assertEqual(response.status_code, 201)
        created = response.json()
        self.assertEqual(created["data"]["relationshipType"], "n-1")
        self.assertEqual(created["data"]["validationStatus"], "valid")
        self.assertGreater(created["meta"]["confidence"], 0)

        listed = self.client.get("/relationships", headers=VIEWER).json()
        self.assertEqual(listed["meta"]["total"], 1)
        self.assertEqual(listed["data"][0]["id"], created["data"]["id"])

        rel_id = created["data"]["id"]
        self.assertEqual(self.client.delete(f"/relationships/{rel_id}", headers=EDITOR).status_code, 200)
        self._assert_error(self.client.delete(f"/relationships/{rel_id}", headers=EDITOR), 404,
                           "RELATIONSHIP_NOT_FOUND")

    def test_create_is_idempotent_per_column_pair(self):
        first = self._create_relationship().json()["data"]
        second = self._create_relationship(
            fromTableId=self.customers_id, fromColumn="id", toTableId=self.orders_id, toColumn="customer_id",
        ).json()["data"]
        self.assertEqual(first["id"], second["id"])

    def test_forced_many_to_many_is_invalid(self):
        data = self._create_relationship(relationshipType="n-n").json()["data"]
        self.assertEqual(data["validationStatus"], "invalid")
        self.assertIn("n-n", data["invalidReason"])

    def test_unknown_column(self):
        self._assert_error(self._create_relationship(fromColumn="nope"), 400, "INVALID_REQUEST")

    def test_blank_column(self):
        self._assert_error(self._create_relationship(toColumn=""), 400, "INVALID_REQUEST")

    def test_bad_relationship_type(self):
        self._assert_error(self._create_relationship(relationshipType="many"), 400, "INVALID_REQUEST")

    def test_self_join_rejected(self):
        response = self._create_relationship(toTableId=self.orders_id, toColumn="customer_id")
        self._assert_error(response, 400, "INVALID_REQUEST")

    def test_auto_detect_without_body(self):
        response = self.client.post("/relationships/auto-detect", headers=VIEWER)
        self.assertEqual(response.status_code, 200)
        data = response.json()["data"]
        self.assertEqual(len(data), 1)
        self.assertEqual((data[0]["fromTable"], data[0]["fromColumn"]), ("orders", "customer_id"))

    def test_auto_detect_skips_saved_relationship(self):
        self._create_relationship()
        response = self.client.post("/relationships/auto-detect", json={}, headers=VIEWER)
        self.assertEqual(response.json()["meta"]["total"], 0)


class TestQueryEndpoints(ApiTestCase):

    def _connect(self):
        self.assertEqual(self._create_relationship().status_code, 201)

    def test_plan(self):
        self._connect()
        response = self.client.post("/query/plan", headers=VIEWER, json={
            "select": [
                {"tableId": self.customers_id, "column": "name"},
                {"tableId": self.orders_id, "column": "amount", "aggregation": "sum", "alias": "total"},
            ],
        })
        self.assertEqual(response.status_code, 200)
        data = response.json()["data"]
        self.assertEqual(data["engine"], "postgres")
        self.assertIn("INNER JOIN", data["sql"])
        self.assertEqual(data["rootTable"]["tableName"], "customers")

    def test_plan_without_path(self):
        response = self.client.post("/query/plan", headers=VIEWER, json={
            "select": [
                {"tableId": self.customers_id, "column": "name"},
                {"tableId": self.orders_id, "column": "amount"},
            ],
        })
        self._assert_error(response, 400, "NO_RELATIONSHIP_PATH")

    def test_cross_source_blocked(self):
        response = self.client.post("/query/plan", headers=VIEWER, json={
            "select": [
                {"tableId": self.customers_id, "column": "name"},
                {"tableId": self.events_id, "column": "event_name"},
            ],
        })
        self._assert_error(response, 400, "CROSS_SOURCE_BLOCKED")

    def test_invalid_aggregation(self):
        response = self.client.post("/query/plan", headers=VIEWER, json={
            "select": [{"tableId": self.customers_id, "column": "name", "aggregation": "median"}],
        })
        self._assert_error(response, 400, "INVALID_REQUEST")

    def test_execute(self):
        self._connect()
        response = self.client.post("/query/execute", headers=VIEWER, json={
            "select": [
                {"tableId": self.customers_id, "column": "name", "alias": "customer"},
                {"tableId": self.orders_id, "column": "amount", "aggregation": "sum", "alias": "total"},
            ],
        })
        self.assertEqual(response.status_code, 200)
        data = response.json()["data"]
        self.assertEqual(data["rows"], [{"customer": "Ann", "total": 15.0}, {"customer": "Bob", "total": 7.5}])
        self.assertEqual(data["rowCount"], 2)
        self.assertEqual(data["columns"], ["customer", "total"])
        self.assertEqual(data["plan"]["columns"], ["customer", "total"])

    def test_execute_raw_sql(self):
        response = self.client.post("/query/execute", headers=VIEWER, json={
            "tableIds": [self.customers_id],
            "rawSql": "SELECT name FROM customers WHERE country = 'US'",
        })
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["rows"], [{"name": "Ann"}])

    def test_execute_raw_sql_out_of_scope(self):
        response = self.client.post("/query/execute", headers=VIEWER, json={
            "tableIds": [self.customers_id],
            "rawSql": "SELECT * FROM orders",
        })
        self._assert_error(response, 400, "SQL_SCOPE_BLOCKED")
        self.assertIn("orders", response.json()["message"])

    def test_execute_raw_sql_without_scope(self):
        response = self.client.post("/query/execute", headers=VIEWER, json={"rawSql": "SELECT 1"})
        self._assert_error(response, 400, "MISSING_TABLE_SCOPE")

    def test_execute_unsafe_sql(self):
        response = self.client.post("/query/execute", headers=VIEWER, json={
            "tableIds": [self.customers_id],
            "rawSql": "DROP TABLE customers",
        })
        self._assert_error(response, 400, "UNSAFE_SQL")


if __name__ == "__main__":
    unittest.main()
