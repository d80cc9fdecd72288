"""
Tests for the schema catalog: default model, table resolution, relationship
identity and upsert/delete semantics.

Runs against an in-memory SQLite store.
"""

import unittest

from database import create_schema, create_store_engine
from errors import InvalidRequestError, ModelNotFoundError
from model_catalog import (
    BIGQUERY_ENGINE,
    INVALID,
    POSTGRES_ENGINE,
    VALID,
    ModelCatalogStore,
    ModelRelationship,
    canonical_relationship_key,
)

WORKSPACE = "ws-1"
OTHER_WORKSPACE = "ws-2"

MOCK_CUSTOMERS_SCHEMA = [
    {"name": "id", "type": "INTEGER"},
    {"name": "name", "type": "TEXT"},
]
MOCK_ORDERS_SCHEMA = [
    {"name": "id", "type": "INTEGER"},
    {"name": "customer_id", "type": "INTEGER"},
    {"name": "amount", "type": "NUMERIC"},
]


def _new_store():
    engine = create_store_engine("sqlite://")
    create_schema(engine)
    return ModelCatalogStore(engine)


def _seed_postgres(store, workspace_id=WORKSPACE):
    conn_id = store.register_connection(workspace_id, "PostgreSQL")
    customers = store.register_synced_table(conn_id, "customers", "public", MOCK_CUSTOMERS_SCHEMA)
    orders = store.register_synced_table(conn_id, "orders", "public", MOCK_ORDERS_SCHEMA)
    store.register_runtime_table(customers, POSTGRES_ENGINE, '"public"."customers"')
    store.register_runtime_table(orders, POSTGRES_ENGINE, '"public"."orders"')
    return customers, orders


class TestCanonicalKey(unittest.TestCase):

    def test_symmetric(self):
        a = canonical_relationship_key("t1", "customer_id", "t2", "id")
        b = canonical_relationship_key("t2", "id", "t1", "customer_id")
        self.assertEqual(a, b)

    def test_column_case_ignored(self):
        a = canonical_relationship_key("t1", "Customer_ID", "t2", "ID")
        b = canonical_relationship_key("t1", "customer_id", "t2", "id")
        self.assertEqual(a, b)

    def test_different_columns_differ(self):
        a = canonical_relationship_key("t1", "customer_id", "t2", "id")
        b = canonical_relationship_key("t1", "tenant_id", "t2", "id")
        self.assertNotEqual(a, b)


class TestDefaultModel(unittest.TestCase):

    def setUp(self):
        self.store = _new_store()

    def test_idempotent(self):
        first = self.store.ensure_default_model(WORKSPACE)
        second = self.store.ensure_default_model(WORKSPACE)
        self.assertEqual(first.id, second.id)
        self.assertTrue(first.is_default)

    def test_one_per_workspace(self):
        a = self.store.ensure_default_model(WORKSPACE)
        b = self.store.ensure_default_model(OTHER_WORKSPACE)
        self.assertNotEqual(a.id, b.id)

    def test_foreign_model_id_not_found(self):
        other = self.store.ensure_default_model(OTHER_WORKSPACE)
        with self.assertRaises(ModelNotFoundError) as ctx:
            self.store.load_catalog(WORKSPACE, other.id)
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(ctx.exception.code, "MODEL_NOT_FOUND")


class TestLoadCatalog(unittest.TestCase):

    def setUp(self):
        self.store = _new_store()
        self.customers_synced, self.orders_synced = _seed_postgres(self.store)

    def test_tables_loaded_with_runtime(self):
        catalog = self.store.load_catalog(WORKSPACE)
        names = [t.table_name for t in catalog.tables]
        self.assertEqual(names, ["customers", "orders"])
        orders = catalog.resolve_table(self.orders_synced)
        self.assertEqual(orders.runtime_engine, POSTGRES_ENGINE)
        self.assertEqual(orders.runtime_ref, '"public"."orders"')
        self.assertTrue(orders.is_executable)
        self.assertTrue(orders.has_column("CUSTOMER_ID"))

    def test_model_table_ids_stable_across_loads(self):
        first = self.store.load_catalog(WORKSPACE)
        second = self.store.load_catalog(WORKSPACE)
        self.assertEqual(
            sorted(t.id for t in first.tables),
            sorted(t.id for t in second.tables),
        )

    def test_resolve_by_model_id_or_synced_id(self):
        catalog = self.store.load_catalog(WORKSPACE)
        orders = catalog.resolve_table(self.orders_synced)
        self.assertIs(catalog.resolve_table(orders.id), orders)
        self.assertNotEqual(orders.id, orders.synced_table_id)

    def test_require_unknown_table(self):
        catalog = self.store.load_catalog(WORKSPACE)
        with self.assertRaises(InvalidRequestError):
            catalog.require_table("missing")

    def test_other_workspace_sees_nothing(self):
        catalog = self.store.load_catalog(OTHER_WORKSPACE)
        self.assertEqual(catalog.tables, [])

    def test_bigquery_ref_derived(self):
        conn_id = self.store.register_connection(WORKSPACE, "BigQuery", project_id="acme-prod")
        self.store.register_synced_table(conn_id, "events", "analytics", [{"name": "id", "type": "STRING"}])
        catalog = self.store.load_catalog(WORKSPACE)
        events = [t for t in catalog.tables if t.table_name == "events"][0]
        self.assertEqual(events.runtime_engine, BIGQUERY_ENGINE)
        self.assertEqual(events.runtime_ref, "`acme-prod.analytics.events`")
        self.assertTrue(events.is_executable)

    def test_missing_runtime_ref_not_executable(self):
        conn_id = self.store.register_connection(WORKSPACE, "PostgreSQL")
        self.store.register_synced_table(conn_id, "archive", "legacy", [{"name": "id", "type": "INTEGER"}])
        catalog = self.store.load_catalog(WORKSPACE)
        archive = [t for t in catalog.tables if t.table_name == "archive"][0]
        self.assertFalse(archive.is_executable)
        self.assertIn("legacy.archive", archive.executable_reason)

    def test_flagged_not_executable(self):
        self.store.register_runtime_table(
            self.orders_synced, POSTGRES_ENGINE, '"public"."orders"',
            is_executable=False, executable_reason="Mirror is stale",
        )
        catalog = self.store.load_catalog(WORKSPACE)
        orders = catalog.resolve_table(self.orders_synced)
        self.assertFalse(orders.is_executable)
        self.assertEqual(orders.executable_reason, "Mirror is stale")


class TestRelationshipPersistence(unittest.TestCase):

    def setUp(self):
        self.store = _new_store()
        customers_synced, orders_synced = _seed_postgres(self.store)
        self.catalog = self.store.load_catalog(WORKSPACE)
        self.customers = self.catalog.resolve_table(customers_synced)
        self.orders = self.catalog.resolve_table(orders_synced)

    def _relationship(self, rel_id, reverse=False, relationship_type="n-1", status=VALID):
        if reverse:
            return ModelRelationship(
                id=rel_id, data_model_id=self.catalog.model.id,
                from_table_id=self.customers.id, from_column="ID",
                to_table_id=self.orders.id, to_column="customer_id",
                relationship_type=relationship_type, validation_status=status,
                from_table="customers", to_table="orders",
            )
        return ModelRelationship(
            id=rel_id, data_model_id=self.catalog.model.id,
            from_table_id=self.orders.id, from_column="customer_id",
            to_table_id=self.customers.id, to_column="id",
            relationship_type=relationship_type, validation_status=status,
            from_table="orders", to_table="customers",
        )

    def test_upsert_by_canonical_key(self):
        first = self.store.upsert_relationship(self._relationship("rel-1"))
        second = self.store.upsert_relationship(
            self._relationship("rel-2", reverse=True, relationship_type="1-n")
        )
        self.assertEqual(first.id, second.id)
        self.assertEqual(second.relationship_type, "1-n")

        catalog = self.store.load_catalog(WORKSPACE)
        self.assertEqual(len(catalog.relationships), 1)
        self.assertEqual(catalog.relationship_keys(), {first.canonical_key})

    def test_invalid_status_round_trips(self):
        saved = self.store.upsert_relationship(self._relationship("rel-1", relationship_type="n-n", status=INVALID))
        self.assertEqual(saved.validation_status, INVALID)
        self.assertFalse(saved.is_joinable)

    def test_delete_scoped_to_workspace(self):
        saved = self.store.upsert_relationship(self._relationship("rel-1"))
        self.assertFalse(self.store.delete_relationship(OTHER_WORKSPACE, saved.id))
        self.assertTrue(self.store.delete_relationship(WORKSPACE, saved.id))
        self.assertFalse(self.store.delete_relationship(WORKSPACE, saved.id))
        self.assertEqual(self.store.load_catalog(WORKSPACE).relationships, [])

    def test_to_dict_camel_case(self):
        saved = self.store.upsert_relationship(self._relationship("rel-1"))
        data = saved.to_dict()
        self.assertEqual(data["fromTableId"], self.orders.id)
        self.assertEqual(data["relationshipType"], "n-1")
        self.assertEqual(data["validationStatus"], VALID)
        self.assertIsNotNone(data["createdAt"])


if __name__ == "__main__":
    unittest.main()
