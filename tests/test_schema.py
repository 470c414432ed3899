"""Tests for schema loading and DDL generation."""

from database.lib.schema_manager import SchemaManager

def tables_by_name():
    schema = SchemaManager(pool=None).load_schema_files()[1]
    return {table["name"]: table for table in schema["tables"]}

def test_load_schema_files():
    schema_files = SchemaManager(pool=None).load_schema_files()
    assert 1 in schema_files
    assert set(tables_by_name()) == {
        "users", "products", "product_listing", "purchase_request",
        "ownership", "chain_events", "operations"
    }

def test_missing_schema_dir(tmp_path):
    assert SchemaManager(pool=None, schema_dir=tmp_path / "nowhere").load_schema_files() == {}

def test_table_ddl():
    ddl = SchemaManager.table_ddl(tables_by_name()["product_listing"])

    assert ddl.startswith("CREATE TABLE IF NOT EXISTS product_listing (")
    assert "status TEXT DEFAULT 'available' NOT NULL" in ddl
    assert "PRIMARY KEY (listing_id)" in ddl
    assert "CHECK (price > 0)" in ddl

def test_partial_unique_indexes():
    statements = SchemaManager.constraint_ddl(tables_by_name()["ownership"])

    assert (
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_ownership_open_product "
        "ON ownership (product_id) WHERE end_on IS NULL"
    ) in statements
    assert any("FOREIGN KEY (owner_id) REFERENCES users(user_id)" in s for s in statements)

def test_listing_reference_survives_delete():
    statements = SchemaManager.constraint_ddl(tables_by_name()["purchase_request"])
    assert any("REFERENCES product_listing(listing_id) ON DELETE SET NULL" in s for s in statements)
