import migrate_schema
from conftest import FakeConnection


def schema_db(table_exists, column_exists=True, index_exists=False):
    return FakeConnection({
        'information_schema.tables': [{'exists': table_exists}],
        'information_schema.columns': [{'exists': column_exists}],
        'pg_indexes': [{'exists': index_exists}],
    })


def test_fresh_database_gets_every_table_and_index(monkeypatch):
    conn = schema_db(table_exists=False)
    monkeypatch.setattr(migrate_schema.psycopg2, 'connect', lambda **kw: conn)

    assert migrate_schema.main() == 0
    assert len(conn.statements('CREATE TABLE IF NOT EXISTS')) == len(migrate_schema.TABLES)
    assert len(conn.statements('CREATE UNIQUE INDEX')) == 2
    assert conn.commits == 1
    assert conn.closed


def test_content_table_carries_every_field():
    ddl = migrate_schema.TABLES['product_details_multilingual']
    for field_name in migrate_schema.CONTENT_FIELDS:
        assert f'{field_name} TEXT' in ddl


def test_up_to_date_schema_is_left_alone(monkeypatch):
    conn = schema_db(table_exists=True, index_exists=True)
    monkeypatch.setattr(migrate_schema.psycopg2, 'connect', lambda **kw: conn)

    assert migrate_schema.main() == 0
    assert conn.statements('CREATE ') == []
    assert conn.statements('ALTER TABLE') == []
    assert conn.commits == 0


def test_missing_content_columns_are_added():
    conn = schema_db(table_exists=True, column_exists=False)
    changes = migrate_schema.add_content_columns(conn)
    assert 'Added product_details_multilingual.chat_announcement' in changes
    assert 'Added dynamic_pricing.choice_availability' in changes
    assert 'Added dynamic_pricing.choices_pricing' in changes


def test_pricing_table_carries_combination_prices():
    assert 'choices_pricing JSONB' in migrate_schema.TABLES['dynamic_pricing']
