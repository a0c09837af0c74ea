#!/usr/bin/env python3
"""
Migration: create / update every table the booking engine reads or writes.
Idempotent. Run: python migrate_schema.py
"""
import os
import sys

import psycopg2
from dotenv import load_dotenv

from content_resolver import CONTENT_FIELDS

load_dotenv()

DB_CONFIG = {
    'host': os.environ.get('DB_HOST', 'localhost'),
    'port': int(os.environ.get('DB_PORT', 5432)),
    'database': os.environ.get('DB_NAME', 'tour_booking'),
    'user': os.environ.get('DB_USER', 'postgres'),
    'password': os.environ.get('DB_PASS', ''),
}

TABLES = {
    'products': """
        CREATE TABLE IF NOT EXISTS products (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            base_price NUMERIC(12, 2) NOT NULL DEFAULT 0,
            max_participants INTEGER,
            min_participants INTEGER,
            adult_age INTEGER,
            child_age_min INTEGER,
            child_age_max INTEGER,
            infant_age INTEGER,
            status VARCHAR(20) NOT NULL DEFAULT 'active'
        );
    """,
    'dynamic_pricing': """
        CREATE TABLE IF NOT EXISTS dynamic_pricing (
            id SERIAL PRIMARY KEY,
            product_id TEXT NOT NULL REFERENCES products(id),
            channel_id TEXT,
            date DATE NOT NULL,
            adult_price NUMERIC(12, 2),
            child_price NUMERIC(12, 2),
            infant_price NUMERIC(12, 2),
            is_sale_available BOOLEAN NOT NULL DEFAULT TRUE,
            choice_availability JSONB NOT NULL DEFAULT '{}'::jsonb,
            choices_pricing JSONB NOT NULL DEFAULT '{}'::jsonb,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
    """,
    'product_choices': """
        CREATE TABLE IF NOT EXISTS product_choices (
            id SERIAL PRIMARY KEY,
            product_id TEXT NOT NULL REFERENCES products(id),
            choice_id TEXT NOT NULL,
            choice_name TEXT,
            choice_description TEXT,
            is_required BOOLEAN NOT NULL DEFAULT TRUE,
            option_id TEXT NOT NULL,
            option_name TEXT,
            option_price NUMERIC(12, 2) NOT NULL DEFAULT 0,
            adult_price NUMERIC(12, 2),
            child_price NUMERIC(12, 2),
            infant_price NUMERIC(12, 2),
            is_default BOOLEAN NOT NULL DEFAULT FALSE,
            media JSONB NOT NULL DEFAULT '[]'::jsonb,
            sort_order INTEGER NOT NULL DEFAULT 0
        );
    """,
    'coupons': """
        CREATE TABLE IF NOT EXISTS coupons (
            id SERIAL PRIMARY KEY,
            coupon_code TEXT NOT NULL,
            discount_type VARCHAR(20) NOT NULL DEFAULT 'percentage',
            percentage_value NUMERIC(6, 2),
            fixed_value NUMERIC(12, 2),
            status VARCHAR(20) NOT NULL DEFAULT 'active'
                CHECK (status IN ('active', 'inactive', 'expired')),
            start_date DATE,
            end_date DATE,
            product_id TEXT,
            channel_id TEXT,
            description TEXT
        );
    """,
    'reservations': """
        CREATE TABLE IF NOT EXISTS reservations (
            id SERIAL PRIMARY KEY,
            product_id TEXT NOT NULL REFERENCES products(id),
            channel_id TEXT,
            tour_date DATE NOT NULL,
            adults INTEGER NOT NULL DEFAULT 1,
            child INTEGER NOT NULL DEFAULT 0,
            infant INTEGER NOT NULL DEFAULT 0,
            total_people INTEGER NOT NULL DEFAULT 1,
            customer_name TEXT,
            email TEXT,
            phone TEXT,
            country TEXT,
            language TEXT,
            special_requests TEXT,
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            payment_transaction_id TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
    """,
    'reservation_pricing': """
        CREATE TABLE IF NOT EXISTS reservation_pricing (
            id SERIAL PRIMARY KEY,
            reservation_id TEXT NOT NULL,
            adult_product_price NUMERIC(12, 2),
            child_product_price NUMERIC(12, 2),
            infant_product_price NUMERIC(12, 2),
            product_price_total NUMERIC(12, 2),
            choices_total NUMERIC(12, 2),
            option_total NUMERIC(12, 2),
            subtotal NUMERIC(12, 2),
            coupon_code TEXT,
            coupon_discount NUMERIC(12, 2),
            total_price NUMERIC(12, 2),
            currency VARCHAR(3),
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
    """,
    'reservation_choices': """
        CREATE TABLE IF NOT EXISTS reservation_choices (
            id SERIAL PRIMARY KEY,
            reservation_id TEXT NOT NULL,
            choice_id TEXT NOT NULL,
            option_id TEXT NOT NULL,
            quantity INTEGER NOT NULL DEFAULT 1,
            total_price NUMERIC(12, 2) NOT NULL DEFAULT 0
        );
    """,
    'product_details_multilingual': f"""
        CREATE TABLE IF NOT EXISTS product_details_multilingual (
            id SERIAL PRIMARY KEY,
            product_id TEXT NOT NULL REFERENCES products(id),
            channel_id TEXT,
            variant_key TEXT NOT NULL DEFAULT 'default',
            language_code VARCHAR(10) NOT NULL,
            {', '.join(f'{f} TEXT' for f in CONTENT_FIELDS)},
            tags TEXT[] NOT NULL DEFAULT '{{}}',
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
    """,
}

INDEXES = [
    ('dynamic_pricing_scope_unique',
     "CREATE UNIQUE INDEX dynamic_pricing_scope_unique ON dynamic_pricing "
     "(product_id, (COALESCE(channel_id, '')), date);"),
    ('product_choices_product_idx',
     "CREATE INDEX product_choices_product_idx ON product_choices (product_id, sort_order);"),
    ('reservations_product_date_idx',
     "CREATE INDEX reservations_product_date_idx ON reservations (product_id, tour_date);"),
    ('product_details_scope_unique',
     "CREATE UNIQUE INDEX product_details_scope_unique ON product_details_multilingual "
     "(product_id, (COALESCE(channel_id, '')), variant_key, language_code);"),
]


def check_table_exists(cursor, table_name):
    cursor.execute("SELECT EXISTS (SELECT 1 FROM information_schema.tables WHERE table_name = %s);", (table_name,))
    return cursor.fetchone()[0]


def check_column_exists(cursor, table_name, column_name):
    cursor.execute("SELECT EXISTS (SELECT 1 FROM information_schema.columns WHERE table_name = %s AND column_name = %s);", (table_name, column_name))
    return cursor.fetchone()[0]


def check_index_exists(cursor, index_name):
    cursor.execute("SELECT EXISTS (SELECT 1 FROM pg_indexes WHERE indexname = %s);", (index_name,))
    return cursor.fetchone()[0]


def create_tables(conn):
    cursor = conn.cursor()
    changes = []
    print("\n" + "="*70)
    print("TABLES")
    print("="*70)

    for table, ddl in TABLES.items():
        if check_table_exists(cursor, table):
            print(f"  ✅ {table} exists")
            continue
        cursor.execute(ddl)
        changes.append(f"Created {table}")
        print(f"  ✅ Created {table}")

    cursor.close()
    return changes


def add_content_columns(conn):
    """Content fields added after the table was first created."""
    cursor = conn.cursor()
    changes = []
    print("\n" + "="*70)
    print("CONTENT COLUMNS")
    print("="*70)

    for column in CONTENT_FIELDS:
        if not check_column_exists(cursor, 'product_details_multilingual', column):
            cursor.execute(f"ALTER TABLE product_details_multilingual ADD COLUMN {column} TEXT;")
            changes.append(f"Added product_details_multilingual.{column}")
            print(f"  ✅ Added {column}")

    if not check_column_exists(cursor, 'dynamic_pricing', 'choice_availability'):
        cursor.execute("ALTER TABLE dynamic_pricing ADD COLUMN choice_availability JSONB NOT NULL DEFAULT '{}'::jsonb;")
        changes.append("Added dynamic_pricing.choice_availability")
        print("  ✅ Added dynamic_pricing.choice_availability")

    if not check_column_exists(cursor, 'dynamic_pricing', 'choices_pricing'):
        cursor.execute("ALTER TABLE dynamic_pricing ADD COLUMN choices_pricing JSONB NOT NULL DEFAULT '{}'::jsonb;")
        changes.append("Added dynamic_pricing.choices_pricing")
        print("  ✅ Added dynamic_pricing.choices_pricing")

    cursor.close()
    return changes


def create_indexes(conn):
    cursor = conn.cursor()
    changes = []
    print("\n" + "="*70)
    print("INDEXES")
    print("="*70)

    for name, ddl in INDEXES:
        if check_index_exists(cursor, name):
            print(f"  ✅ {name} exists")
            continue
        cursor.execute(ddl)
        changes.append(f"Created {name}")
        print(f"  ✅ Created {name}")

    cursor.close()
    return changes


def main():
    try:
        conn = psycopg2.connect(**DB_CONFIG)
        all_changes = []
        all_changes.extend(create_tables(conn))
        all_changes.extend(add_content_columns(conn))
        all_changes.extend(create_indexes(conn))

        if all_changes:
            conn.commit()
            print("\nChanges Made:")
            for i, change in enumerate(all_changes, 1):
                print(f"  {i:2d}. {change}")
        else:
            print("\n✅ No changes needed - schema already up to date")
        return 0

    except psycopg2.Error as e:
        print(f"\n❌ Error: {e}")
        if 'conn' in locals():
            conn.rollback()
        return 1
    finally:
        if 'conn' in locals():
            conn.close()


if __name__ == '__main__':
    sys.exit(main())
