from datetime import date
from decimal import Decimal

import psycopg2
import pytest


class FakeCursor:
    """Serves canned rows by matching a marker (e.g. 'FROM coupons') in the SQL."""

    def __init__(self, conn):
        self.conn = conn
        self.description = []
        self.rowcount = 0
        self._rows = []

    def execute(self, sql, params=None):
        self.conn.executed.append((sql, params))
        for marker, exc in self.conn.failures.items():
            if marker in sql:
                raise exc

        self._rows = []
        for marker, rows in self.conn.tables.items():
            if marker in sql:
                self._rows = [dict(r) for r in rows]
                break
        if 'RETURNING id' in sql:
            self.conn.next_id += 1
            self._rows = [{'id': self.conn.next_id}]

        self.description = [(k,) for k in self._rows[0]] if self._rows else []
        self.rowcount = len(self._rows) if self._rows else 1

    def fetchall(self):
        return [tuple(r.values()) for r in self._rows]

    def fetchone(self):
        return tuple(self._rows[0].values()) if self._rows else None

    def close(self):
        pass


class FakeConnection:
    def __init__(self, tables=None, failures=None):
        self.tables = tables or {}
        self.failures = failures or {}
        self.executed = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False
        self.next_id = 1000

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = True

    def statements(self, marker):
        return [(sql, params) for sql, params in self.executed if marker in sql]


PRODUCT_ROW = {
    'id': 'P1',
    'name': 'Grand Canyon Day Tour',
    'base_price': Decimal('100.00'),
    'max_participants': 10,
    'min_participants': 4,
    'adult_age': 13,
    'child_age_min': 3,
    'child_age_max': 12,
    'infant_age': 2,
}

PRICING_ROWS = [
    {
        'date': date(2025, 11, 5),
        'channel_id': None,
        'adult_price': Decimal('120.00'),
        'child_price': None,
        'infant_price': None,
        'is_sale_available': True,
        'choice_availability': '{"optA": false}',
    },
    {
        'date': date(2025, 11, 6),
        'channel_id': None,
        'adult_price': None,
        'child_price': None,
        'infant_price': None,
        'is_sale_available': False,
        'choice_availability': {},
    },
]

TICKET_ROWS = [
    {
        'choice_id': 'ticket', 'choice_name': 'Ticket class', 'choice_description': '',
        'is_required': True, 'option_id': 'optA', 'option_name': 'Standard',
        'option_price': Decimal('0'), 'adult_price': None, 'child_price': None,
        'infant_price': None, 'is_default': False, 'media': None,
    },
    {
        'choice_id': 'ticket', 'choice_name': 'Ticket class', 'choice_description': 'Entrance ticket class',
        'is_required': True, 'option_id': 'optB', 'option_name': 'Premium',
        'option_price': Decimal('30'), 'adult_price': None, 'child_price': None,
        'infant_price': None, 'is_default': True, 'media': '["premium.jpg"]',
    },
]

LUNCH_ROWS = [
    {
        'choice_id': 'lunch', 'choice_name': 'Lunch', 'choice_description': 'Boxed lunch',
        'is_required': True, 'option_id': 'lunchX', 'option_name': 'Sandwich',
        'option_price': Decimal('10'), 'adult_price': None, 'child_price': Decimal('5'),
        'infant_price': Decimal('0'), 'is_default': False, 'media': None,
    },
    {
        'choice_id': 'lunch', 'choice_name': 'Lunch', 'choice_description': '',
        'is_required': True, 'option_id': 'lunchY', 'option_name': 'Salad',
        'option_price': Decimal('12'), 'adult_price': None, 'child_price': None,
        'infant_price': None, 'is_default': False, 'media': None,
    },
]

ADDON_ROWS = [
    {
        'choice_id': 'extras', 'choice_name': 'Extras', 'choice_description': 'Printed photo',
        'is_required': False, 'option_id': 'photo', 'option_name': 'Photo package',
        'option_price': Decimal('25'), 'adult_price': None, 'child_price': None,
        'infant_price': None, 'is_default': False, 'media': None,
    },
]

COUPON_ROWS = [
    {
        'id': 1, 'coupon_code': 'SAVE10', 'discount_type': 'percentage',
        'percentage_value': Decimal('10'), 'fixed_value': None, 'status': 'active',
        'start_date': date(2025, 1, 1), 'end_date': date(2030, 12, 31),
        'product_id': None, 'channel_id': None, 'description': '10% off',
    },
]


def make_db(tables=None, failures=None):
    base = {
        'FROM products': [PRODUCT_ROW],
        'FROM dynamic_pricing': PRICING_ROWS,
        'FROM reservations': [],
        'FROM product_choices': TICKET_ROWS + ADDON_ROWS,
        'FROM coupons': COUPON_ROWS,
        'FROM product_details_multilingual': [],
    }
    base.update(tables or {})
    return FakeConnection(base, failures)


@pytest.fixture
def fake_db():
    return make_db()


@pytest.fixture
def db_error():
    return psycopg2.OperationalError('connection reset')
