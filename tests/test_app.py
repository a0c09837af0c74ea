"""
API tests: Flask test client over a fake PostgreSQL connection.
"""

import pytest
import requests

import app as booking_app
from conftest import make_db
from pricing_engine import PaymentError

GUEST = {
    'name': 'Minji Kim', 'email': 'minji@example.com', 'phone': '+82 10 1234 5678',
    'country': 'KR', 'language': 'ko',
}


@pytest.fixture
def db():
    return make_db()


@pytest.fixture
def client(monkeypatch, db):
    monkeypatch.setattr(booking_app, 'get_db', lambda: db)
    monkeypatch.delenv('COUPON_VALIDATION_URL', raising=False)
    booking_app.app.config['TESTING'] = True
    with booking_app.app.test_client() as c:
        yield c


def booking_state(**kw):
    state = {
        'product_id': 'P1',
        'step': 3,
        'date': '2025-11-05',
        'participants': {'adults': 2, 'children': 0, 'infants': 0},
        'selections': {'ticket': 'optB'},
        'guest': GUEST,
    }
    state.update(kw)
    return state


class FakeResponse:
    def __init__(self, status_code, data):
        self.status_code = status_code
        self._data = data

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self._data


# ══════════════════════════════════════════════════════════════
# PRICING & AVAILABILITY
# ══════════════════════════════════════════════════════════════

class TestPricingRoutes:
    def test_pricing_window(self, client):
        resp = client.get('/api/products/P1/pricing?from=2025-11-05&to=2025-11-07')
        assert resp.status_code == 200
        dates = resp.get_json()['dates']
        assert [d['date'] for d in dates] == ['2025-11-05', '2025-11-06', '2025-11-07']
        assert dates[0]['adultPrice'] == 120.0
        assert dates[1]['isOpen'] is False
        assert dates[2]['adultPrice'] == 100.0
        assert dates[2]['hasOverride'] is False

    def test_pricing_window_is_bounded(self, client):
        resp = client.get('/api/products/P1/pricing?from=2025-01-01&to=2125-01-01')
        data = resp.get_json()
        assert resp.status_code == 200
        assert data['from'] == '2025-01-01'
        assert len(data['dates']) == booking_app.PRICING_MAX_WINDOW_DAYS
        assert data['dates'][-1]['date'] == data['to']

    def test_unknown_product_is_404(self, client, db):
        db.tables['FROM products'] = []
        assert client.get('/api/products/P404/pricing').status_code == 404

    def test_choices(self, client):
        data = client.get('/api/products/P1/choices').get_json()
        assert data['defaultSelections'] == {'ticket': 'optB'}
        assert data['optionalGroups'][0]['id'] == 'photo'

    def test_availability_grid(self, client):
        resp = client.post('/api/availability', json={'product_id': 'P1', 'date': '2025-11-05'})
        data = resp.get_json()
        assert data['selectionKey'] == 'optB'
        assert data['options'] == {'ticket': {'optA': False, 'optB': True}}
        assert data['dateOpen'] is True

    def test_quote(self, client):
        resp = client.post('/api/quote', json={
            'product_id': 'P1',
            'date': '2025-11-05',
            'participants': {'adults': 2},
            'selections': {'ticket': 'optB'},
        })
        assert resp.status_code == 200
        assert resp.get_json()['total'] == 300.0

    def test_quote_without_body(self, client):
        resp = client.post('/api/quote', data='', content_type='application/json')
        assert resp.status_code == 400

    def test_quote_unknown_coupon(self, client):
        resp = client.post('/api/quote', json={
            'product_id': 'P1', 'date': '2025-11-05', 'coupon_code': 'NOPE',
        })
        assert resp.status_code == 404


# ══════════════════════════════════════════════════════════════
# COUPONS
# ══════════════════════════════════════════════════════════════

class TestCouponRoute:
    def test_local_validation(self, client):
        resp = client.post('/api/coupons/validate', json={
            'couponCode': 'save10', 'productId': 'P1', 'totalAmount': 200,
        })
        data = resp.get_json()
        assert resp.status_code == 200
        assert data['valid'] is True
        assert data['discountAmount'] == 20.0
        assert data['finalAmount'] == 180.0

    def test_invalid_code_is_not_an_http_error(self, client):
        resp = client.post('/api/coupons/validate', json={'couponCode': 'NOPE', 'productId': 'P1'})
        assert resp.status_code == 200
        assert resp.get_json() == {'valid': False, 'error': 'Invalid coupon code.'}

    @pytest.mark.parametrize('amount', ['NaN', 'Infinity', '-Infinity'])
    def test_non_finite_total_is_not_an_http_error(self, client, amount):
        body = '{"couponCode": "SAVE10", "productId": "P1", "totalAmount": ' + amount + '}'
        resp = client.post('/api/coupons/validate', data=body, content_type='application/json')
        assert resp.status_code == 200
        assert resp.get_json()['valid'] is False

    def test_self_operated_channels_share_coupon_scope(self, client, db, monkeypatch):
        monkeypatch.setattr(booking_app, 'SELF_CHANNEL_ID', 'M00001')
        monkeypatch.setattr(booking_app, 'SELF_CHANNEL_IDS', ['M00001', 'M00002'])
        db.tables['FROM coupons'] = [dict(db.tables['FROM coupons'][0], channel_id='M00001')]
        resp = client.post('/api/coupons/validate', json={
            'couponCode': 'SAVE10', 'productId': 'P1', 'channelId': 'M00002',
        })
        assert resp.get_json()['valid'] is True
        resp = client.post('/api/coupons/validate', json={
            'couponCode': 'SAVE10', 'productId': 'P1', 'channelId': 'OTA1',
        })
        assert resp.get_json()['valid'] is False

    def test_remote_validation(self, client, monkeypatch):
        monkeypatch.setenv('COUPON_VALIDATION_URL', 'https://coupons.example.com/validate')
        calls = []

        def fake_post(url, json=None, timeout=None, **kw):
            calls.append((url, json))
            return FakeResponse(200, {'valid': True, 'coupon': {'code': 'REMOTE5'}})

        monkeypatch.setattr(booking_app._requests, 'post', fake_post)
        data = client.post('/api/coupons/validate', json={'couponCode': 'remote5', 'productId': 'P1'}).get_json()
        assert data['valid'] is True
        assert calls[0][1]['productIds'] == ['P1']

    def test_remote_outage(self, client, monkeypatch):
        monkeypatch.setenv('COUPON_VALIDATION_URL', 'https://coupons.example.com/validate')

        def fake_post(*args, **kw):
            raise requests.ConnectionError('down')

        monkeypatch.setattr(booking_app._requests, 'post', fake_post)
        data = client.post('/api/coupons/validate', json={'couponCode': 'X'}).get_json()
        assert data['valid'] is False


# ══════════════════════════════════════════════════════════════
# WIZARD
# ══════════════════════════════════════════════════════════════

class TestWizardRoutes:
    def test_advance_from_date_step_fills_defaults_and_quotes(self, client):
        resp = client.post('/api/wizard/advance', json={'state': {'product_id': 'P1', 'date': '2025-11-05'}})
        data = resp.get_json()
        assert resp.status_code == 200
        assert data['state']['stepName'] == 'REQUIRED_CHOICES'
        assert data['state']['selections'] == {'ticket': 'optB'}
        assert data['quote']['total'] == 150.0

    def test_closed_date_blocks(self, client):
        resp = client.post('/api/wizard/advance', json={'state': {'product_id': 'P1', 'date': '2025-11-06'}})
        assert resp.status_code == 400
        assert resp.get_json()['errors'] == ['The selected date is closed for sale.']

    def test_sold_out_combination_blocks(self, client):
        resp = client.post('/api/wizard/advance', json={'state': booking_state(step=1, selections={'ticket': 'optA'})})
        assert resp.status_code == 400
        assert 'The selected combination is sold out on this date.' in resp.get_json()['errors']

    def test_missing_product_id(self, client):
        assert client.post('/api/wizard/advance', json={'state': {'date': '2025-11-05'}}).status_code == 400

    def test_back(self, client):
        resp = client.post('/api/wizard/back', json={'state': booking_state()})
        state = resp.get_json()['state']
        assert state['step'] == 2
        assert state['guest']['name'] == 'Minji Kim'

    def test_back_with_unknown_step(self, client):
        resp = client.post('/api/wizard/back', json={'state': booking_state(step='bogus')})
        assert resp.status_code == 400
        assert resp.get_json() == {'success': False, 'error': "Invalid step: 'bogus'"}

    def test_coupon_survives_state_round_trip(self, client):
        resp = client.post('/api/wizard/advance', json={
            'state': {'product_id': 'P1', 'date': '2025-11-05'},
            'coupon_code': 'SAVE10',
        })
        data = resp.get_json()
        assert data['quote']['couponDiscount'] == 15.0
        assert data['state']['couponCode'] == 'SAVE10'

        # The returned state alone carries the coupon into the next step
        resp = client.post('/api/wizard/advance', json={'state': data['state']})
        data = resp.get_json()
        assert resp.status_code == 200
        assert data['state']['stepName'] == 'OPTIONAL_CHOICES'
        assert data['state']['couponCode'] == 'SAVE10'
        assert data['quote']['couponDiscount'] == 15.0
        assert data['quote']['total'] == 135.0


# ══════════════════════════════════════════════════════════════
# BOOKINGS & PAYMENT
# ══════════════════════════════════════════════════════════════

class TestBookingRoute:
    def test_booking_without_payment(self, client, db):
        resp = client.post('/api/bookings', json={'state': booking_state(), 'coupon_code': 'SAVE10'})
        data = resp.get_json()
        assert resp.status_code == 201
        assert data['reservationId'] == '1001'
        assert data['reservation']['total_price'] == 270.0
        assert data['reservation']['coupon_code'] == 'SAVE10'
        assert len(db.statements('INSERT INTO reservation_choices')) == 1

    def test_booking_restores_coupon_from_state(self, client):
        resp = client.post('/api/bookings', json={'state': booking_state(couponCode='SAVE10')})
        data = resp.get_json()
        assert resp.status_code == 201
        assert data['reservation']['total_price'] == 270.0
        assert data['reservation']['coupon_code'] == 'SAVE10'

    def test_incomplete_booking_rejected(self, client, db):
        resp = client.post('/api/bookings', json={'state': booking_state(guest={})})
        assert resp.status_code == 400
        assert 'Name is required.' in resp.get_json()['errors']
        assert db.statements('INSERT INTO reservations') == []

    def test_booking_with_payment(self, client, db, monkeypatch):
        monkeypatch.setattr(booking_app, '_create_payment_intent',
                            lambda amount, currency, customer: {'success': True, 'transaction_id': 'txn_1'})
        resp = client.post('/api/bookings', json={'state': booking_state(), 'pay': True})
        assert resp.status_code == 201
        assert resp.get_json()['transactionId'] == 'txn_1'
        assert db.statements('UPDATE reservations')[0][1] == ('txn_1', '1001')

    def test_declined_payment_keeps_state(self, client, db, monkeypatch):
        def decline(amount, currency, customer):
            raise PaymentError('Card declined')

        monkeypatch.setattr(booking_app, '_create_payment_intent', decline)
        resp = client.post('/api/bookings', json={'state': booking_state(), 'pay': True})
        data = resp.get_json()
        assert resp.status_code == 402
        assert data['paymentError'] == 'Card declined'
        assert data['reservationId'] == '1001'
        assert data['state']['guest']['email'] == 'minji@example.com'
        assert db.statements('UPDATE reservations') == []

    def test_declined_payment_retry_keeps_coupon(self, client, db, monkeypatch):
        def decline(amount, currency, customer):
            raise PaymentError('Card declined')

        monkeypatch.setattr(booking_app, '_create_payment_intent', decline)
        resp = client.post('/api/bookings', json={'state': booking_state(), 'coupon_code': 'SAVE10', 'pay': True})
        state = resp.get_json()['state']
        assert state['couponCode'] == 'SAVE10'

        monkeypatch.setattr(booking_app, '_create_payment_intent',
                            lambda amount, currency, customer: {'success': True, 'transaction_id': 'txn_2'})
        resp = client.post('/api/bookings', json={'state': state, 'pay': True})
        data = resp.get_json()
        assert resp.status_code == 201
        assert data['reservation']['total_price'] == 270.0

    def test_partial_write_is_retryable(self, client, db, db_error):
        db.failures['INSERT INTO reservation_pricing'] = db_error
        resp = client.post('/api/bookings', json={'state': booking_state()})
        data = resp.get_json()
        assert resp.status_code == 500
        assert data['retryable'] is True
        assert data['reservationId'] == '1001'


class TestPaymentIntent:
    def test_not_configured(self, monkeypatch):
        monkeypatch.delenv('PAYMENT_API_URL', raising=False)
        with pytest.raises(PaymentError):
            booking_app._create_payment_intent(100, 'USD', GUEST)

    def test_success(self, monkeypatch):
        monkeypatch.setenv('PAYMENT_API_URL', 'https://pay.example.com/v1/')
        monkeypatch.setenv('PAYMENT_API_KEY', 'sk_test')
        captured = {}

        def fake_post(url, json=None, headers=None, timeout=None):
            captured.update(url=url, json=json, headers=headers)
            return FakeResponse(200, {'success': True, 'transaction_id': 'txn_9'})

        monkeypatch.setattr(booking_app._requests, 'post', fake_post)
        result = booking_app._create_payment_intent(315, 'USD', GUEST)

        assert result == {'success': True, 'transaction_id': 'txn_9'}
        assert captured['url'] == 'https://pay.example.com/v1/payment-intents'
        assert captured['json']['amount'] == '315.00'
        assert captured['headers']['Authorization'] == 'Bearer sk_test'

    def test_decline(self, monkeypatch):
        monkeypatch.setenv('PAYMENT_API_URL', 'https://pay.example.com/v1')
        monkeypatch.setenv('PAYMENT_API_KEY', 'sk_test')
        monkeypatch.setattr(booking_app._requests, 'post',
                            lambda *a, **kw: FakeResponse(402, {'error': 'Insufficient funds'}))
        with pytest.raises(PaymentError, match='Insufficient funds'):
            booking_app._create_payment_intent(315, 'USD', GUEST)

    def test_intent_route_rejects_non_positive_amount(self, client):
        assert client.post('/api/payments/intent', json={'amount': 0}).status_code == 400

    @pytest.mark.parametrize('amount', ['Infinity', 'NaN', '"abc"'])
    def test_intent_route_rejects_non_finite_amount(self, client, amount):
        resp = client.post('/api/payments/intent', data='{"amount": ' + amount + '}',
                           content_type='application/json')
        assert resp.status_code == 400
        assert resp.get_json() == {'success': False, 'error': 'Invalid amount'}


# ══════════════════════════════════════════════════════════════
# CONTENT
# ══════════════════════════════════════════════════════════════

class TestContentRoutes:
    def test_resolved_content(self, client, db):
        db.tables['FROM product_details_multilingual'] = [
            {'product_id': 'P1', 'channel_id': None, 'variant_key': 'default', 'language_code': 'en',
             'description': 'Common', 'included': 'Lunch', 'tags': ['canyon']},
            {'product_id': 'P1', 'channel_id': 'OTA1', 'variant_key': 'default', 'language_code': 'en',
             'description': 'OTA copy', 'included': '<p></p>', 'tags': []},
        ]
        data = client.get('/api/products/P1/content?language=en&channel_id=OTA1').get_json()
        assert data['fields']['description'] == 'OTA copy'
        assert data['fields']['included'] == 'Lunch'
        assert data['tags'] == ['canyon']

    def test_merged_content(self, client, db):
        db.tables['FROM product_details_multilingual'] = [
            {'product_id': 'P1', 'channel_id': 'OTA1', 'variant_key': 'default', 'language_code': 'ko',
             'description': '', 'included': 'A'},
            {'product_id': 'P1', 'channel_id': 'OTA2', 'variant_key': 'default', 'language_code': 'ko',
             'description': 'B', 'included': 'C'},
        ]
        data = client.get('/api/products/P1/content/merged?channel_ids=OTA1,OTA2').get_json()
        assert data['channelIds'] == ['OTA1', 'OTA2']
        assert data['fields']['description'] == 'B'
        assert data['fields']['included'] == 'A'

    def test_save_content(self, client, db):
        resp = client.put('/api/products/P1/content', json={
            'channel_id': 'OTA1', 'language_code': 'en', 'fields': {'slogan1': 'Sunrise'},
        })
        assert resp.status_code == 200
        assert db.statements('INSERT INTO product_details_multilingual')

    def test_save_content_requires_language(self, client):
        resp = client.put('/api/products/P1/content', json={'fields': {'slogan1': 'x'}})
        assert resp.status_code == 400

    def test_reset_unknown_field(self, client):
        resp = client.post('/api/products/P1/content/reset', json={'language_code': 'en', 'field': 'nope'})
        assert resp.status_code == 400
