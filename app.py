"""
Tour Booking Engine: Flask Backend
===================================
JSON API over the pricing, availability and content engines that back the
booking wizard and the product-details editor.

Surfaces:
- Date pricing index dump (per-date prices, sale flag, demand state)
- Choice catalog with default selections
- Option availability grid for a date and current selection
- Price quote with optional coupon
- Coupon validation (local rules, or proxied via COUPON_VALIDATION_URL)
- Wizard step gate (advance / back)
- Booking completion: persistence + optional payment intent
- Multilingual content: resolve, multi-channel merge, upsert, field reset

Store reads that fail degrade (base price / fully open / empty field);
only contract violations and write failures surface as errors.
"""

from flask import Flask, request, jsonify
from flask_cors import CORS
from dotenv import load_dotenv
import psycopg2
import os
import logging
import requests as _requests
from datetime import timedelta
from decimal import Decimal

from pricing_engine import (
    BookingEngine,
    CouponValidator,
    AvailabilityEvaluator,
    PricingEngineError,
    ComponentNotFoundError,
    InvalidConfigurationError,
    BookingValidationError,
    CouponRejectedError,
    PaymentError,
    PersistenceError,
    date_key,
    parse_date,
    to_decimal,
    to_money,
)
from content_resolver import ContentStore
import booking_wizard as wizard

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = os.environ.get('SECRET_KEY', 'your-secret-key-change-in-production')
CORS(app)

# =====================================================
# CONFIGURATION
# =====================================================

DB_CONFIG = {
    'host': os.environ.get('DB_HOST', 'localhost'),
    'port': int(os.environ.get('DB_PORT', 5432)),
    'database': os.environ.get('DB_NAME', 'tour_booking'),
    'user': os.environ.get('DB_USER', 'postgres'),
    'password': os.environ.get('DB_PASS', ''),
}

DEFAULT_CURRENCY = os.environ.get('DEFAULT_CURRENCY', 'USD')
SELF_CHANNEL_ID = os.environ.get('SELF_CHANNEL_ID', 'M00001')
SELF_CHANNEL_IDS = [c.strip() for c in os.environ.get('SELF_CHANNEL_IDS', '').split(',') if c.strip()]
PRICING_WINDOW_DAYS = int(os.environ.get('PRICING_WINDOW_DAYS', 120))
PRICING_MAX_WINDOW_DAYS = int(os.environ.get('PRICING_MAX_WINDOW_DAYS', 366))


# =====================================================
# DATABASE
# =====================================================

def get_db():
    return psycopg2.connect(**DB_CONFIG)


def _engine_error(e: PricingEngineError):
    """Map engine exceptions to HTTP responses."""
    if isinstance(e, ComponentNotFoundError):
        return jsonify({'success': False, 'error': str(e)}), 404
    if isinstance(e, BookingValidationError):
        return jsonify({'success': False, 'error': str(e), 'errors': e.errors}), 400
    if isinstance(e, PaymentError):
        return jsonify({'success': False, 'error': str(e)}), 402
    if isinstance(e, PersistenceError):
        return jsonify({
            'success': False,
            'error': str(e),
            'reservationId': e.reservation_id,
            'retryable': True,
        }), 500
    return jsonify({'success': False, 'error': str(e)}), 400


def _content_store(db) -> ContentStore:
    return ContentStore(db, SELF_CHANNEL_ID, SELF_CHANNEL_IDS)


def _engine(db) -> BookingEngine:
    return BookingEngine(db, PRICING_WINDOW_DAYS, SELF_CHANNEL_ID, SELF_CHANNEL_IDS, PRICING_MAX_WINDOW_DAYS)


# =====================================================
# PAYMENT PROVIDER
# =====================================================

def _get_payment_base_url() -> str:
    return os.environ.get('PAYMENT_API_URL', '').strip().rstrip('/')


def _get_payment_credentials() -> str:
    """
    Return the payment provider API key.
    Raises ValueError if it is not configured. The key is never logged.
    """
    api_key = os.environ.get('PAYMENT_API_KEY', '').strip()
    if not _get_payment_base_url():
        raise ValueError(
            "Payment provider URL is not configured. "
            "Set the PAYMENT_API_URL environment variable."
        )
    if not api_key:
        raise ValueError(
            "Payment provider key is not configured. "
            "Set the PAYMENT_API_KEY environment variable."
        )
    return api_key


def _create_payment_intent(amount: Decimal, currency: str, customer: dict) -> dict:
    """
    Ask the payment provider for a payment intent.

    Returns {'success': True, 'transaction_id': str}. The transaction id is
    opaque and only stamped onto the reservation.
    Raises PaymentError on decline, provider error or transport failure.
    """
    try:
        api_key = _get_payment_credentials()
    except ValueError as e:
        raise PaymentError(str(e))

    url = f'{_get_payment_base_url()}/payment-intents'
    body = {
        'amount': str(to_money(amount)),
        'currency': currency,
        'customer': {
            'name': customer.get('name', ''),
            'email': customer.get('email', ''),
            'phone': customer.get('phone', ''),
        },
    }

    logger.info(f"Payment intent: requesting amount={body['amount']} {currency}")
    try:
        resp = _requests.post(
            url,
            json=body,
            headers={'Authorization': f'Bearer {api_key}'},
            timeout=15,
        )
    except _requests.RequestException as e:
        logger.error(f"Payment provider unreachable: {e}", exc_info=True)
        raise PaymentError('The payment provider could not be reached. Please try again.')

    try:
        data = resp.json()
    except ValueError:
        data = {}

    if resp.status_code >= 400 or not data.get('success', resp.ok):
        message = data.get('error') or data.get('message') or f'Payment failed (HTTP {resp.status_code})'
        logger.warning(f"Payment intent declined: {message}")
        raise PaymentError(message)

    transaction_id = data.get('transaction_id') or data.get('id')
    if not transaction_id:
        raise PaymentError('The payment provider did not return a transaction id.')
    return {'success': True, 'transaction_id': str(transaction_id)}


# =====================================================
# REMOTE COUPON VALIDATION
# =====================================================

def _remote_coupon_validation(code: str, product_id, channel_id=None, total_amount=None) -> dict:
    """Same contract as the local rules: {valid, coupon | error}."""
    url = os.environ.get('COUPON_VALIDATION_URL', '').strip()
    try:
        resp = _requests.post(
            url,
            json={
                'couponCode': code,
                'productIds': [product_id] if product_id else [],
                'channelId': channel_id,
                'totalAmount': total_amount,
            },
            timeout=10,
        )
        data = resp.json()
    except (_requests.RequestException, ValueError) as e:
        logger.error(f"Remote coupon validation failed: {e}", exc_info=True)
        return {'valid': False, 'error': 'Coupon validation is temporarily unavailable.'}

    if not data.get('valid'):
        return {'valid': False, 'error': data.get('error') or 'Invalid coupon code.'}
    return data


# =====================================================
# REQUEST SANITISERS
# =====================================================

def _extract_selections(payload: dict) -> dict:
    raw = payload.get('selections')
    if not raw or not isinstance(raw, dict):
        return {}
    return {str(k): str(v) for k, v in raw.items() if v}


def _extract_state(payload: dict) -> wizard.BookingState:
    raw = payload.get('state') or payload
    if not isinstance(raw, dict) or not raw.get('product_id'):
        raise InvalidConfigurationError("Missing required field: product_id")
    return wizard.BookingState.from_dict(raw)


def _load_context(state: wizard.BookingState):
    session = wizard.BookingSession(
        get_db, state.product_id, state.channel_id, PRICING_WINDOW_DAYS,
        SELF_CHANNEL_ID, SELF_CHANNEL_IDS, PRICING_MAX_WINDOW_DAYS,
    )
    day = state.date
    return session.load(day, day) if day else session.load()


def _attach_coupon(state: wizard.BookingState, payload: dict) -> wizard.BookingState:
    # A round-tripped state carries its coupon as couponCode
    raw = payload.get('state') if isinstance(payload.get('state'), dict) else payload
    code = (payload.get('coupon_code') or raw.get('couponCode') or '').strip()
    if not code:
        return state
    db = get_db()
    try:
        engine = _engine(db)
        coupon = engine.find_coupon(code)
    finally:
        db.close()
    return wizard.apply_coupon(state, coupon, channel_id=engine.normalize_channel(state.channel_id))


# =====================================================
# PRICING & AVAILABILITY
# =====================================================

@app.route('/api/products/<product_id>/pricing', methods=['GET'])
def product_pricing(product_id):
    db = get_db()
    try:
        engine = _engine(db)
        product = engine.get_product(product_id)
        index = engine.load_pricing_index(
            product,
            request.args.get('from'),
            request.args.get('to'),
            request.args.get('channel_id'),
        )
        start, end = parse_date(index.window[0]), parse_date(index.window[1])
        days = [index.describe(start + timedelta(days=i)) for i in range((end - start).days + 1)]
        return jsonify({'productId': product.id, 'from': index.window[0], 'to': index.window[1], 'dates': days})
    except PricingEngineError as e:
        logger.error(f"Pricing index error for {product_id}: {e}", exc_info=True)
        return _engine_error(e)
    except Exception as e:
        logger.error(f"Unexpected pricing index error: {e}", exc_info=True)
        return jsonify({'error': str(e)}), 500
    finally:
        db.close()


@app.route('/api/products/<product_id>/choices', methods=['GET'])
def product_choices(product_id):
    db = get_db()
    try:
        catalog = _engine(db).load_choice_catalog(product_id)
        return jsonify(catalog.to_dict())
    except Exception as e:
        logger.error(f"Error loading choices for {product_id}: {e}", exc_info=True)
        return jsonify({'error': str(e)}), 500
    finally:
        db.close()


@app.route('/api/availability', methods=['POST'])
def availability():
    """
    Option grid for the required-choices step.

    Body: {product_id, channel_id?, date?, selections?}
    """
    payload = request.get_json(silent=True) or {}
    db = get_db()
    try:
        engine = _engine(db)
        product = engine.get_product(payload.get('product_id'))
        day = date_key(payload.get('date'))
        index = engine.load_pricing_index(product, day, day, payload.get('channel_id'))
        catalog = engine.load_choice_catalog(product.id)
        selections = _extract_selections(payload) or catalog.default_selections()
        evaluator = AvailabilityEvaluator(index, catalog)
        return jsonify({
            'date': day,
            'dateOpen': index.is_date_open(day) if day else True,
            'demandState': index.demand_state(day) if day else None,
            'selectionKey': evaluator.selection_key(selections),
            'selectionOpen': evaluator.is_current_selection_open(selections, day),
            'options': evaluator.option_grid(selections, day),
        })
    except PricingEngineError as e:
        return _engine_error(e)
    except Exception as e:
        logger.error(f"Unexpected availability error: {e}", exc_info=True)
        return jsonify({'error': str(e)}), 500
    finally:
        db.close()


@app.route('/api/quote', methods=['POST'])
def quote():
    """
    Price preview.

    Body: {product_id, channel_id?, date, participants, selections?, addons?, coupon_code?}
    """
    payload = request.get_json(silent=True)
    if not payload:
        return jsonify({'success': False, 'error': 'No data provided', 'total': 0}), 400

    db = get_db()
    try:
        logger.info(f"Quote request: product={payload.get('product_id')} date={payload.get('date')}")
        result = _engine(db).calculate_quote(payload)
        logger.info(f"Quote successful: total={result['total']} subtotal={result['subtotal']}")
        return jsonify(result)
    except PricingEngineError as e:
        logger.error(f"Pricing engine error: {e}", exc_info=True)
        return _engine_error(e)
    except Exception as e:
        logger.error(f"Unexpected quote error: {e}", exc_info=True)
        return jsonify({'success': False, 'error': f'Server error: {str(e)}', 'total': 0}), 500
    finally:
        db.close()


# =====================================================
# COUPONS
# =====================================================

@app.route('/api/coupons/validate', methods=['POST'])
def validate_coupon():
    """
    Body: {couponCode, productId, channelId?, totalAmount?}
    Validation failures are returned with HTTP 200 and valid=False.
    """
    data = request.get_json(silent=True)
    if data is None:
        return jsonify({'valid': False, 'error': 'Malformed request body.'}), 400

    code = data.get('couponCode') or ''
    product_id = data.get('productId')
    channel_id = data.get('channelId')
    total_amount = data.get('totalAmount')

    if os.environ.get('COUPON_VALIDATION_URL', '').strip():
        return jsonify(_remote_coupon_validation(code, product_id, channel_id, total_amount))

    db = get_db()
    try:
        engine = _engine(db)
        coupons = engine.fetch_active_coupons()
        return jsonify(CouponValidator.validate(
            coupons, code, product_id, engine.normalize_channel(channel_id), total_amount
        ))
    except psycopg2.Error as e:
        logger.error(f"Coupon lookup failed: {e}", exc_info=True)
        return jsonify({'valid': False, 'error': 'Coupon lookup failed.'})
    except PricingEngineError as e:
        return jsonify({'valid': False, 'error': str(e)})
    finally:
        db.close()


# =====================================================
# BOOKING WIZARD
# =====================================================

@app.route('/api/wizard/advance', methods=['POST'])
def wizard_advance():
    payload = request.get_json(silent=True) or {}
    try:
        state = _extract_state(payload)
        context = _load_context(state)
        if context is not None:
            state = wizard.fill_default_selections(state, context)
        state = _attach_coupon(state, payload)
        next_state = wizard.advance(state, context)
        body = {'success': True, 'state': next_state.to_dict()}
        if next_state.date and context is not None and context.index.is_date_open(next_state.date):
            body['quote'] = wizard.quote(next_state, context)
        return jsonify(body)
    except CouponRejectedError as e:
        return jsonify({'success': False, 'error': str(e), 'errors': [str(e)]}), 400
    except PricingEngineError as e:
        return _engine_error(e)
    except Exception as e:
        logger.error(f"Unexpected wizard error: {e}", exc_info=True)
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/wizard/back', methods=['POST'])
def wizard_back():
    payload = request.get_json(silent=True) or {}
    try:
        state = _extract_state(payload)
        return jsonify({'success': True, 'state': wizard.back(state).to_dict()})
    except PricingEngineError as e:
        return _engine_error(e)


@app.route('/api/bookings', methods=['POST'])
def create_booking():
    """
    Complete a booking.

    Body: {state: {...}, coupon_code?, pay?: bool}
    The reservation is written first; a failed payment leaves it pending
    and can be retried through /api/payments/intent.
    """
    payload = request.get_json(silent=True) or {}
    try:
        state = _attach_coupon(_extract_state(payload), payload)
        context = _load_context(state)
        reservation = wizard.build_reservation_payload(state, context, DEFAULT_CURRENCY)
    except PricingEngineError as e:
        logger.error(f"Booking rejected: {e}")
        return _engine_error(e)

    db = get_db()
    try:
        reservation_id = wizard.save_reservation(db, reservation)
        body = {
            'success': True,
            'reservationId': reservation_id,
            'reservation': wizard.payload_to_json(reservation),
        }

        if payload.get('pay'):
            try:
                intent = _create_payment_intent(reservation['total_price'], DEFAULT_CURRENCY, reservation['customer'])
            except PaymentError as e:
                body.update({'success': False, 'paymentError': str(e), 'state': state.to_dict()})
                return jsonify(body), 402
            wizard.record_payment(db, reservation_id, intent['transaction_id'])
            body['transactionId'] = intent['transaction_id']

        return jsonify(body), 201
    except PricingEngineError as e:
        return _engine_error(e)
    except Exception as e:
        logger.error(f"Unexpected booking error: {e}", exc_info=True)
        return jsonify({'success': False, 'error': str(e), 'retryable': True}), 500
    finally:
        db.close()


@app.route('/api/payments/intent', methods=['POST'])
def payment_intent():
    """Body: {reservationId?, amount, currency?, customer}"""
    data = request.get_json(silent=True) or {}
    try:
        amount = to_decimal(data.get('amount', 0))
    except PricingEngineError:
        return jsonify({'success': False, 'error': 'Invalid amount'}), 400
    if amount <= 0:
        return jsonify({'success': False, 'error': 'Amount must be positive'}), 400

    try:
        intent = _create_payment_intent(amount, data.get('currency') or DEFAULT_CURRENCY, data.get('customer') or {})
    except PaymentError as e:
        return _engine_error(e)

    reservation_id = data.get('reservationId')
    if reservation_id:
        db = get_db()
        try:
            wizard.record_payment(db, reservation_id, intent['transaction_id'])
        except PersistenceError as e:
            return _engine_error(e)
        finally:
            db.close()
    return jsonify({'success': True, 'transactionId': intent['transaction_id']})


# =====================================================
# PRODUCT CONTENT
# =====================================================

@app.route('/api/products/<product_id>/content', methods=['GET'])
def product_content(product_id):
    language = request.args.get('language', 'ko')
    channel_id = request.args.get('channel_id') or None
    variant_key = request.args.get('variant_key') or 'default'

    db = get_db()
    try:
        resolver = _content_store(db).load(product_id)
        return jsonify({
            'productId': product_id,
            'channelId': resolver.normalize_channel(channel_id),
            'variantKey': variant_key,
            'language': language,
            'fields': resolver.resolve_all(channel_id, variant_key, language),
            'tags': resolver.resolve_tags(channel_id, variant_key, language),
        })
    except Exception as e:
        logger.error(f"Error resolving content for {product_id}: {e}", exc_info=True)
        return jsonify({'error': str(e)}), 500
    finally:
        db.close()


@app.route('/api/products/<product_id>/content/merged', methods=['GET'])
def product_content_merged(product_id):
    language = request.args.get('language', 'ko')
    variant_key = request.args.get('variant_key') or 'default'
    channel_ids = [c.strip() for c in request.args.get('channel_ids', '').split(',') if c.strip()]

    db = get_db()
    try:
        resolver = _content_store(db).load(product_id, language)
        return jsonify({
            'productId': product_id,
            'channelIds': channel_ids,
            'fields': resolver.merge_channels(channel_ids, variant_key, language),
        })
    except Exception as e:
        logger.error(f"Error merging content for {product_id}: {e}", exc_info=True)
        return jsonify({'error': str(e)}), 500
    finally:
        db.close()


@app.route('/api/products/<product_id>/content', methods=['PUT'])
def save_product_content(product_id):
    data = request.get_json(silent=True) or {}
    db = get_db()
    try:
        _content_store(db).save(
            product_id,
            data.get('channel_id'),
            data.get('variant_key'),
            data.get('language_code'),
            data.get('fields') or {},
            data.get('tags'),
        )
        return jsonify({'message': 'Content saved'})
    except PricingEngineError as e:
        return _engine_error(e)
    except Exception as e:
        db.rollback()
        logger.error(f"Error saving content for {product_id}: {e}", exc_info=True)
        return jsonify({'error': str(e)}), 500
    finally:
        db.close()


@app.route('/api/products/<product_id>/content/reset', methods=['POST'])
def reset_product_content(product_id):
    data = request.get_json(silent=True) or {}
    db = get_db()
    try:
        updated = _content_store(db).reset_field(
            product_id,
            data.get('channel_id'),
            data.get('variant_key'),
            data.get('language_code'),
            data.get('field', ''),
        )
        return jsonify({'message': 'Field reset', 'updated': updated})
    except PricingEngineError as e:
        return _engine_error(e)
    except Exception as e:
        db.rollback()
        logger.error(f"Error resetting content for {product_id}: {e}", exc_info=True)
        return jsonify({'error': str(e)}), 500
    finally:
        db.close()


# =====================================================
# ENTRY POINT
# =====================================================

if __name__ == '__main__':
    app.run(debug=True, host='0.0.0.0', port=5001)
