"""
Booking wizard state machine.

Steps, in order: SELECT_DATE → REQUIRED_CHOICES → OPTIONAL_CHOICES →
GUEST_INFO → PAYMENT. The wizard state is an immutable BookingState;
every user action returns a new state. Step guards are plain functions
over (state, context) and hold nothing beyond the current step index.
"""

from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from enum import IntEnum
from typing import Dict, List, Any, Callable, FrozenSet, Mapping, Optional
import json
import logging
import re
import threading

from pricing_engine import (
    AvailabilityEvaluator,
    BookingEngine,
    BookingValidationError,
    ChoiceCatalog,
    Coupon,
    CouponValidator,
    CouponRejectedError,
    DatePricingIndex,
    InvalidConfigurationError,
    PersistenceError,
    PricingCalculator,
    Product,
    ReservationParticipants,
    build_quote_result,
    date_key,
    to_money,
)

import psycopg2

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


class Step(IntEnum):
    SELECT_DATE = 0
    REQUIRED_CHOICES = 1
    OPTIONAL_CHOICES = 2
    GUEST_INFO = 3
    PAYMENT = 4


@dataclass(frozen=True)
class GuestInfo:
    name: str = ''
    email: str = ''
    phone: str = ''
    country: str = ''
    language: str = ''
    special_requests: str = ''

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'GuestInfo':
        data = data or {}
        return cls(**{k: str(data.get(k) or '').strip() for k in cls.__dataclass_fields__})


@dataclass(frozen=True)
class BookingState:
    """Selections are never mutated in place; transitions copy them."""
    product_id: str
    channel_id: Optional[str] = None
    step: Step = Step.SELECT_DATE
    date: Optional[str] = None
    participants: ReservationParticipants = ReservationParticipants()
    selections: Dict[str, str] = field(default_factory=dict)
    addons: FrozenSet[str] = frozenset()
    guest: GuestInfo = GuestInfo()
    coupon: Optional[Coupon] = None
    payment_ready: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'BookingState':
        raw_step = data.get('step', 0)
        try:
            if isinstance(raw_step, str) and not raw_step.isdigit():
                step = Step[raw_step.upper()]
            else:
                step = Step(int(raw_step))
        except (KeyError, ValueError, TypeError):
            raise InvalidConfigurationError(f"Invalid step: {raw_step!r}")
        return cls(
            product_id=str(data.get('product_id') or ''),
            channel_id=data.get('channel_id') or None,
            step=step,
            date=date_key(data.get('date')),
            participants=ReservationParticipants.from_dict(data.get('participants')),
            selections=dict(data.get('selections') or {}),
            addons=frozenset(data.get('addons') or ()),
            guest=GuestInfo.from_dict(data.get('guest')),
            payment_ready=bool(data.get('payment_ready')),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'product_id': self.product_id,
            'channel_id': self.channel_id,
            'step': int(self.step),
            'stepName': self.step.name,
            'date': self.date,
            'participants': self.participants.to_dict(),
            'selections': dict(self.selections),
            'addons': sorted(self.addons),
            'guest': dict(self.guest.__dict__),
            'couponCode': self.coupon.code if self.coupon else None,
            'payment_ready': self.payment_ready,
        }


@dataclass(frozen=True)
class BookingContext:
    """Data loaded once per product; everything else recomputes from it."""
    product: Product
    index: DatePricingIndex
    catalog: ChoiceCatalog
    loaded: bool = True

    @property
    def evaluator(self) -> AvailabilityEvaluator:
        return AvailabilityEvaluator(self.index, self.catalog)

    @property
    def calculator(self) -> PricingCalculator:
        return PricingCalculator(self.product, self.index)


# =====================================================
# TRANSITIONS
# =====================================================

def start(product_id: str, channel_id: Optional[str] = None, context: Optional[BookingContext] = None) -> BookingState:
    selections = context.catalog.default_selections() if context else {}
    return BookingState(product_id=str(product_id), channel_id=channel_id, selections=selections)


def fill_default_selections(state: BookingState, context: BookingContext) -> BookingState:
    """Default option for every required group the shopper has not touched."""
    selections = dict(context.catalog.default_selections())
    selections.update(state.selections)
    return replace(state, selections=selections)


def select_date(state: BookingState, day) -> BookingState:
    return replace(state, date=date_key(day))


def set_participants(state: BookingState, adults: int, children: int = 0, infants: int = 0) -> BookingState:
    return replace(state, participants=ReservationParticipants(int(adults), int(children), int(infants)))


def select_option(state: BookingState, group_id: str, option_id: str) -> BookingState:
    selections = dict(state.selections)
    selections[group_id] = option_id
    return replace(state, selections=selections)


def toggle_addon(state: BookingState, option_id: str) -> BookingState:
    addons = set(state.addons)
    if option_id in addons:
        addons.discard(option_id)
    else:
        addons.add(option_id)
    return replace(state, addons=frozenset(addons))


def set_guest_info(state: BookingState, **values) -> BookingState:
    current = dict(state.guest.__dict__)
    current.update({k: str(v or '').strip() for k, v in values.items() if k in current})
    return replace(state, guest=GuestInfo(**current))


def apply_coupon(state: BookingState, coupon: Coupon, today: Optional[date] = None,
                 channel_id: Optional[str] = None) -> BookingState:
    """
    Eligibility is checked here once; the amount is recomputed by quote().
    ``channel_id`` overrides the state channel, e.g. with its folded form.
    """
    channel_id = state.channel_id if channel_id is None else channel_id
    error = CouponValidator.check(coupon, state.product_id, channel_id, today)
    if error:
        raise CouponRejectedError(error)
    return replace(state, coupon=coupon)


def remove_coupon(state: BookingState) -> BookingState:
    return replace(state, coupon=None)


def set_payment_ready(state: BookingState, ready: bool) -> BookingState:
    return replace(state, payment_ready=bool(ready))


# =====================================================
# GUARDS
# =====================================================

def step_errors(state: BookingState, context: Optional[BookingContext], step: Optional[Step] = None) -> List[str]:
    step = state.step if step is None else step
    errors: List[str] = []

    if step == Step.SELECT_DATE:
        if context is None or not context.loaded:
            errors.append('Pricing and choices are still loading.')
        if not state.date:
            errors.append('Please select a tour date.')
        elif context is not None and not context.index.is_date_open(state.date):
            errors.append('The selected date is closed for sale.')

    elif step == Step.REQUIRED_CHOICES:
        p = state.participants
        if p.adults < 1:
            errors.append('At least 1 adult is required.')
        if min(p.children, p.infants) < 0:
            errors.append('Participant counts cannot be negative.')
        if context is not None:
            if p.total > context.product.max_participants:
                errors.append(f'At most {context.product.max_participants} participants can be booked.')
            for group in context.catalog.missing_required(state.selections):
                errors.append(f'Please choose an option for {group.name or group.id}.')
            if not errors and state.date and not context.evaluator.is_current_selection_open(state.selections, state.date):
                errors.append('The selected combination is sold out on this date.')

    elif step == Step.GUEST_INFO:
        g = state.guest
        if not g.name:
            errors.append('Name is required.')
        if not g.email:
            errors.append('Email is required.')
        elif not EMAIL_RE.match(g.email):
            errors.append('Email address is not valid.')
        if not g.phone:
            errors.append('Phone number is required.')
        if not g.country:
            errors.append('Country is required.')
        if not g.language:
            errors.append('Preferred language is required.')

    # OPTIONAL_CHOICES is always passable; PAYMENT is gated by the payment provider
    return errors


def can_advance(state: BookingState, context: Optional[BookingContext]) -> bool:
    return not step_errors(state, context)


def advance(state: BookingState, context: Optional[BookingContext]) -> BookingState:
    errors = step_errors(state, context)
    if errors:
        raise BookingValidationError(errors)
    if state.step == Step.PAYMENT:
        return state
    return replace(state, step=Step(state.step + 1))


def back(state: BookingState) -> BookingState:
    """Backward moves are always allowed and keep entered data."""
    if state.step == Step.SELECT_DATE:
        return state
    return replace(state, step=Step(state.step - 1))


def validate_all(state: BookingState, context: Optional[BookingContext]) -> None:
    errors: List[str] = []
    for step in (Step.SELECT_DATE, Step.REQUIRED_CHOICES, Step.OPTIONAL_CHOICES, Step.GUEST_INFO):
        errors.extend(step_errors(state, context, step))
    if errors:
        raise BookingValidationError(errors)


# =====================================================
# LIVE RECOMPUTATION
# =====================================================

def quote(state: BookingState, context: BookingContext) -> Dict[str, Any]:
    selection_map = context.catalog.selection_map(state.selections, state.addons)
    breakdown = context.calculator.breakdown(state.date, state.participants, selection_map, context.catalog)
    discount = CouponValidator.discount_for(state.coupon, breakdown['subtotal'])
    return build_quote_result(breakdown, discount, state.coupon, state.participants, {
        'dateOpen': context.index.is_date_open(state.date),
        'selectionOpen': context.evaluator.is_current_selection_open(state.selections, state.date),
        'demandState': context.index.demand_state(state.date),
    })


# =====================================================
# SESSION LOADING
# =====================================================

class BookingSession:
    """
    Loads the pricing index and the choice catalog concurrently, one
    connection per load. Once closed, late results are discarded.
    """

    def __init__(self, connection_factory: Callable[[], Any], product_id, channel_id: Optional[str] = None,
                 window_days: int = 120, self_channel_id: Optional[str] = None,
                 self_channel_ids=(), max_window_days: int = 366):
        self.connection_factory = connection_factory
        self.product_id = str(product_id)
        self.channel_id = channel_id
        self.window_days = window_days
        self.self_channel_id = self_channel_id
        self.self_channel_ids = tuple(self_channel_ids or ())
        self.max_window_days = max_window_days
        self.context: Optional[BookingContext] = None
        self._closed = False
        self._futures = []
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def _engine(self, conn) -> BookingEngine:
        return BookingEngine(conn, self.window_days, self.self_channel_id,
                             self.self_channel_ids, self.max_window_days)

    def _load_pricing(self, date_from, date_to):
        conn = self.connection_factory()
        try:
            engine = self._engine(conn)
            product = engine.get_product(self.product_id)
            return product, engine.load_pricing_index(product, date_from, date_to, self.channel_id)
        finally:
            conn.close()

    def _load_catalog(self):
        conn = self.connection_factory()
        try:
            return self._engine(conn).load_choice_catalog(self.product_id)
        finally:
            conn.close()

    def load(self, date_from=None, date_to=None) -> Optional[BookingContext]:
        with ThreadPoolExecutor(max_workers=2) as executor:
            pricing = executor.submit(self._load_pricing, date_from, date_to)
            catalog = executor.submit(self._load_catalog)
            with self._lock:
                self._futures = [pricing, catalog]
                if self._closed:
                    pricing.cancel()
                    catalog.cancel()
            wait([pricing, catalog])

        with self._lock:
            if self._closed:
                logger.info(f"Booking session for product {self.product_id} closed during load; discarding results")
                return None
            product, index = pricing.result()
            self.context = BookingContext(product=product, index=index, catalog=catalog.result())
            return self.context

    def close(self) -> None:
        with self._lock:
            self._closed = True
            for future in self._futures:
                future.cancel()


# =====================================================
# RESERVATION PAYLOAD & PERSISTENCE
# =====================================================

def build_reservation_payload(state: BookingState, context: BookingContext, currency: str = 'USD') -> Dict[str, Any]:
    validate_all(state, context)

    selection_map = context.catalog.selection_map(state.selections, state.addons)
    breakdown = context.calculator.breakdown(state.date, state.participants, selection_map, context.catalog)
    discount = CouponValidator.discount_for(state.coupon, breakdown['subtotal'])
    final_total = CouponValidator.final_price(breakdown['subtotal'], discount)
    units = breakdown['unit_prices']

    return {
        'product_id': context.product.id,
        'channel_id': state.channel_id,
        'tour_date': state.date,
        'participants': state.participants.to_dict(),
        'customer': dict(state.guest.__dict__),
        'selections': [
            {
                'choice_id': s['choice_id'],
                'option_id': s['option_id'],
                'required': s['required'],
                'quantity': s['quantity'],
                'total_price': to_money(s['total']),
            }
            for s in breakdown['selections']
        ],
        'adult_product_price': to_money(units['adult']),
        'child_product_price': to_money(units['child']),
        'infant_product_price': to_money(units['infant']),
        'product_price_total': to_money(breakdown['base_total']),
        'choices_total': to_money(breakdown['choices_total']),
        'option_total': to_money(breakdown['options_total']),
        'subtotal': to_money(breakdown['subtotal']),
        'coupon_code': state.coupon.code if state.coupon else None,
        'coupon_discount': to_money(discount),
        'total_price': to_money(final_total),
        'currency': currency,
    }


def save_reservation(db, payload: Dict[str, Any]) -> str:
    """
    Write the reservation row, then its pricing and choice rows.
    A failure after the reservation row is committed is logged and
    surfaced, but not rolled back.
    """
    p = payload['participants']
    c = payload['customer']
    cursor = db.cursor()
    try:
        cursor.execute(
            """INSERT INTO reservations
                   (product_id, channel_id, tour_date, adults, child, infant, total_people,
                    customer_name, email, phone, country, language, special_requests, status)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 'pending')
               RETURNING id""",
            (payload['product_id'], payload['channel_id'], payload['tour_date'],
             p['adults'], p['children'], p['infants'],
             p['adults'] + p['children'] + p['infants'],
             c['name'], c['email'], c['phone'], c['country'], c['language'],
             c.get('special_requests', ''))
        )
        reservation_id = str(cursor.fetchone()[0])
        db.commit()
    except psycopg2.Error as e:
        db.rollback()
        logger.error(f"Reservation insert failed: {e}", exc_info=True)
        raise PersistenceError('Could not save the reservation. Please try again.')

    try:
        cursor.execute(
            """INSERT INTO reservation_pricing
                   (reservation_id, adult_product_price, child_product_price, infant_product_price,
                    product_price_total, choices_total, option_total, subtotal,
                    coupon_code, coupon_discount, total_price, currency)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
            (reservation_id, payload['adult_product_price'], payload['child_product_price'],
             payload['infant_product_price'], payload['product_price_total'],
             payload['choices_total'], payload['option_total'], payload['subtotal'],
             payload['coupon_code'], payload['coupon_discount'], payload['total_price'],
             payload['currency'])
        )
        for selection in payload['selections']:
            cursor.execute(
                """INSERT INTO reservation_choices
                       (reservation_id, choice_id, option_id, quantity, total_price)
                   VALUES (%s, %s, %s, %s, %s)""",
                (reservation_id, selection['choice_id'], selection['option_id'],
                 selection['quantity'], selection['total_price'])
            )
        db.commit()
    except psycopg2.Error as e:
        db.rollback()
        logger.error(f"Partial reservation write for {reservation_id}: {e}", exc_info=True)
        raise PersistenceError('The reservation was created but its details could not be saved. Please retry.',
                               reservation_id=reservation_id)

    logger.info(f"Reservation {reservation_id} saved: total={payload['total_price']} {payload['currency']}")
    return reservation_id


def record_payment(db, reservation_id: str, transaction_id: str) -> None:
    """Stamp the provider's opaque transaction id onto the reservation."""
    cursor = db.cursor()
    try:
        cursor.execute(
            """UPDATE reservations
               SET payment_transaction_id = %s, status = 'confirmed'
               WHERE id::text = %s""",
            (str(transaction_id), str(reservation_id))
        )
        db.commit()
    except psycopg2.Error as e:
        db.rollback()
        logger.error(f"Could not stamp payment {transaction_id} on reservation {reservation_id}: {e}", exc_info=True)
        raise PersistenceError('Payment succeeded but the reservation could not be updated.',
                               reservation_id=reservation_id)


def payload_to_json(payload: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(json.dumps(payload, default=lambda o: float(o) if isinstance(o, Decimal) else str(o)))
