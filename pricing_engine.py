"""
Tour Pricing & Availability Engine
==================================
Core calculation logic behind the booking wizard:
  - Per-date dynamic pricing (adult / child / infant overrides)
  - Per-date and per-choice-combination sale availability
  - Date demand state (open / filling / confirmed / nearly full / closed)
  - Required / optional choice catalog with per-category adjustments
  - Coupon eligibility and discount computation

This is the SINGLE SOURCE OF TRUTH for all booking price computation.
Routes and the wizard MUST call this engine and never compute prices themselves.

Loading vs. computing:
  - BookingEngine talks to PostgreSQL and builds the pure objects below.
  - DatePricingIndex, ChoiceCatalog, AvailabilityEvaluator, PricingCalculator
    and CouponValidator never touch the database; every recompute after the
    initial load is synchronous over already-loaded data.
  - A failed read degrades to "no overrides" (base price, fully open) instead
    of blocking the booking path.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, List, Any, Iterable, Mapping, Optional, Tuple
import json
import logging

import psycopg2

logger = logging.getLogger(__name__)

CATEGORIES = ('adult', 'child', 'infant')
DEFAULT_VARIANT = 'default'
DEFAULT_MAX_PARTICIPANTS = 20
NEARLY_FULL_RATIO = Decimal('0.8')

DEMAND_OPEN = 'open'
DEMAND_FILLING = 'filling'
DEMAND_CONFIRMED = 'confirmed'
DEMAND_NEARLY_FULL = 'nearly_full'
DEMAND_CLOSED = 'closed'


# =====================================================
# EXCEPTIONS
# =====================================================

class PricingEngineError(Exception):
    """Base exception for pricing engine errors"""
    pass

class ComponentNotFoundError(PricingEngineError):
    pass

class RateMissingError(PricingEngineError):
    pass

class InvalidConfigurationError(PricingEngineError):
    pass

class CouponRejectedError(PricingEngineError):
    pass

class BookingValidationError(PricingEngineError):
    """Step guard failure. ``errors`` holds the user-facing messages."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__('; '.join(self.errors))

class PaymentError(PricingEngineError):
    pass

class PersistenceError(PricingEngineError):
    def __init__(self, message: str, reservation_id=None):
        self.reservation_id = reservation_id
        super().__init__(message)


# =====================================================
# BOUNDARY HELPERS
# =====================================================

def to_decimal(value, default: Optional[Decimal] = Decimal('0')) -> Optional[Decimal]:
    """Convert a store/JSON value to Decimal. None and '' map to ``default``."""
    if value is None or value == '':
        return default
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise RateMissingError(f"Invalid monetary value: {value!r}")
    if not amount.is_finite():
        raise RateMissingError(f"Invalid monetary value: {value!r}")
    return amount


def to_money(amount: Decimal) -> Decimal:
    """Two-place rounding. Only applied at the display boundary."""
    return Decimal(amount).quantize(Decimal('0.01'), ROUND_HALF_UP)


def date_key(value) -> Optional[str]:
    """Normalize a date / datetime / ISO string to 'YYYY-MM-DD'."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()[:10]


def parse_date(value) -> Optional[date]:
    key = date_key(value)
    if not key:
        return None
    try:
        return date.fromisoformat(key)
    except ValueError:
        raise InvalidConfigurationError(f"Invalid date: {value!r}")


def combination_key(option_ids: Iterable[str]) -> str:
    """Sorted, '+'-joined option ids. Independent of group selection order."""
    return '+'.join(sorted(str(o) for o in option_ids if o))


def normalize_combination_key(key: str) -> str:
    return combination_key(str(key).split('+'))


def fold_channel(channel_id, self_channel_id=None, self_channel_ids: Iterable[str] = ()) -> Optional[str]:
    """Storefront channels of the self-operated group share one override scope."""
    if channel_id and self_channel_id and channel_id in (self_channel_ids or ()):
        return self_channel_id
    return channel_id or None


def _load_json(value, default):
    if value is None or value == '':
        return default
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            logger.warning(f"Discarding unparseable JSON column value: {value[:80]!r}")
            return default
    return value


def _fetch_dicts(cursor) -> List[Dict[str, Any]]:
    columns = [desc[0] for desc in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


# =====================================================
# RECORDS
# =====================================================

@dataclass(frozen=True)
class Product:
    id: str
    name: str = ''
    base_price: Decimal = Decimal('0')
    max_participants: int = DEFAULT_MAX_PARTICIPANTS
    min_participants: int = 1
    adult_age: Optional[int] = None
    child_age_min: Optional[int] = None
    child_age_max: Optional[int] = None
    infant_age: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Product':
        return cls(
            id=str(row['id']).strip(),
            name=row.get('name') or '',
            base_price=to_decimal(row.get('base_price')),
            max_participants=int(row.get('max_participants') or DEFAULT_MAX_PARTICIPANTS),
            min_participants=int(row.get('min_participants') or 1),
            adult_age=row.get('adult_age'),
            child_age_min=row.get('child_age_min'),
            child_age_max=row.get('child_age_max'),
            infant_age=row.get('infant_age'),
        )


@dataclass(frozen=True)
class ReservationParticipants:
    adults: int = 1
    children: int = 0
    infants: int = 0

    @property
    def total(self) -> int:
        return self.adults + self.children + self.infants

    def count(self, category: str) -> int:
        return {'adult': self.adults, 'child': self.children, 'infant': self.infants}[category]

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'ReservationParticipants':
        data = data or {}
        try:
            return cls(
                adults=int(data.get('adults', 1) or 0),
                children=int(data.get('children', 0) or 0),
                infants=int(data.get('infants', 0) or 0),
            )
        except (TypeError, ValueError):
            raise InvalidConfigurationError(f"Invalid participant counts: {data!r}")

    def to_dict(self) -> Dict[str, int]:
        return {'adults': self.adults, 'children': self.children, 'infants': self.infants}


@dataclass(frozen=True)
class DatePricingRecord:
    """
    One dynamic pricing row for (product, channel, date).

    Prices left as None fall back to the product base price (adult) or 0
    (child / infant). ``combinations`` maps a normalized combination key to
    its sale flag; ``combination_prices`` maps it to per-category prices
    that replace the date prices for that exact selection.
    """
    date: str
    channel_id: Optional[str] = None
    adult: Optional[Decimal] = None
    child: Optional[Decimal] = None
    infant: Optional[Decimal] = None
    sale_available: bool = True
    combinations: Dict[str, bool] = field(default_factory=dict)
    combination_prices: Dict[str, Dict[str, Optional[Decimal]]] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'DatePricingRecord':
        raw_map = _load_json(row.get('choice_availability'), {})
        combinations = {}
        if isinstance(raw_map, dict):
            for key, value in raw_map.items():
                # Values are either a bare flag or an object carrying is_sale_available
                if isinstance(value, dict):
                    value = value.get('is_sale_available', True)
                combinations[normalize_combination_key(key)] = bool(value)

        raw_prices = _load_json(row.get('choices_pricing'), {})
        combination_prices = {}
        if isinstance(raw_prices, dict):
            for key, value in raw_prices.items():
                if not isinstance(value, dict):
                    continue
                key = normalize_combination_key(key)
                combination_prices[key] = {
                    c: to_decimal(value.get(f'{c}_price'), None) for c in CATEGORIES
                }
                # choice_availability wins when both columns carry a flag
                if 'is_sale_available' in value and key not in combinations:
                    combinations[key] = bool(value['is_sale_available'])

        sale_available = row.get('is_sale_available')
        return cls(
            date=date_key(row['date']),
            channel_id=row.get('channel_id'),
            adult=to_decimal(row.get('adult_price'), None),
            child=to_decimal(row.get('child_price'), None),
            infant=to_decimal(row.get('infant_price'), None),
            sale_available=True if sale_available is None else bool(sale_available),
            combinations=combinations,
            combination_prices=combination_prices,
        )


@dataclass(frozen=True)
class ChoiceOption:
    id: str
    name: str = ''
    price: Decimal = Decimal('0')
    adult_price: Optional[Decimal] = None
    child_price: Optional[Decimal] = None
    infant_price: Optional[Decimal] = None
    is_default: bool = False
    media: Tuple[str, ...] = ()

    def adjustment_for(self, category: str) -> Decimal:
        """Category-specific adjustment, falling back to the flat one."""
        specific = getattr(self, f'{category}_price')
        return self.price if specific is None else specific


@dataclass(frozen=True)
class ChoiceGroup:
    id: str
    name: str = ''
    required: bool = True
    description: str = ''
    options: Tuple[ChoiceOption, ...] = ()

    def option(self, option_id: Optional[str]) -> Optional[ChoiceOption]:
        for opt in self.options:
            if opt.id == option_id:
                return opt
        return None


@dataclass(frozen=True)
class Coupon:
    id: str
    code: str
    discount_type: str = 'percentage'
    percentage_value: Decimal = Decimal('0')
    fixed_value: Decimal = Decimal('0')
    status: str = 'active'
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    product_id: Optional[str] = None
    channel_id: Optional[str] = None
    description: str = ''

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Coupon':
        return cls(
            id=str(row.get('id', '')),
            code=(row.get('coupon_code') or '').strip(),
            discount_type=(row.get('discount_type') or 'percentage').strip().lower(),
            percentage_value=to_decimal(row.get('percentage_value')),
            fixed_value=to_decimal(row.get('fixed_value')),
            status=(row.get('status') or '').strip().lower(),
            start_date=parse_date(row.get('start_date')),
            end_date=parse_date(row.get('end_date')),
            product_id=row.get('product_id') or None,
            channel_id=row.get('channel_id') or None,
            description=row.get('description') or '',
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'code': self.code,
            'discount_type': self.discount_type,
            'percentage_value': float(self.percentage_value),
            'fixed_value': float(self.fixed_value),
            'description': self.description,
        }


# =====================================================
# DATE PRICING INDEX
# =====================================================

class DatePricingIndex:
    """
    Per-date pricing and sale availability for one product over a window.

    A date with no record is open at base price. Dates outside the loaded
    window are treated the same way rather than raising.
    """

    def __init__(
        self,
        product: Product,
        records: Iterable[DatePricingRecord] = (),
        channel_id: Optional[str] = None,
        booked: Optional[Mapping[str, int]] = None,
        window: Tuple[Optional[str], Optional[str]] = (None, None),
    ):
        self.product = product
        self.channel_id = channel_id
        self.window = window
        self._records: Dict[str, DatePricingRecord] = {}
        self._booked: Dict[str, int] = {date_key(k): int(v or 0) for k, v in (booked or {}).items()}

        for record in records:
            current = self._records.get(record.date)
            # A row for the requested channel wins over a channel-less row
            if current is None or (record.channel_id == channel_id and current.channel_id != channel_id):
                self._records[record.date] = record

    @classmethod
    def empty(cls, product: Product) -> 'DatePricingIndex':
        return cls(product)

    def __len__(self) -> int:
        return len(self._records)

    def dates(self) -> List[str]:
        return sorted(self._records)

    def record_for(self, day) -> Optional[DatePricingRecord]:
        return self._records.get(date_key(day))

    def price_for(self, day, key: Optional[str] = None) -> Dict[str, Decimal]:
        """
        Unit price per category. A combination price for ``key`` wins over
        the date price, which wins over the product base price.
        """
        record = self.record_for(day)
        base = {
            'adult': self.product.base_price,
            'child': Decimal('0'),
            'infant': Decimal('0'),
        }
        if not record:
            return base
        prices = {
            category: getattr(record, category) if getattr(record, category) is not None else base[category]
            for category in CATEGORIES
        }
        if key:
            combination = record.combination_prices.get(normalize_combination_key(key), {})
            for category in CATEGORIES:
                if combination.get(category) is not None:
                    prices[category] = combination[category]
        return prices

    def is_date_open(self, day) -> bool:
        record = self.record_for(day)
        return True if record is None else record.sale_available

    def is_combination_open(self, day, key: str) -> bool:
        record = self.record_for(day)
        if record is None:
            return True
        if not record.sale_available:
            return False
        return record.combinations.get(normalize_combination_key(key), True)

    def booked_count(self, day) -> int:
        return self._booked.get(date_key(day), 0)

    def demand_state(self, day) -> str:
        """
        Aggregate display state of a date.

        closed      → date closed for sale, or no seats left
        nearly_full → booked >= 80% of max participants
        confirmed   → booked reached the product minimum (tour will run)
        filling     → at least one booking
        open        → nothing booked yet
        """
        if not self.is_date_open(day):
            return DEMAND_CLOSED

        booked = self.booked_count(day)
        capacity = self.product.max_participants
        if capacity and booked >= capacity:
            return DEMAND_CLOSED
        if capacity and Decimal(booked) >= Decimal(capacity) * NEARLY_FULL_RATIO:
            return DEMAND_NEARLY_FULL
        if booked >= self.product.min_participants and booked > 0:
            return DEMAND_CONFIRMED
        if booked > 0:
            return DEMAND_FILLING
        return DEMAND_OPEN

    def describe(self, day) -> Dict[str, Any]:
        prices = self.price_for(day)
        return {
            'date': date_key(day),
            'adultPrice': float(to_money(prices['adult'])),
            'childPrice': float(to_money(prices['child'])),
            'infantPrice': float(to_money(prices['infant'])),
            'isOpen': self.is_date_open(day),
            'demandState': self.demand_state(day),
            'booked': self.booked_count(day),
            'hasOverride': self.record_for(day) is not None,
        }


# =====================================================
# CHOICE CATALOG
# =====================================================

class ChoiceCatalog:
    """
    Required choice groups (single-select, purchase-blocking) and optional
    add-ons (one synthesized group per option, independently toggleable).
    """

    def __init__(self, required_groups: Iterable[ChoiceGroup] = (), optional_groups: Iterable[ChoiceGroup] = ()):
        self.required_groups: Tuple[ChoiceGroup, ...] = tuple(required_groups)
        self.optional_groups: Tuple[ChoiceGroup, ...] = tuple(optional_groups)

    @classmethod
    def build(cls, raw_rows: Iterable[Mapping[str, Any]]) -> 'ChoiceCatalog':
        """
        Group raw product_choices rows by choice id, preserving catalog order.

        Expected row keys: choice_id, choice_name, choice_description,
        is_required, option_id, option_name, option_price, adult_price,
        child_price, infant_price, is_default, media.
        """
        grouped: Dict[str, Dict[str, Any]] = {}
        optional: List[ChoiceGroup] = []

        for row in raw_rows:
            option = ChoiceOption(
                id=str(row['option_id']),
                name=row.get('option_name') or '',
                price=to_decimal(row.get('option_price')),
                adult_price=to_decimal(row.get('adult_price'), None),
                child_price=to_decimal(row.get('child_price'), None),
                infant_price=to_decimal(row.get('infant_price'), None),
                is_default=bool(row.get('is_default')),
                media=tuple(_load_json(row.get('media'), []) or ()),
            )
            description = (row.get('choice_description') or '').strip()

            is_required = row.get('is_required')
            if is_required is None or bool(is_required):
                group_id = str(row['choice_id'])
                entry = grouped.setdefault(group_id, {
                    'name': row.get('choice_name') or '',
                    'description': '',
                    'options': [],
                })
                if not entry['description'] and description:
                    entry['description'] = description
                entry['options'].append(option)
            else:
                optional.append(ChoiceGroup(
                    id=option.id,
                    name=option.name or (row.get('choice_name') or ''),
                    required=False,
                    description=description,
                    options=(option,),
                ))

        required = [
            ChoiceGroup(id=gid, name=g['name'], required=True,
                        description=g['description'], options=tuple(g['options']))
            for gid, g in grouped.items()
        ]
        return cls(required, optional)

    def is_empty(self) -> bool:
        return not self.required_groups and not self.optional_groups

    def group(self, group_id: str) -> Optional[ChoiceGroup]:
        for group in self.required_groups + self.optional_groups:
            if group.id == group_id:
                return group
        return None

    def default_selections(self) -> Dict[str, str]:
        """Flagged default per required group, else its first option."""
        selections = {}
        for group in self.required_groups:
            if not group.options:
                continue
            default = next((o for o in group.options if o.is_default), group.options[0])
            selections[group.id] = default.id
        return selections

    def missing_required(self, selections: Mapping[str, str]) -> List[ChoiceGroup]:
        return [
            g for g in self.required_groups
            if not selections.get(g.id) or g.option(selections.get(g.id)) is None
        ]

    def selection_map(self, selections: Mapping[str, str], addons: Iterable[str] = ()) -> Dict[str, str]:
        """Merge required selections and toggled add-ons into group_id → option_id."""
        merged = {gid: oid for gid, oid in (selections or {}).items() if oid}
        for addon_id in addons or ():
            if self.group(addon_id) is not None:
                merged[addon_id] = addon_id
        return merged

    def to_dict(self) -> Dict[str, Any]:
        def _group(g: ChoiceGroup) -> Dict[str, Any]:
            return {
                'id': g.id,
                'name': g.name,
                'required': g.required,
                'description': g.description,
                'options': [
                    {
                        'id': o.id,
                        'name': o.name,
                        'price': float(o.price),
                        'adultPrice': None if o.adult_price is None else float(o.adult_price),
                        'childPrice': None if o.child_price is None else float(o.child_price),
                        'infantPrice': None if o.infant_price is None else float(o.infant_price),
                        'isDefault': o.is_default,
                        'media': list(o.media),
                    }
                    for o in g.options
                ],
            }

        return {
            'requiredGroups': [_group(g) for g in self.required_groups],
            'optionalGroups': [_group(g) for g in self.optional_groups],
            'defaultSelections': self.default_selections(),
        }


# =====================================================
# AVAILABILITY EVALUATOR
# =====================================================

class AvailabilityEvaluator:
    """Pure per-option availability checks over a loaded index and catalog."""

    def __init__(self, index: DatePricingIndex, catalog: ChoiceCatalog):
        self.index = index
        self.catalog = catalog

    def selection_key(self, selections: Mapping[str, str]) -> str:
        if self.catalog.required_groups:
            ids = [selections.get(g.id) for g in self.catalog.required_groups]
        else:
            ids = list(selections.values())
        return combination_key(i for i in ids if i)

    def is_selection_open(
        self,
        group_id: str,
        candidate_option_id: str,
        current_selections: Mapping[str, str],
        day=None,
    ) -> bool:
        if not date_key(day):
            return True
        hypothetical = dict(current_selections or {})
        hypothetical[group_id] = candidate_option_id
        return self.index.is_combination_open(day, self.selection_key(hypothetical))

    def is_current_selection_open(self, selections: Mapping[str, str], day=None) -> bool:
        if not date_key(day):
            return True
        return self.index.is_combination_open(day, self.selection_key(selections or {}))

    def option_grid(self, selections: Mapping[str, str], day=None) -> Dict[str, Dict[str, bool]]:
        """Open flag for every required option, as the wizard renders them."""
        return {
            group.id: {
                option.id: self.is_selection_open(group.id, option.id, selections, day)
                for option in group.options
            }
            for group in self.catalog.required_groups
        }


# =====================================================
# PRICING CALCULATOR
# =====================================================

class PricingCalculator:
    """
    Base date price + choice adjustments, accumulated in full precision.

    Adjustments apply per participant; a category-specific adjustment
    overrides the flat one for that category's head count.
    """

    def __init__(self, product: Product, index: DatePricingIndex):
        self.product = product
        self.index = index

    def unit_prices(self, day, key: Optional[str] = None) -> Dict[str, Decimal]:
        if not date_key(day):
            raise InvalidConfigurationError("A tour date must be selected before pricing")
        return self.index.price_for(day, key)

    def selection_totals(
        self,
        participants: ReservationParticipants,
        selections: Mapping[str, str],
        catalog: Optional[ChoiceCatalog],
    ) -> List[Dict[str, Any]]:
        totals = []
        if catalog is None:
            return totals
        for group_id, option_id in (selections or {}).items():
            group = catalog.group(group_id)
            option = group.option(option_id) if group else None
            if option is None:
                continue
            amount = sum(
                (option.adjustment_for(c) * max(participants.count(c), 0) for c in CATEGORIES),
                Decimal('0'),
            )
            totals.append({
                'choice_id': group_id,
                'option_id': option_id,
                'required': group.required,
                'quantity': participants.total,
                'total': amount,
            })
        return totals

    def breakdown(
        self,
        day,
        participants: ReservationParticipants,
        selections: Mapping[str, str],
        catalog: Optional[ChoiceCatalog] = None,
    ) -> Dict[str, Any]:
        key = None
        if catalog is not None:
            key = AvailabilityEvaluator(self.index, catalog).selection_key(selections or {})
        units = self.unit_prices(day, key)
        base_total = sum(
            (units[c] * max(participants.count(c), 0) for c in CATEGORIES),
            Decimal('0'),
        )
        per_selection = self.selection_totals(participants, selections, catalog)
        choices_total = sum((s['total'] for s in per_selection if s['required']), Decimal('0'))
        options_total = sum((s['total'] for s in per_selection if not s['required']), Decimal('0'))

        return {
            'unit_prices': units,
            'base_total': base_total,
            'choices_total': choices_total,
            'options_total': options_total,
            'selections': per_selection,
            'subtotal': base_total + choices_total + options_total,
        }

    def total(
        self,
        day,
        participants: ReservationParticipants,
        selections: Mapping[str, str],
        catalog: Optional[ChoiceCatalog] = None,
    ) -> Decimal:
        """Pre-discount total, unrounded."""
        return self.breakdown(day, participants, selections, catalog)['subtotal']


# =====================================================
# COUPON VALIDATOR
# =====================================================

class CouponValidator:
    """
    Eligibility is checked once at apply time; the discount amount is
    recomputed against every new subtotal.
    """

    @staticmethod
    def find(coupons: Iterable[Coupon], code: str) -> Optional[Coupon]:
        normalized = (code or '').strip().lower()
        if not normalized:
            return None
        for coupon in coupons:
            if coupon.code and coupon.code.strip().lower() == normalized:
                return coupon
        return None

    @staticmethod
    def check(
        coupon: Coupon,
        product_id: Optional[str] = None,
        channel_id: Optional[str] = None,
        today: Optional[date] = None,
    ) -> Optional[str]:
        """Return a rejection message, or None when the coupon is eligible."""
        today = today or date.today()
        if coupon.status != 'active':
            return 'This coupon is not active.'
        if coupon.start_date and today < coupon.start_date:
            return 'This coupon is not valid yet.'
        # end_date is inclusive through the whole day
        if coupon.end_date and today > coupon.end_date:
            return 'This coupon has expired.'
        if coupon.product_id and product_id and str(coupon.product_id) != str(product_id):
            return 'This coupon cannot be used for this product.'
        if coupon.channel_id and channel_id and str(coupon.channel_id) != str(channel_id):
            return 'This coupon cannot be used on this sales channel.'
        return None

    @staticmethod
    def discount_for(coupon: Optional[Coupon], subtotal: Decimal) -> Decimal:
        """Discount clamped to [0, subtotal]."""
        if coupon is None or subtotal <= 0:
            return Decimal('0')

        fixed = coupon.fixed_value or Decimal('0')
        pct = coupon.percentage_value or Decimal('0')

        if coupon.discount_type == 'fixed' and fixed:
            discount = fixed
        elif coupon.discount_type == 'percentage' and pct:
            discount = subtotal * pct / 100
        elif fixed and pct:
            # Both values present: fixed first, then percentage of the remainder
            discount = fixed + max(subtotal - fixed, Decimal('0')) * pct / 100
        elif fixed:
            discount = fixed
        else:
            discount = subtotal * pct / 100

        return min(max(discount, Decimal('0')), subtotal)

    @staticmethod
    def final_price(subtotal: Decimal, discount: Decimal) -> Decimal:
        return max(Decimal('0'), subtotal - discount)

    @classmethod
    def apply(
        cls,
        coupon: Coupon,
        subtotal: Decimal,
        product: Optional[Product] = None,
        channel_id: Optional[str] = None,
        today: Optional[date] = None,
    ) -> Decimal:
        error = cls.check(coupon, product.id if product else None, channel_id, today)
        if error:
            raise CouponRejectedError(error)
        discount = cls.discount_for(coupon, subtotal)
        logger.info(f"Coupon applied: {coupon.code} discount={discount} subtotal={subtotal}")
        return discount

    @classmethod
    def validate(
        cls,
        coupons: Iterable[Coupon],
        code: str,
        product_id: Optional[str] = None,
        channel_id: Optional[str] = None,
        total_amount=None,
        today: Optional[date] = None,
    ) -> Dict[str, Any]:
        """Local validation endpoint contract: {valid, coupon | error}."""
        if not code or not str(code).strip():
            return {'valid': False, 'error': 'A coupon code is required.'}

        coupon = cls.find(coupons, code)
        if coupon is None:
            return {'valid': False, 'error': 'Invalid coupon code.'}

        error = cls.check(coupon, product_id, channel_id, today)
        if error:
            return {'valid': False, 'error': error}

        result: Dict[str, Any] = {'valid': True, 'coupon': coupon.to_dict()}
        if total_amount is not None:
            try:
                subtotal = to_decimal(total_amount)
            except RateMissingError:
                return {'valid': False, 'error': 'A positive total amount is required.'}
            if subtotal <= 0:
                return {'valid': False, 'error': 'A positive total amount is required.'}
            discount = cls.discount_for(coupon, subtotal)
            result['discountAmount'] = float(to_money(discount))
            result['finalAmount'] = float(to_money(cls.final_price(subtotal, discount)))
        return result


# =====================================================
# MAIN BOOKING ENGINE (STORE-BACKED LOADER)
# =====================================================

class BookingEngine:
    """
    Loads products, pricing, choices and coupons from PostgreSQL and builds
    the pure pricing objects. Store failures on pricing and choices degrade
    to empty data so the booking path stays usable.
    """

    def __init__(
        self,
        db_connection,
        default_window_days: int = 120,
        self_channel_id: Optional[str] = None,
        self_channel_ids: Iterable[str] = (),
        max_window_days: int = 366,
    ):
        self.db = db_connection
        self.default_window_days = default_window_days
        self.self_channel_id = self_channel_id
        self.self_channel_ids = tuple(self_channel_ids or ())
        self.max_window_days = max_window_days

    def normalize_channel(self, channel_id) -> Optional[str]:
        return fold_channel(channel_id, self.self_channel_id, self.self_channel_ids)

    # -------------------------------------------------
    # PRODUCT
    # -------------------------------------------------

    def get_product(self, product_id) -> Product:
        key = str(product_id).strip() if product_id is not None else ''
        if not key:
            raise InvalidConfigurationError("Missing required field: product_id")

        cursor = self.db.cursor()
        cursor.execute(
            """SELECT id, name, base_price, max_participants, min_participants,
                      adult_age, child_age_min, child_age_max, infant_age
               FROM products
               WHERE id::text = %s""",
            (key,)
        )
        rows = _fetch_dicts(cursor)
        if not rows:
            raise ComponentNotFoundError(f"Product {key} not found")
        return Product.from_row(rows[0])

    # -------------------------------------------------
    # DATE PRICING
    # -------------------------------------------------

    def _window(self, date_from=None, date_to=None) -> Tuple[str, str]:
        start = parse_date(date_from) or date.today()
        end = parse_date(date_to) or (start + timedelta(days=self.default_window_days))
        if end < start:
            start, end = end, start
        limit = start + timedelta(days=max(self.max_window_days, 1) - 1)
        if end > limit:
            logger.info(f"Pricing window {start}..{end} clamped to {limit}")
            end = limit
        return start.isoformat(), end.isoformat()

    def load_pricing_index(
        self,
        product: Product,
        date_from=None,
        date_to=None,
        channel_id: Optional[str] = None,
    ) -> DatePricingIndex:
        start, end = self._window(date_from, date_to)
        channel_id = self.normalize_channel(channel_id)
        records: List[DatePricingRecord] = []
        booked: Dict[str, int] = {}

        try:
            cursor = self.db.cursor()
            query = """
                SELECT date, channel_id, adult_price, child_price, infant_price,
                       is_sale_available, choice_availability, choices_pricing
                FROM dynamic_pricing
                WHERE product_id = %s AND date BETWEEN %s AND %s
            """
            params: List[Any] = [product.id, start, end]
            if channel_id:
                query += " AND (channel_id = %s OR channel_id IS NULL)"
                params.append(channel_id)
            else:
                query += " AND channel_id IS NULL"
            query += " ORDER BY date ASC"
            cursor.execute(query, params)
            records = [DatePricingRecord.from_row(r) for r in _fetch_dicts(cursor)]
        except (psycopg2.Error, PricingEngineError) as e:
            logger.warning(f"Pricing load failed for product {product.id}, using base prices: {e}")
            self._rollback()
            records = []

        try:
            cursor = self.db.cursor()
            cursor.execute(
                """SELECT tour_date, COALESCE(SUM(total_people), 0) AS booked
                   FROM reservations
                   WHERE product_id = %s AND tour_date BETWEEN %s AND %s
                     AND status <> 'cancelled'
                   GROUP BY tour_date""",
                (product.id, start, end)
            )
            booked = {date_key(r['tour_date']): int(r['booked'] or 0) for r in _fetch_dicts(cursor)}
        except psycopg2.Error as e:
            logger.warning(f"Booked-count load failed for product {product.id}: {e}")
            self._rollback()
            booked = {}

        logger.info(
            f"Pricing index loaded: product={product.id} window={start}..{end} "
            f"channel={channel_id} overrides={len(records)}"
        )
        return DatePricingIndex(product, records, channel_id=channel_id, booked=booked, window=(start, end))

    # -------------------------------------------------
    # CHOICES
    # -------------------------------------------------

    def load_choice_catalog(self, product_id) -> ChoiceCatalog:
        try:
            cursor = self.db.cursor()
            cursor.execute(
                """SELECT choice_id, choice_name, choice_description, is_required,
                          option_id, option_name, option_price,
                          adult_price, child_price, infant_price, is_default, media
                   FROM product_choices
                   WHERE product_id = %s
                   ORDER BY sort_order ASC, id ASC""",
                (str(product_id),)
            )
            return ChoiceCatalog.build(_fetch_dicts(cursor))
        except (psycopg2.Error, PricingEngineError) as e:
            logger.warning(f"Choice load failed for product {product_id}, using empty catalog: {e}")
            self._rollback()
            return ChoiceCatalog()

    # -------------------------------------------------
    # COUPONS
    # -------------------------------------------------

    def fetch_active_coupons(self) -> List[Coupon]:
        cursor = self.db.cursor()
        cursor.execute(
            """SELECT id, coupon_code, discount_type, percentage_value, fixed_value,
                      status, start_date, end_date, product_id, channel_id, description
               FROM coupons
               WHERE status = 'active'"""
        )
        coupons = []
        for row in _fetch_dicts(cursor):
            coupon = Coupon.from_row(row)
            if coupon.channel_id:
                coupon = replace(coupon, channel_id=self.normalize_channel(coupon.channel_id))
            coupons.append(coupon)
        return coupons

    def find_coupon(self, code: str) -> Coupon:
        coupon = CouponValidator.find(self.fetch_active_coupons(), code)
        if coupon is None:
            raise ComponentNotFoundError(f"Coupon {code!r} not found")
        return coupon

    # -------------------------------------------------
    # QUOTE
    # -------------------------------------------------

    def calculate_quote(self, payload: Dict[str, Any], today: Optional[date] = None) -> Dict[str, Any]:
        """
        Full price preview for one request.

        payload keys: product_id, channel_id, date, participants,
        selections (group_id → option_id), addons (option ids), coupon_code.
        """
        product = self.get_product(payload.get('product_id'))
        day = date_key(payload.get('date'))
        if not day:
            raise InvalidConfigurationError("Missing required field: date")
        channel_id = self.normalize_channel(payload.get('channel_id'))
        participants = ReservationParticipants.from_dict(payload.get('participants'))

        index = self.load_pricing_index(product, day, day, channel_id)
        catalog = self.load_choice_catalog(product.id)
        selections = payload.get('selections') or catalog.default_selections()
        selection_map = catalog.selection_map(selections, payload.get('addons') or [])

        calculator = PricingCalculator(product, index)
        breakdown = calculator.breakdown(day, participants, selection_map, catalog)

        coupon = None
        discount = Decimal('0')
        coupon_code = (payload.get('coupon_code') or '').strip()
        if coupon_code:
            coupon = self.find_coupon(coupon_code)
            discount = CouponValidator.apply(coupon, breakdown['subtotal'], product, channel_id, today)

        evaluator = AvailabilityEvaluator(index, catalog)
        return build_quote_result(breakdown, discount, coupon, participants, {
            'dateOpen': index.is_date_open(day),
            'selectionOpen': evaluator.is_current_selection_open(selections, day),
            'demandState': index.demand_state(day),
        })

    def _rollback(self) -> None:
        try:
            self.db.rollback()
        except psycopg2.Error as e:
            logger.warning(f"Rollback after failed read also failed: {e}")


def build_quote_result(
    breakdown: Dict[str, Any],
    discount: Decimal,
    coupon: Optional[Coupon],
    participants: ReservationParticipants,
    availability: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Round once, here, for display."""
    subtotal = breakdown['subtotal']
    final_total = CouponValidator.final_price(subtotal, discount)
    pax = participants.total
    result = {
        'success': True,
        'adultPrice': float(to_money(breakdown['unit_prices']['adult'])),
        'childPrice': float(to_money(breakdown['unit_prices']['child'])),
        'infantPrice': float(to_money(breakdown['unit_prices']['infant'])),
        'baseTotal': float(to_money(breakdown['base_total'])),
        'choicesTotal': float(to_money(breakdown['choices_total'])),
        'optionsTotal': float(to_money(breakdown['options_total'])),
        'subtotal': float(to_money(subtotal)),
        'couponCode': coupon.code if coupon else None,
        'couponDiscount': float(to_money(discount)),
        'total': float(to_money(final_total)),
        'perPerson': float(to_money(final_total / pax)) if pax > 0 else 0.0,
        'selections': [
            {
                'choiceId': s['choice_id'],
                'optionId': s['option_id'],
                'required': s['required'],
                'quantity': s['quantity'],
                'total': float(to_money(s['total'])),
            }
            for s in breakdown['selections']
        ],
        'participants': participants.to_dict(),
    }
    if availability:
        result.update(availability)
    return result
