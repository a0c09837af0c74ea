"""
Multilingual product content resolution.

Override rows live in ``product_details_multilingual``, one per
(product, channel, variant, language). A field resolves through:

  1. exact          (channel, variant, language)
  2. channel default (channel, 'default', language)
  3. product common  (channel IS NULL, language)
  4. any row for the product/language, only when no common row exists

A value counts as present only if it still has text after markup is
stripped. Missing rows never raise; an unresolvable field is ''.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Any, Iterable, Mapping, Optional, Sequence
import html
import logging
import re

import psycopg2

from pricing_engine import DEFAULT_VARIANT, InvalidConfigurationError, fold_channel

logger = logging.getLogger(__name__)

CONTENT_FIELDS = (
    'slogan1',
    'slogan2',
    'slogan3',
    'description',
    'included',
    'not_included',
    'pickup_drop_info',
    'luggage_info',
    'tour_operation_info',
    'preparation_info',
    'small_group_info',
    'companion_info',
    'exclusive_booking_info',
    'cancellation_policy',
    'chat_announcement',
)

_TAG_RE = re.compile(r'<[^>]*>')


def strip_markup(value) -> str:
    if value is None:
        return ''
    text = _TAG_RE.sub(' ', str(value))
    return html.unescape(text).replace('\xa0', ' ').strip()


def has_text(value) -> bool:
    return len(strip_markup(value)) > 0


@dataclass(frozen=True)
class ContentOverrideRecord:
    product_id: str
    channel_id: Optional[str] = None
    variant_key: str = DEFAULT_VARIANT
    language_code: str = 'ko'
    fields: Dict[str, Optional[str]] = field(default_factory=dict)
    tags: tuple = ()

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'ContentOverrideRecord':
        return cls(
            product_id=str(row['product_id']),
            channel_id=row.get('channel_id') or None,
            variant_key=row.get('variant_key') or DEFAULT_VARIANT,
            language_code=row.get('language_code') or 'ko',
            fields={f: row.get(f) for f in CONTENT_FIELDS if f in row},
            tags=tuple(row.get('tags') or ()),
        )

    def value(self, field_name: str) -> Optional[str]:
        return self.fields.get(field_name)


class FallbackResolver:
    """Pure resolver over the override rows already loaded for one product."""

    def __init__(
        self,
        records: Iterable[ContentOverrideRecord],
        self_channel_id: Optional[str] = None,
        self_channel_ids: Iterable[str] = (),
    ):
        # Stable order for the last-resort rule
        self.records: List[ContentOverrideRecord] = sorted(
            records,
            key=lambda r: (r.language_code, r.channel_id or '', r.variant_key),
        )
        self.self_channel_id = self_channel_id
        self.self_channel_ids = frozenset(self_channel_ids or ())

    def normalize_channel(self, channel_id: Optional[str]) -> Optional[str]:
        return fold_channel(channel_id, self.self_channel_id, self.self_channel_ids)

    def _find(self, channel_id, variant_key, language_code) -> Optional[ContentOverrideRecord]:
        for record in self.records:
            if (record.channel_id == channel_id
                    and record.variant_key == variant_key
                    and record.language_code == language_code):
                return record
        return None

    def _common(self, language_code) -> List[ContentOverrideRecord]:
        rows = [r for r in self.records if r.channel_id is None and r.language_code == language_code]
        rows.sort(key=lambda r: r.variant_key != DEFAULT_VARIANT)
        return rows

    def chain(self, channel_id, variant_key, language_code) -> List[ContentOverrideRecord]:
        """Candidate rows, most specific first."""
        channel_id = self.normalize_channel(channel_id)
        variant_key = variant_key or DEFAULT_VARIANT
        candidates: List[ContentOverrideRecord] = []

        if channel_id:
            exact = self._find(channel_id, variant_key, language_code)
            if exact:
                candidates.append(exact)
            if variant_key != DEFAULT_VARIANT:
                channel_default = self._find(channel_id, DEFAULT_VARIANT, language_code)
                if channel_default:
                    candidates.append(channel_default)

        common = self._common(language_code)
        if common:
            candidates.extend(c for c in common if c not in candidates)
        else:
            candidates.extend(
                r for r in self.records
                if r.language_code == language_code and r not in candidates
            )
        return candidates

    def resolve(self, field_name: str, channel_id=None, variant_key=DEFAULT_VARIANT, language_code='ko') -> str:
        for record in self.chain(channel_id, variant_key, language_code):
            value = record.value(field_name)
            if has_text(value):
                return value
        return ''

    def resolve_all(self, channel_id=None, variant_key=DEFAULT_VARIANT, language_code='ko') -> Dict[str, str]:
        return {f: self.resolve(f, channel_id, variant_key, language_code) for f in CONTENT_FIELDS}

    def resolve_tags(self, channel_id=None, variant_key=DEFAULT_VARIANT, language_code='ko') -> List[str]:
        for record in self.chain(channel_id, variant_key, language_code):
            if record.tags:
                return list(record.tags)
        return []

    def merge_channels(
        self,
        channel_ids: Sequence[str],
        variant_key=DEFAULT_VARIANT,
        language_code='ko',
    ) -> Dict[str, str]:
        """
        Editor view across several checked channels. Per field, the first
        channel with text wins; an empty field falls through to the next
        channel's value for that same field only.
        """
        scoped = []
        for channel_id in channel_ids:
            channel_id = self.normalize_channel(channel_id)
            record = (self._find(channel_id, variant_key or DEFAULT_VARIANT, language_code)
                      or self._find(channel_id, DEFAULT_VARIANT, language_code))
            if record:
                scoped.append(record)

        merged = {}
        for field_name in CONTENT_FIELDS:
            merged[field_name] = next(
                (r.value(field_name) for r in scoped if has_text(r.value(field_name))),
                '',
            )
        return merged


class ContentStore:
    """Reads and writes override rows. Writes are last-writer-wins per scope."""

    def __init__(self, db_connection, self_channel_id: Optional[str] = None, self_channel_ids: Iterable[str] = ()):
        self.db = db_connection
        self.self_channel_id = self_channel_id
        self.self_channel_ids = tuple(self_channel_ids or ())

    def resolver(self, records: Iterable[ContentOverrideRecord]) -> FallbackResolver:
        return FallbackResolver(records, self.self_channel_id, self.self_channel_ids)

    def load(self, product_id, language_code: Optional[str] = None) -> FallbackResolver:
        query = f"""SELECT product_id, channel_id, variant_key, language_code,
                           {', '.join(CONTENT_FIELDS)}, tags
                    FROM product_details_multilingual
                    WHERE product_id = %s"""
        params: List[Any] = [str(product_id)]
        if language_code:
            query += " AND language_code = %s"
            params.append(language_code)

        try:
            cursor = self.db.cursor()
            cursor.execute(query, params)
            columns = [d[0] for d in cursor.description]
            records = [ContentOverrideRecord.from_row(dict(zip(columns, row))) for row in cursor.fetchall()]
        except psycopg2.Error as e:
            logger.warning(f"Content load failed for product {product_id}, resolving to empty fields: {e}")
            self.db.rollback()
            records = []

        return self.resolver(records)

    def _scope(self, channel_id, variant_key, language_code):
        channel_id = self.resolver(()).normalize_channel(channel_id)
        if not language_code:
            raise InvalidConfigurationError("Missing required field: language_code")
        return channel_id, (variant_key or DEFAULT_VARIANT), language_code

    def save(
        self,
        product_id,
        channel_id,
        variant_key,
        language_code,
        values: Mapping[str, Any],
        tags: Optional[Sequence[str]] = None,
    ) -> None:
        """Upsert one scope row. Only known content fields are written."""
        channel_id, variant_key, language_code = self._scope(channel_id, variant_key, language_code)
        columns = [f for f in CONTENT_FIELDS if f in values]
        if tags is not None:
            columns.append('tags')
        if not columns:
            raise InvalidConfigurationError("No content fields to save")

        params = [str(product_id), channel_id, variant_key, language_code]
        params.extend(list(tags) if c == 'tags' else values.get(c) for c in columns)

        updates = ', '.join(f"{c} = EXCLUDED.{c}" for c in columns)
        cursor = self.db.cursor()
        cursor.execute(
            f"""INSERT INTO product_details_multilingual
                    (product_id, channel_id, variant_key, language_code, {', '.join(columns)})
                VALUES (%s, %s, %s, %s, {', '.join(['%s'] * len(columns))})
                ON CONFLICT (product_id, (COALESCE(channel_id, '')), variant_key, language_code)
                DO UPDATE SET {updates}, updated_at = NOW()""",
            params
        )
        self.db.commit()
        logger.info(
            f"Content saved: product={product_id} channel={channel_id} "
            f"variant={variant_key} lang={language_code} fields={columns}"
        )

    def reset_field(self, product_id, channel_id, variant_key, language_code, field_name: str) -> int:
        """Explicit null-out of one field. Rows are never deleted."""
        if field_name not in CONTENT_FIELDS:
            raise InvalidConfigurationError(f"Unknown content field: {field_name}")
        channel_id, variant_key, language_code = self._scope(channel_id, variant_key, language_code)

        cursor = self.db.cursor()
        cursor.execute(
            f"""UPDATE product_details_multilingual
                SET {field_name} = NULL, updated_at = NOW()
                WHERE product_id = %s AND channel_id IS NOT DISTINCT FROM %s
                  AND variant_key = %s AND language_code = %s""",
            (str(product_id), channel_id, variant_key, language_code)
        )
        self.db.commit()
        return cursor.rowcount
