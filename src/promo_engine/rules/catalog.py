"""
Promotion Catalog - Loads promotion, flash-sale and price-tier definitions.

Compiled promotions come from compiled_promotions.json (see
compile_promotions.py); flash sales and tier tables are read from CSV with
pandas. Definitions that fail validation are skipped and reported, never
applied.
"""
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

import pandas as pd

from ..engine.calculators import validate_tiers
from ..engine.conditions import parse_rule_tree
from ..engine.errors import ConfigurationError, PromotionDefinitionError
from ..engine.models import (
    BOGORule,
    BundleComponent,
    BundleRule,
    ExclusionRule,
    FlashSale,
    PriceTier,
    Promotion,
    QuantityTier,
    VolumeTier,
)

logger = logging.getLogger(__name__)


def _split_ids(value: str) -> list[str]:
    """Split a '|' or ',' separated id list from a CSV cell."""
    value = str(value or '').strip()
    if not value:
        return []
    separator = '|' if '|' in value else ','
    return [v.strip() for v in value.split(separator) if v.strip()]


def _optional_int(value) -> Optional[int]:
    value = str(value or '').strip()
    if not value or value.lower() in ('nan', 'none'):
        return None
    return int(float(value))


def _build_tiers(raw_tiers: list[dict]) -> list[PriceTier]:
    return [
        PriceTier(
            min_quantity=int(t['min_quantity']),
            max_quantity=_optional_int(t.get('max_quantity')),
            price_per_unit=int(t['price_per_unit']),
        )
        for t in raw_tiers
    ]


def build_promotion(data: dict, tier_sets: Optional[dict[str, list[PriceTier]]] = None) -> Promotion:
    """
    Build a Promotion from its compiled dict form.

    Raises ConfigurationError (or a subclass) if anything is malformed.
    """
    kind = data.get('kind', '')
    params = data.get('params') or {}

    try:
        conditions = parse_rule_tree(data['conditions']) if data.get('conditions') else None
        exclusions = [
            ExclusionRule(type=e['type'], ids=e.get('ids', []), reason=e.get('reason'))
            for e in data.get('exclusions') or []
        ]

        kwargs = {}
        if kind == 'bogo':
            kwargs['bogo'] = BOGORule(
                buy_quantity=int(params['buy_quantity']),
                get_quantity=int(params['get_quantity']),
                discount_percent=params.get('discount_percent', 100),
                applicable_product_ids=params.get('applicable_product_ids'),
                applicable_category_ids=params.get('applicable_category_ids'),
                max_applications=params.get('max_applications'),
            )
        elif kind == 'tiered':
            if params.get('tier_set'):
                tier_set = params['tier_set']
                if not tier_sets or tier_set not in tier_sets:
                    raise PromotionDefinitionError(f"Unknown price tier set '{tier_set}'")
                tiers = tier_sets[tier_set]
            else:
                tiers = _build_tiers(params.get('tiers', []))
            kwargs['tiers'] = validate_tiers(tiers)
        elif kind == 'bundle':
            kwargs['bundle'] = BundleRule(
                components=[
                    BundleComponent(product_id=c['product_id'], quantity=int(c['quantity']))
                    for c in params.get('components', [])
                ],
                discount_type=params.get('discount_type', 'percentage'),
                discount_value=params.get('discount_value', 0),
                max_applications=params.get('max_applications'),
            )
        elif kind == 'quantity':
            kwargs['quantity_tiers'] = [
                QuantityTier(
                    min_quantity=int(t['min_quantity']),
                    max_quantity=_optional_int(t.get('max_quantity')),
                    discount_percent=t['discount_percent'],
                )
                for t in params.get('tiers', [])
            ]
        elif kind == 'volume':
            kwargs['volume_tiers'] = [
                VolumeTier(
                    min_amount=int(t['min_amount']),
                    max_amount=_optional_int(t.get('max_amount')),
                    discount_percent=t['discount_percent'],
                )
                for t in params.get('tiers', [])
            ]
        elif kind == 'flash_sale':
            kwargs['flash_sale_id'] = params.get('flash_sale_id')

        return Promotion(
            promotion_id=data['promotion_id'],
            name=data.get('name') or data['promotion_id'],
            kind=kind,
            priority=int(data.get('priority', 0)),
            stackable=bool(data.get('stackable', True)),
            value=data.get('value', 0) or 0,
            max_amount=data.get('max_amount'),
            conditions=conditions,
            exclusions=exclusions,
            product_ids=params.get('product_ids'),
            active=bool(data.get('active', True)),
            start_date=data.get('start_date'),
            end_date=data.get('end_date'),
            **kwargs
        )
    except ConfigurationError:
        raise
    except (KeyError, TypeError, ValueError) as e:
        raise PromotionDefinitionError(
            f"Promotion {data.get('promotion_id', 'unknown')}: {type(e).__name__}: {e}"
        ) from e


def load_promotions(
    path: Path,
    tier_sets: Optional[dict[str, list[PriceTier]]] = None
) -> tuple[list[Promotion], list[str]]:
    """
    Load promotions from compiled JSON.

    Returns (promotions, errors). Malformed promotions are left out.
    """
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)

    promotions = []
    errors = []
    for raw in data.get('promotions', []):
        try:
            promotions.append(build_promotion(raw, tier_sets))
        except ConfigurationError as e:
            logger.warning("Skipping malformed promotion %s: %s", raw.get('promotion_id', 'unknown'), e)
            errors.append(str(e))

    return promotions, errors


def load_price_tiers(csv_path: Path) -> dict[str, list[PriceTier]]:
    """
    Load tier tables keyed by tier_set.

    Columns: tier_set, min_quantity, max_quantity (blank = open-ended), price_per_unit.
    """
    df = pd.read_csv(csv_path, dtype=str).fillna('')
    df.columns = [c.strip() for c in df.columns]
    for col in df.columns:
        df[col] = df[col].astype(str).str.strip()

    tier_sets: dict[str, list[PriceTier]] = {}
    for tier_set, rows in df.groupby('tier_set', sort=True):
        tier_sets[tier_set] = [
            PriceTier(
                min_quantity=int(row['min_quantity']),
                max_quantity=_optional_int(row['max_quantity']),
                price_per_unit=int(row['price_per_unit']),
            )
            for _, row in rows.iterrows()
        ]
    return tier_sets


def load_flash_sales(csv_path: Path) -> list[FlashSale]:
    """
    Load flash sale definitions.

    Columns: sale_id, name, product_ids ('|' separated), discount_percent,
    start_time, end_time (ISO), max_quantity (blank = unlimited),
    sold_quantity, is_active.
    """
    df = pd.read_csv(csv_path, dtype=str).fillna('')
    df.columns = [c.strip() for c in df.columns]

    sales = []
    for line_num, row in enumerate(df.to_dict(orient='records'), start=2):
        try:
            sales.append(FlashSale(
                sale_id=row['sale_id'].strip(),
                name=row.get('name', '').strip(),
                product_ids=_split_ids(row.get('product_ids', '')),
                discount_percent=float(row['discount_percent']),
                start_time=datetime.fromisoformat(row['start_time'].strip()),
                end_time=datetime.fromisoformat(row['end_time'].strip()),
                max_quantity=_optional_int(row.get('max_quantity')),
                sold_quantity=_optional_int(row.get('sold_quantity')) or 0,
                is_active=str(row.get('is_active', 'true')).strip().lower() in ('true', '1', 'yes', 'on'),
            ))
        except (ConfigurationError, KeyError, ValueError) as e:
            logger.warning("Skipping flash sale on line %d: %s", line_num, e)
    return sales
