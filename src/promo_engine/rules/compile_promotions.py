"""
Promotion Compiler - Validates and compiles promotions from CSV to JSON.

Reads promotions.csv, validates each row (schema via pydantic, then a full
domain build so malformed rule trees and tiers are caught here rather than
at checkout) and writes compiled_promotions.json.

CSV columns:
    promotion_id, name, active, kind, priority, stackable, value, max_amount,
    start_date, end_date, conditions (JSON), exclusions (JSON), params (JSON), notes
"""
import csv
import hashlib
import json
from datetime import date, datetime
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..engine.errors import ConfigurationError
from ..engine.models import VALID_PROMOTION_KINDS
from .catalog import build_promotion, load_price_tiers


class PromotionRow(BaseModel):
    """Schema for one compiled promotion."""
    promotion_id: str
    name: str
    active: bool = True
    kind: str
    priority: int = 0
    stackable: bool = True
    value: Union[int, float] = 0
    max_amount: Optional[int] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    conditions: Optional[dict] = None
    exclusions: list[dict] = Field(default_factory=list)
    params: dict = Field(default_factory=dict)
    notes: str = ""

    @field_validator('kind')
    @classmethod
    def kind_is_known(cls, v: str) -> str:
        if v not in VALID_PROMOTION_KINDS:
            raise ValueError(f"invalid kind '{v}', must be one of: {sorted(VALID_PROMOTION_KINDS)}")
        return v

    @field_validator('start_date', 'end_date')
    @classmethod
    def iso_date(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            date.fromisoformat(v)
        return v

    @field_validator('value')
    @classmethod
    def non_negative(cls, v):
        if v < 0:
            raise ValueError("value must not be negative")
        return v


def get_file_hash(path: Path) -> str:
    """Get SHA256 hash of a file."""
    if not path.exists():
        return ""
    with open(path, 'rb') as f:
        return hashlib.sha256(f.read()).hexdigest()[:12]


def parse_bool(value: str) -> bool:
    """Parse a boolean from CSV string."""
    return value.strip().lower() in ('true', '1', 'yes', 'on')


def parse_optional_str(value: str) -> Optional[str]:
    """Parse optional string (empty = None)."""
    if not value or value.strip() == '':
        return None
    return value.strip()


def parse_number(value: str) -> Union[int, float, None]:
    """Integers stay integers (minor units); anything else becomes float."""
    value = parse_optional_str(value)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return float(value)


def parse_json(value: str, default):
    value = parse_optional_str(value)
    if value is None:
        return default
    return json.loads(value)


def validate_row(
    row: dict,
    line_num: int,
    tier_sets: Optional[dict] = None
) -> tuple[Optional[PromotionRow], list[str]]:
    """
    Validate and parse a promotion from a CSV row.

    Returns (promotion, errors) - promotion is None if validation failed.
    """
    promotion_id = parse_optional_str(row.get('promotion_id', ''))
    if not promotion_id:
        return None, [f"Line {line_num}: promotion_id is required"]

    try:
        raw = {
            'promotion_id': promotion_id,
            'name': parse_optional_str(row.get('name', '')) or promotion_id,
            'active': parse_bool(row.get('active', 'true') or 'true'),
            'kind': parse_optional_str(row.get('kind', '')) or '',
            'priority': parse_number(row.get('priority', '')) or 0,
            'stackable': parse_bool(row.get('stackable', 'true') or 'true'),
            'value': parse_number(row.get('value', '')) or 0,
            'max_amount': parse_number(row.get('max_amount', '')),
            'start_date': parse_optional_str(row.get('start_date', '')),
            'end_date': parse_optional_str(row.get('end_date', '')),
            'conditions': parse_json(row.get('conditions', ''), None),
            'exclusions': parse_json(row.get('exclusions', ''), []),
            'params': parse_json(row.get('params', ''), {}),
            'notes': parse_optional_str(row.get('notes', '')) or '',
        }
    except ValueError as e:
        # json.JSONDecodeError is a ValueError
        return None, [f"Line {line_num}: {promotion_id}: {e}"]

    try:
        promotion = PromotionRow(**raw)
    except ValidationError as e:
        return None, [
            f"Line {line_num}: {promotion_id}: {'.'.join(str(p) for p in err['loc'])} {err['msg']}"
            for err in e.errors()
        ]

    try:
        build_promotion(promotion.model_dump(), tier_sets)
    except ConfigurationError as e:
        return None, [f"Line {line_num}: {e}"]

    return promotion, []


def compile_promotions(
    promotions_csv: Path,
    output_json: Path,
    price_tiers_csv: Optional[Path] = None,
    verbose: bool = True
) -> tuple[bool, list[PromotionRow], list[str]]:
    """
    Compile promotions from CSV to JSON.

    Returns (success, promotions, errors).
    """
    all_errors = []
    promotions = []

    if not promotions_csv.exists():
        all_errors.append(f"Promotions file not found: {promotions_csv}")
        return False, [], all_errors

    tier_sets = None
    if price_tiers_csv and price_tiers_csv.exists():
        try:
            tier_sets = load_price_tiers(price_tiers_csv)
        except (ConfigurationError, ValueError) as e:
            all_errors.append(f"{price_tiers_csv.name}: {e}")
            return False, [], all_errors

    seen_ids = set()
    with open(promotions_csv, 'r', newline='', encoding='utf-8') as f:
        reader = csv.DictReader(f)

        for line_num, row in enumerate(reader, start=2):  # +2 for 1-indexed header row
            promotion, errors = validate_row(row, line_num, tier_sets)

            if errors:
                all_errors.extend(errors)
            elif promotion:
                if promotion.promotion_id in seen_ids:
                    all_errors.append(f"Line {line_num}: duplicate promotion_id '{promotion.promotion_id}'")
                    continue
                seen_ids.add(promotion.promotion_id)
                promotions.append(promotion)

    if all_errors:
        if verbose:
            print("Validation errors:")
            for err in all_errors:
                print(f"  ❌ {err}")
        return False, promotions, all_errors

    # Higher priority first, id for a stable file
    promotions.sort(key=lambda p: (-p.priority, p.promotion_id))

    output_data = {
        "compiled_at": datetime.now().isoformat(),
        "source_file": str(promotions_csv),
        "source_hash": get_file_hash(promotions_csv),
        "total_promotions": len(promotions),
        "active_promotions": sum(1 for p in promotions if p.active),
        "promotions": [p.model_dump() for p in promotions],
    }

    output_json.parent.mkdir(parents=True, exist_ok=True)
    with open(output_json, 'w', encoding='utf-8') as f:
        json.dump(output_data, f, indent=2)

    if verbose:
        print(f"✅ Compiled {len(promotions)} promotions ({output_data['active_promotions']} active)")
        print(f"   Output: {output_json}")

    return True, promotions, []


def main():
    """CLI entry point."""
    import logging
    import sys

    from ..config.settings import get_settings

    settings = get_settings()
    logging.basicConfig(level=settings.log_level)

    print("Compiling promotions...")
    success, promotions, errors = compile_promotions(
        settings.promotions_csv,
        settings.compiled_promotions,
        settings.price_tiers_csv,
    )

    if not success:
        print(f"\n❌ Compilation failed with {len(errors)} errors")
        sys.exit(1)


if __name__ == "__main__":
    main()
