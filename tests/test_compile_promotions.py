import csv
import json
import shutil
from datetime import datetime, timezone
from pathlib import Path
import pytest
import sys
import os

# Add src to path for internal imports
src_path = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'src')
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from promo_engine.config.settings import Settings
from promo_engine.engine import LineItem, PromotionEngine, QuoteRequest
from promo_engine.engine.errors import PromotionDefinitionError
from promo_engine.rules.catalog import build_promotion, load_flash_sales, load_price_tiers, load_promotions
from promo_engine.rules.compile_promotions import compile_promotions

DATA_DIR = Path(src_path) / 'promo_engine' / 'data'

COLUMNS = [
    'promotion_id', 'name', 'active', 'kind', 'priority', 'stackable', 'value', 'max_amount',
    'start_date', 'end_date', 'conditions', 'exclusions', 'params', 'notes',
]


def write_promotions(path: Path, rows: list[dict]):
    with open(path, 'w', newline='', encoding='utf-8') as f:
        writer = csv.DictWriter(f, fieldnames=COLUMNS)
        writer.writeheader()
        for row in rows:
            writer.writerow({col: row.get(col, '') for col in COLUMNS})


@pytest.fixture
def compiled(tmp_path):
    output = tmp_path / 'compiled_promotions.json'
    success, promotions, errors = compile_promotions(
        DATA_DIR / 'promotions.csv',
        output,
        DATA_DIR / 'price_tiers.csv',
        verbose=False,
    )
    assert success, errors
    return output


def test_compile_sample_promotions(compiled):
    with open(compiled, encoding='utf-8') as f:
        data = json.load(f)

    assert data['total_promotions'] == 7
    assert data['active_promotions'] == 7
    assert len(data['source_hash']) == 12
    ids = [p['promotion_id'] for p in data['promotions']]
    assert ids[0] == 'HEADPHONE-FLASH'
    assert ids[-1] == 'MEMBER-5'
    priorities = [p['priority'] for p in data['promotions']]
    assert priorities == sorted(priorities, reverse=True)


def test_load_compiled_promotions(compiled):
    tier_sets = load_price_tiers(DATA_DIR / 'price_tiers.csv')
    promotions, errors = load_promotions(compiled, tier_sets)

    assert errors == []
    by_id = {p.promotion_id: p for p in promotions}
    assert by_id['CABLE-TIERS'].tiers[-1].max_quantity is None
    assert by_id['CABLE-TIERS'].product_ids == frozenset({'P-CABLE-USB-C'})
    assert by_id['MEMBER-5'].conditions.operator == 'OR'
    assert by_id['WELCOME10'].exclusions[0].ids == frozenset({'GIFT-CARDS'})


def test_tier_set_missing_is_an_error(compiled):
    promotions, errors = load_promotions(compiled, tier_sets=None)
    assert 'CABLE-TIERS' not in {p.promotion_id for p in promotions}
    assert any("Unknown price tier set 'CABLES'" in e for e in errors)


def test_load_price_tiers():
    tier_sets = load_price_tiers(DATA_DIR / 'price_tiers.csv')
    assert sorted(tier_sets) == ['CABLES', 'PAPER']
    assert [t.price_per_unit for t in tier_sets['PAPER']] == [450, 400, 350]


def test_invalid_rows_are_reported(tmp_path):
    source = tmp_path / 'promotions.csv'
    write_promotions(source, [
        {'promotion_id': 'BAD-KIND', 'kind': 'coupon', 'value': '10'},
        {'promotion_id': 'BAD-JSON', 'kind': 'percentage', 'value': '10', 'conditions': '{not json'},
        {
            'promotion_id': 'GAP', 'kind': 'tiered',
            'params': json.dumps({'tiers': [
                {'min_quantity': 1, 'max_quantity': 5, 'price_per_unit': 100},
                {'min_quantity': 8, 'max_quantity': None, 'price_per_unit': 80},
            ]}),
        },
        {'promotion_id': '', 'kind': 'fixed', 'value': '100'},
        {'promotion_id': 'OK1', 'kind': 'fixed', 'value': '100'},
        {'promotion_id': 'OK1', 'kind': 'fixed', 'value': '200'},
    ])
    output = tmp_path / 'compiled_promotions.json'

    success, promotions, errors = compile_promotions(source, output, verbose=False)

    assert not success
    assert not output.exists()
    assert [p.promotion_id for p in promotions] == ['OK1']
    assert any(e.startswith('Line 2: BAD-KIND') and 'invalid kind' in e for e in errors)
    assert any(e.startswith('Line 3: BAD-JSON') for e in errors)
    assert any(e.startswith('Line 4:') and 'gap' in e for e in errors)
    assert 'Line 5: promotion_id is required' in errors
    assert "Line 7: duplicate promotion_id 'OK1'" in errors


def test_missing_source_file(tmp_path):
    success, promotions, errors = compile_promotions(tmp_path / 'nope.csv', tmp_path / 'out.json', verbose=False)
    assert not success
    assert errors and 'not found' in errors[0]


def test_build_promotion_wraps_bad_params():
    with pytest.raises(PromotionDefinitionError):
        build_promotion({'promotion_id': 'B', 'kind': 'bogo', 'params': {'buy_quantity': 1}})


def test_load_flash_sales():
    sales = {s.sale_id: s for s in load_flash_sales(DATA_DIR / 'flash_sales.csv')}

    assert sorted(sales) == ['FS-CHARGERS', 'FS-HEADPHONES']
    assert sales['FS-HEADPHONES'].product_ids == frozenset({'P-HEAD-01', 'P-HEAD-02'})
    assert sales['FS-HEADPHONES'].max_quantity == 100
    assert sales['FS-CHARGERS'].max_quantity is None
    assert sales['FS-HEADPHONES'].start_time == datetime(2026, 11, 27, 9, 0)


def test_engine_loads_from_data_dir(tmp_path, monkeypatch):
    for name in ('promotions.csv', 'price_tiers.csv', 'flash_sales.csv'):
        shutil.copy(DATA_DIR / name, tmp_path / name)
    monkeypatch.setenv('PROMO_ENGINE_DATA_DIR', str(tmp_path))

    settings = Settings.load(project_root=tmp_path)
    success, _, errors = compile_promotions(
        settings.promotions_csv, settings.compiled_promotions, settings.price_tiers_csv, verbose=False
    )
    assert success, errors

    engine = PromotionEngine(settings=settings)
    assert engine.load_errors == []
    assert len(engine.promotions) == 7
    assert engine.allocator.sale_ids() == ['FS-CHARGERS', 'FS-HEADPHONES']

    headphones = LineItem(product_id='P-HEAD-01', category_id='AUDIO', quantity=1, unit_price=10000)
    result = engine.quote(QuoteRequest(
        items=[headphones],
        user={'order_count': 0},
        now=datetime(2026, 11, 27, 12, 0),
    ))

    # Flash 30% (3000) first, then the welcome 10% on the remaining 7000 (700)
    assert result.total_discount == 3700
    assert result.final_amount == 6300
    assert result.flash_sale_quantities == {'FS-HEADPHONES': 1}
    assert result.skipped['SPEND50'].startswith('conditions not met')


def test_engine_without_compiled_file(tmp_path, monkeypatch):
    monkeypatch.setenv('PROMO_ENGINE_DATA_DIR', str(tmp_path))
    engine = PromotionEngine(settings=Settings.load(project_root=tmp_path))
    assert engine.promotions == []
    assert engine.allocator.sale_ids() == []


def test_load_flash_sales_normalises_timezones(tmp_path):
    source = tmp_path / 'flash_sales.csv'
    source.write_text(
        "sale_id,name,product_ids,discount_percent,start_time,end_time,max_quantity,sold_quantity,is_active\n"
        "FS-UTC,UTC sale,P-1,10,2026-11-27T09:00:00+00:00,2026-11-27T21:00:00+00:00,5,0,true\n",
        encoding='utf-8',
    )
    sale = load_flash_sales(source)[0]

    expected = datetime(2026, 11, 27, 9, 0, tzinfo=timezone.utc).astimezone().replace(tzinfo=None)
    assert sale.start_time.tzinfo is None
    assert sale.start_time == expected
