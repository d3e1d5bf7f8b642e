"""
Centralized settings and path configuration for the promotion engine.
"""
import os
from pathlib import Path
from dataclasses import dataclass
from typing import Optional


def get_project_root() -> Path:
    """Get the project root directory (where pyproject.toml lives)."""
    current = Path(__file__).resolve()
    for parent in current.parents:
        if (parent / 'pyproject.toml').exists():
            return parent
    # Fallback to 3 levels up from this file
    return Path(__file__).resolve().parent.parent.parent.parent


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw else default


@dataclass
class Settings:
    """Engine settings with sensible defaults."""
    
    # Project paths
    project_root: Path
    data_dir: Path
    
    # Promotion definitions
    promotions_csv: Path
    compiled_promotions: Path
    
    # Flash sales and tier tables
    flash_sales_csv: Path
    price_tiers_csv: Path
    
    # Stacking: above this many non-stackable candidates use priority-greedy
    max_exclusive_candidates: int = 12
    
    # Flash-sale allocation
    allocation_timeout: float = 2.0  # seconds to wait for a sale's lock
    reservation_grace_seconds: int = 900
    
    log_level: str = "INFO"
    
    @classmethod
    def load(cls, project_root: Optional[Path] = None) -> 'Settings':
        """Load settings from the project structure and environment."""
        root = project_root or get_project_root()
        
        data_dir_env = os.environ.get('PROMO_ENGINE_DATA_DIR')
        data_dir = Path(data_dir_env) if data_dir_env else root / 'src' / 'promo_engine' / 'data'
        
        return cls(
            project_root=root,
            data_dir=data_dir,
            promotions_csv=data_dir / 'promotions.csv',
            compiled_promotions=data_dir / 'compiled_promotions.json',
            flash_sales_csv=data_dir / 'flash_sales.csv',
            price_tiers_csv=data_dir / 'price_tiers.csv',
            max_exclusive_candidates=_env_int('PROMO_ENGINE_MAX_EXCLUSIVE_CANDIDATES', 12),
            allocation_timeout=_env_float('PROMO_ENGINE_ALLOCATION_TIMEOUT', 2.0),
            reservation_grace_seconds=_env_int('PROMO_ENGINE_RESERVATION_GRACE_SECONDS', 900),
            log_level=os.environ.get('PROMO_ENGINE_LOG_LEVEL', 'INFO').upper(),
        )


# Default settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings
