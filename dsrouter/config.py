"""
DS Router - Configuration

Router-wide settings with JSON file overrides, and logging setup.
"""

import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional

from .bonding_curve import (
    DEFAULT_EPSILON, DEFAULT_MAX_ITERATIONS, DEFAULT_MAX_BRACKET_ADJUSTMENTS,
    DEFAULT_ONE_MINUS_T_FLOOR, DEFAULT_ONE_MINUS_T_CEILING,
)
from .fixed_point import DEFAULT_PRECISION
from .reserve_ledger import DEFAULT_DUST_FLOOR

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


@dataclass
class RouterConfig:
    # Curve solver
    epsilon: int = DEFAULT_EPSILON
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_bracket_adjustments: int = DEFAULT_MAX_BRACKET_ADJUSTMENTS
    precision: int = DEFAULT_PRECISION

    # 1 - t bounds (18 decimals)
    one_minus_t_floor: int = DEFAULT_ONE_MINUS_T_FLOOR
    one_minus_t_ceiling: int = DEFAULT_ONE_MINUS_T_CEILING

    # Reserve sale
    dust_floor: int = DEFAULT_DUST_FLOOR
    rollover_window_blocks: int = 7200    # ~1 day of 12s blocks

    # Chain access (optional)
    rpc_url: Optional[str] = None
    log_level: str = "INFO"

    def validate(self):
        if self.epsilon <= 0:
            raise ValueError(f"epsilon must be positive, got {self.epsilon}")
        if self.max_iterations <= 0:
            raise ValueError(f"max_iterations must be positive, got {self.max_iterations}")
        if self.max_bracket_adjustments < 0:
            raise ValueError("max_bracket_adjustments must be >= 0")
        if not 0 < self.one_minus_t_floor <= self.one_minus_t_ceiling <= 10 ** 18:
            raise ValueError(
                f"Bad 1-t bounds [{self.one_minus_t_floor}, {self.one_minus_t_ceiling}]"
            )
        if self.dust_floor < 0:
            raise ValueError(f"dust_floor must be >= 0, got {self.dust_floor}")
        if self.rollover_window_blocks < 0:
            raise ValueError("rollover_window_blocks must be >= 0")
        return self

    def to_dict(self) -> dict:
        return asdict(self)


def load_config(path: Optional[str] = None, setup_logging: bool = False) -> RouterConfig:
    """
    Load settings from a JSON file over the defaults.

    Args:
        path: JSON file; defaults only when None or missing
        setup_logging: Also install the log format at the configured log_level

    Raises:
        ValueError: Unknown keys or invalid values
    """
    config = _read_config(path).validate()
    if setup_logging:
        configure_logging(config.log_level)
    return config


def _read_config(path: Optional[str]) -> RouterConfig:
    config = RouterConfig()
    if path is None:
        return config

    config_path = Path(path)
    if not config_path.exists():
        log.warning(f"Config file {config_path} not found, using defaults")
        return config

    data = json.loads(config_path.read_text())
    known = {f.name for f in fields(RouterConfig)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown config keys: {sorted(unknown)}")

    for key, value in data.items():
        setattr(config, key, value)
    log.info(f"Loaded config from {config_path}")
    return config


def configure_logging(level: str = "INFO"):
    """Install the router's log format on the root logger."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
