"""
Configuration Management Module

Holds the dispersal settings: network endpoint, fee constants, timing
and amount ranges. Settings are stored as plain YAML; signing keys are
never part of the configuration.
"""

import os
from pathlib import Path
from typing import Dict, Any
from dataclasses import dataclass, asdict

import yaml

# Setup basic logging for this module
import logging
logger = logging.getLogger(__name__)


@dataclass
class DispersalConfig:
    """Dispersal engine configuration settings."""

    # Network
    rpc_url: str = "http://127.0.0.1:8545"
    chain_id: int = 1
    confirm_timeout_seconds: int = 60

    # Fee constants (smallest units)
    fee_per_transaction: int = 5000     # Base fee charged by the ledger
    safety_buffer: int = 100000         # Headroom added on top of the base fee
    reserve: int = 890880               # Minimum balance kept in a usable account
    decimals: int = 9                   # Native unit = 10 ** decimals smallest units

    # Timing
    poll_interval_seconds: float = 3.0  # Funding wait poll interval
    hop_delay_seconds: float = 2.0      # Pause after every confirmed transfer

    # Amounts (native units)
    num_paths: int = 1
    min_amount: float = 0.1
    max_amount: float = 0.5

    # Operation
    dry_run: bool = False
    log_level: str = "INFO"
    log_file: str = "./dispersal.log"

    @property
    def fee_per_transfer(self) -> int:
        return self.fee_per_transaction + self.safety_buffer

    def fee_model(self):
        """Build the FeeModel matching these constants."""
        from .fees import FeeModel
        return FeeModel(
            fee_per_transaction=self.fee_per_transaction,
            safety_buffer=self.safety_buffer,
            reserve=self.reserve,
            decimals=self.decimals,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DispersalConfig":
        """Create DispersalConfig from dictionary."""
        # Filter only valid fields
        valid_fields = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**valid_fields)


class ConfigManager:
    """Reads and writes the YAML configuration file."""

    def __init__(self, config_path: Path = Path("./dispersal_config.yaml")):
        self.config_path = Path(config_path)

    def exists(self) -> bool:
        return self.config_path.exists()

    def load_config(self) -> DispersalConfig:
        """Load configuration, falling back to defaults when no file exists."""
        if not self.config_path.exists():
            logger.info(f"No config file at {self.config_path}, using defaults")
            return DispersalConfig()

        with open(self.config_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Config file {self.config_path} must contain a mapping")

        config = DispersalConfig.from_dict(data)
        logger.info("Configuration loaded successfully")
        return config

    def save_config(self, config: DispersalConfig):
        """Save configuration to YAML file."""
        # Ensure directory exists
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, 'w') as f:
            yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)

        # Set restrictive permissions (owner read/write only)
        os.chmod(self.config_path, 0o600)

        logger.info(f"Configuration saved to {self.config_path}")

    def update_config(self, updates: Dict[str, Any]) -> DispersalConfig:
        """Update configuration values."""
        data = self.load_config().to_dict()
        data.update(updates)

        config = DispersalConfig.from_dict(data)
        self.save_config(config)

        logger.info("Configuration updated")
        return config


# Default configuration template
DEFAULT_CONFIG = """
# Wallet Dispersal Configuration

rpc_url: http://127.0.0.1:8545
chain_id: 1
confirm_timeout_seconds: 60

# Fee constants (smallest units)
# The defaults suit a ledger with 9 decimals and flat fees (use --dry-run).
# For an EVM node set decimals: 18 and fee_per_transaction to at least
# 21000 * gas price in wei; runs refuse to start otherwise.
fee_per_transaction: 5000
safety_buffer: 100000
reserve: 890880
decimals: 9

# Timing
poll_interval_seconds: 3.0
hop_delay_seconds: 2.0

# Amounts (native units)
num_paths: 1
min_amount: 0.1
max_amount: 0.5

# Operation Settings
dry_run: false
log_level: INFO
log_file: ./dispersal.log
""".strip()
