"""
Utility Module

Logging, error taxonomy, formatting and validation helpers shared by the
dispersal engine.

- Secure logging that redacts key material
- Exception hierarchy for whole-run and per-hop failures
- Amount and address formatting for status messages
"""

import os
import re
import logging
from decimal import Decimal
from typing import Optional

from web3 import Web3
from rich.logging import RichHandler
from rich.console import Console


# Global console for Rich output
console = Console()


class DispersalError(Exception):
    """Base class for dispersal engine errors."""
    pass


class AllocationImpossibleError(DispersalError):
    """Raised when nothing is left to allocate after fees and reserves."""

    def __init__(self, message: str, required: int = 0, available: int = 0):
        super().__init__(message)
        self.required = required
        self.available = available


class InsufficientFundsError(AllocationImpossibleError):
    """Raised when requested path targets exceed the available funds."""
    pass


class HopInsufficientBalanceError(DispersalError):
    """Raised when a hop account cannot cover the transfer fee plus reserve."""

    def __init__(self, message: str, balance: int, required: int):
        super().__init__(message)
        self.balance = balance
        self.required = required

    @property
    def missing(self) -> int:
        return max(self.required - self.balance, 0)


class TransferFailedError(DispersalError):
    """Raised when the ledger rejects or fails to confirm a transfer."""
    pass


class DispersalCancelled(DispersalError):
    """Raised when a run is cancelled through its cancellation token."""
    pass


class SecureLogger:
    """
    Logger that sanitizes sensitive data from log messages.

    Signing keys are 32 bytes; any 64-char hex run is treated as one.
    """

    # Patterns to redact from logs
    SENSITIVE_PATTERNS = [
        (r'(0x)?[a-fA-F0-9]{64}', '[PRIVATE_KEY_REDACTED]'),
        (r'password["\']?\s*[:=]\s*["\'][^"\']+["\']', 'password=[REDACTED]'),
        (r'key["\']?\s*[:=]\s*["\'][^"\']{32,}["\']', 'key=[REDACTED]'),
    ]

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def _sanitize(self, msg: str) -> str:
        """Remove sensitive data from log message."""
        if not isinstance(msg, str):
            msg = str(msg)

        sanitized = msg
        for pattern, replacement in self.SENSITIVE_PATTERNS:
            sanitized = re.sub(pattern, replacement, sanitized, flags=re.IGNORECASE)
        return sanitized

    def debug(self, msg: str, *args, **kwargs):
        self._logger.debug(self._sanitize(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._logger.info(self._sanitize(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._logger.warning(self._sanitize(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._logger.error(self._sanitize(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs):
        self._logger.exception(self._sanitize(msg), *args, **kwargs)

    def critical(self, msg: str, *args, **kwargs):
        self._logger.critical(self._sanitize(msg), *args, **kwargs)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    console_output: bool = True
) -> SecureLogger:
    """
    Setup logging with Rich console output and an optional log file.

    With console_output=False only the file handler is attached; the CLI
    uses this when it renders the run status feed itself.

    Calling it again reconfigures the same underlying logger, so module-level
    references to the returned SecureLogger stay valid.
    """
    logger = logging.getLogger("dispersal")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.propagate = False

    # Remove existing handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if console_output:
        rich_handler = RichHandler(
            console=console,
            show_time=True,
            show_path=False,
            rich_tracebacks=True
        )
        rich_handler.setLevel(getattr(logging, log_level.upper()))
        rich_handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(rich_handler)

    if log_file:
        log_path = os.path.abspath(log_file)
        os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(getattr(logging, log_level.upper()))
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        logger.addHandler(file_handler)

    return SecureLogger(logger)


# Shared secure logger; the CLI reconfigures it with the configured file
logger = setup_logging()


# Formatting utilities

def format_units(amount: int, decimals: int = 9) -> str:
    """Format an integer amount of smallest units in native units."""
    value = Decimal(amount) / (Decimal(10) ** decimals)
    if amount != 0 and abs(value) < Decimal("0.0001"):
        return f"{value:.{decimals}f}"
    return f"{value:.4f}"


def format_address(address: str, length: int = 6) -> str:
    """Format address with ellipsis."""
    if len(address) <= length * 2 + 2:
        return address
    return f"{address[:length + 2]}...{address[-length:]}"


def format_tx_hash(tx_hash: str, length: int = 8) -> str:
    """Format transaction hash with ellipsis."""
    if len(tx_hash) <= length * 2:
        return tx_hash
    return f"{tx_hash[:length]}...{tx_hash[-length:]}"


# Validation utilities

def validate_address(address: str) -> bool:
    """
    Validate address format and checksum.

    Mixed-case addresses must carry a valid checksum; all-lowercase and
    all-uppercase hex is accepted as unchecksummed.
    """
    if not address:
        return False

    try:
        return bool(Web3.is_address(address))
    except (ValueError, TypeError):
        return False


def sanitize_error_message(error) -> str:
    """
    Sanitize error messages to remove sensitive data.

    Args:
        error: Original error message or exception

    Returns:
        Sanitized error message safe for display
    """
    if not isinstance(error, str):
        error = str(error)

    patterns = [
        (r'(0x)?[a-fA-F0-9]{64}', '[PRIVATE_KEY]'),
        (r'https?://[^\s]+', '[URL]'),
    ]

    sanitized = error
    for pattern, replacement in patterns:
        sanitized = re.sub(pattern, replacement, sanitized, flags=re.IGNORECASE)

    return sanitized
