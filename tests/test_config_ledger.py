"""
Config, Utility and Ledger Tests
================================

Run with: pytest tests/ -v
"""

import os
import sys
import logging
from pathlib import Path
from unittest.mock import Mock

import pytest

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dispersal.config import DispersalConfig, ConfigManager
from dispersal.hierarchy import new_account
from dispersal.ledger import SimulatedLedger, TransferIntent, Web3Ledger
from dispersal.models import AccountRole
from dispersal.utils import (
    SecureLogger,
    format_address,
    format_units,
    sanitize_error_message,
    validate_address,
)


class TestConfig:
    """Tests for configuration management."""

    def test_default_config(self):
        """Test default configuration values."""
        config = DispersalConfig()

        assert config.fee_per_transaction == 5000
        assert config.fee_per_transfer == 105000
        assert config.reserve == 890880
        assert config.decimals == 9
        assert config.num_paths == 1
        assert config.min_amount == 0.1
        assert config.max_amount == 0.5
        assert config.dry_run is False

    def test_from_dict_ignores_unknown_keys(self):
        config = DispersalConfig.from_dict({"num_paths": 4, "private_key": "nope"})

        assert config.num_paths == 4
        assert not hasattr(config, "private_key")

    def test_fee_model_matches_constants(self):
        config = DispersalConfig(fee_per_transaction=10, safety_buffer=20, reserve=30)
        fees = config.fee_model()

        assert fees.fee_per_transfer == 30
        assert fees.hop_cost == 60


class TestConfigManager:
    """Tests for the YAML config file."""

    def test_missing_file_gives_defaults(self, tmp_path):
        manager = ConfigManager(tmp_path / "missing.yaml")

        assert not manager.exists()
        assert manager.load_config() == DispersalConfig()

    def test_save_and_load(self, tmp_path):
        """Test saving and loading configuration."""
        config_file = tmp_path / "config.yaml"
        manager = ConfigManager(config_file)

        manager.save_config(DispersalConfig(num_paths=7, hop_delay_seconds=0.5))
        loaded = manager.load_config()

        assert loaded.num_paths == 7
        assert loaded.hop_delay_seconds == 0.5

        if os.name != 'nt':
            import stat
            assert stat.S_IMODE(config_file.stat().st_mode) == 0o600

    def test_update_config(self, tmp_path):
        manager = ConfigManager(tmp_path / "config.yaml")
        manager.update_config({"max_amount": 2.0})

        assert manager.load_config().max_amount == 2.0

    def test_non_mapping_rejected(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("- just\n- a list\n")

        with pytest.raises(ValueError):
            ConfigManager(config_file).load_config()


class TestUtils:
    """Tests for formatting, validation and redaction helpers."""

    def test_format_units(self):
        assert format_units(1_500_000_000) == "1.5000"
        assert format_units(0) == "0.0000"
        assert format_units(5000) == "0.000005000"

    def test_format_address(self):
        address = "0x" + "ab" * 20
        assert format_address(address) == "0xababab...ababab"

    def test_validate_address(self):
        account = new_account(AccountRole.FUNDING)

        assert validate_address(account.address)
        assert validate_address(account.address.lower())
        assert not validate_address("0x1234")
        assert not validate_address("")

    def test_sanitize_error_message(self):
        message = sanitize_error_message(f"bad key {'c' * 64} at https://rpc.example.org/secret")

        assert "c" * 64 not in message
        assert "[PRIVATE_KEY]" in message
        assert "[URL]" in message

    def test_secure_logger_redacts_keys(self):
        inner = Mock(spec=logging.Logger)
        secure = SecureLogger(inner)

        secure.info("exported " + "d" * 64)

        logged = inner.info.call_args[0][0]
        assert "d" * 64 not in logged
        assert "[PRIVATE_KEY_REDACTED]" in logged


class TestSimulatedLedger:
    """Tests for the in-memory ledger."""

    def test_transfer_moves_amount_and_charges_fee(self):
        ledger = SimulatedLedger(fee_per_transaction=5000)
        sender = new_account(AccountRole.FUNDING)
        receiver = new_account(AccountRole.LANDING)
        ledger.fund(sender.address, 1_000_000)

        result = ledger.submit_and_confirm(TransferIntent(sender.address, receiver.address, 400_000), [sender])

        assert result.ok
        assert result.tx_ref == "sim-1"
        assert ledger.get_balance(sender.address) == 595_000
        assert ledger.get_balance(receiver.address) == 400_000

    def test_overdraw_rejected(self):
        ledger = SimulatedLedger()
        sender = new_account(AccountRole.FUNDING)
        ledger.fund(sender.address, 100)

        result = ledger.submit_and_confirm(TransferIntent(sender.address, "0x" + "0" * 40, 100), [sender])

        assert not result.ok
        assert ledger.get_balance(sender.address) == 100

    def test_missing_signer_rejected(self):
        ledger = SimulatedLedger()
        sender = new_account(AccountRole.FUNDING)
        other = new_account(AccountRole.LANDING)
        ledger.fund(sender.address, 10 ** 9)

        result = ledger.submit_and_confirm(TransferIntent(sender.address, other.address, 1000), [other])

        assert not result.ok
        assert "No signer" in result.reason


@pytest.fixture
def mock_web3():
    """Mock web3 instance for a node that confirms everything."""
    web3 = Mock()
    web3.eth.gas_price = 2  # 42000 wei per transfer, inside the 105000 budget
    web3.eth.get_transaction_count.return_value = 3
    web3.eth.send_raw_transaction.return_value = bytes.fromhex("ab" * 32)
    web3.eth.wait_for_transaction_receipt.return_value = {'status': 1}
    web3.eth.get_balance.return_value = 10 ** 18
    return web3


class TestWeb3Ledger:
    """Tests for the web3-backed ledger."""

    def make_ledger(self, web3):
        return Web3Ledger(web3, chain_id=8453, fee_budget=105000, confirm_timeout=5)

    def test_fee_shortfall(self, mock_web3):
        ledger = self.make_ledger(mock_web3)
        assert ledger.network_fee() == 42000
        assert ledger.fee_shortfall() == 0

        mock_web3.eth.gas_price = 10 ** 9
        assert ledger.fee_shortfall() == 21000 * 10 ** 9 - 105000

    def test_refuses_transfer_when_gas_price_exceeds_budget(self, mock_web3):
        """A network price above the fee budget fails the transfer without sending it."""
        mock_web3.eth.gas_price = 10 ** 9
        ledger = self.make_ledger(mock_web3)
        sender = new_account(AccountRole.FUNDING)

        result = ledger.submit_and_confirm(TransferIntent(sender.address, sender.address, 10 ** 6), [sender])

        assert not result.ok
        assert "Fee budget below network gas price" in result.reason
        mock_web3.eth.send_raw_transaction.assert_not_called()

    def test_submits_at_network_gas_price(self, mock_web3):
        ledger = self.make_ledger(mock_web3)
        sender = new_account(AccountRole.FUNDING)
        signer = Mock(wraps=sender.signer)
        sender_with_spy = Mock(address=sender.address, signer=signer)

        ledger.submit_and_confirm(TransferIntent(sender.address, sender.address, 1), [sender_with_spy])

        tx = signer.sign_transaction.call_args[0][0]
        assert tx['gasPrice'] == 2
        assert tx['gas'] == 21000

    def test_successful_transfer(self, mock_web3):
        ledger = self.make_ledger(mock_web3)
        sender = new_account(AccountRole.INTERMEDIATE, 0, 1)
        receiver = new_account(AccountRole.INTERMEDIATE, 0, 2)

        result = ledger.submit_and_confirm(TransferIntent(sender.address, receiver.address, 10 ** 6), [sender])

        assert result.ok
        assert result.tx_ref == "ab" * 32
        mock_web3.eth.get_transaction_count.assert_called_once_with(sender.address, 'pending')
        mock_web3.eth.wait_for_transaction_receipt.assert_called_once()

    def test_reverted_transfer(self, mock_web3):
        mock_web3.eth.wait_for_transaction_receipt.return_value = {'status': 0}
        ledger = self.make_ledger(mock_web3)
        sender = new_account(AccountRole.FUNDING)

        result = ledger.submit_and_confirm(TransferIntent(sender.address, sender.address, 1), [sender])

        assert not result.ok
        assert result.reason == "Transaction reverted"
        assert result.tx_ref == "ab" * 32

    def test_node_error_is_sanitized(self, mock_web3):
        mock_web3.eth.send_raw_transaction.side_effect = ValueError("rejected by https://rpc.example.org/k3y")
        ledger = self.make_ledger(mock_web3)
        sender = new_account(AccountRole.FUNDING)

        result = ledger.submit_and_confirm(TransferIntent(sender.address, sender.address, 1), [sender])

        assert not result.ok
        assert "[URL]" in result.reason
        assert "k3y" not in result.reason

    def test_missing_signer(self, mock_web3):
        ledger = self.make_ledger(mock_web3)
        sender = new_account(AccountRole.FUNDING)
        other = new_account(AccountRole.LANDING)

        result = ledger.submit_and_confirm(TransferIntent(sender.address, other.address, 1), [other])

        assert not result.ok
        mock_web3.eth.send_raw_transaction.assert_not_called()

    def test_get_balance_retries_connection_errors(self, mock_web3):
        mock_web3.eth.get_balance.side_effect = [ConnectionError("reset"), 42]
        ledger = self.make_ledger(mock_web3)

        assert ledger.get_balance(new_account(AccountRole.FUNDING).address) == 42
        assert mock_web3.eth.get_balance.call_count == 2
