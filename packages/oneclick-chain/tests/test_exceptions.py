"""
Tests for the exception hierarchy and RPC error mapping.
"""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from oneclick_chain.exceptions import (
    AddressMismatchError,
    BridgeTransactionNotFound,
    ChainUnavailableError,
    InsufficientBalanceError,
    InsufficientPaymasterFunds,
    InsufficientPrefund,
    OperationAlreadyPending,
    OperationIneligible,
    PolicyRejected,
    SponsorshipUnknown,
    SubmissionRejected,
    ValidationError,
    sponsorship_error_from_rpc,
    submission_error_from_rpc,
)


class TestSponsorshipMapping:
    """Test paymaster error classification."""

    @pytest.mark.parametrize("message,expected", [
        ("Paymaster: insufficient deposit", InsufficientPaymasterFunds),
        ("insufficient balance for sponsorship", InsufficientPaymasterFunds),
        ("Sponsorship policy not found: sp_123", PolicyRejected),
        ("Policy rejected the operation", PolicyRejected),
        ("UserOperation not eligible for sponsorship", OperationIneligible),
        ("something else entirely", SponsorshipUnknown),
    ])
    def test_patterns(self, message, expected):
        """Should map error messages to typed sponsorship errors."""
        error = sponsorship_error_from_rpc({"code": -32000, "message": message}, "pm_sponsorUserOperation")

        assert type(error) is expected
        assert error.details["method"] == "pm_sponsorUserOperation"


class TestSubmissionMapping:
    """Test bundler error classification."""

    @pytest.mark.parametrize("message,expected", [
        ("UserOperation already in mempool", OperationAlreadyPending),
        ("already known", OperationAlreadyPending),
        ("AA21 didn't pay prefund", InsufficientPrefund),
        ("insufficient funds for gas", InsufficientPrefund),
        ("AA23 reverted: bad signature", SubmissionRejected),
    ])
    def test_patterns(self, message, expected):
        """Should map bundler rejections to typed submission errors."""
        error = submission_error_from_rpc({"message": message})

        assert type(error) is expected

    def test_user_message_in_dict(self):
        """Submission errors carry a user-facing message."""
        data = InsufficientPrefund("Sender did not pay prefund").to_dict()

        assert data["error"] == "INSUFFICIENT_PREFUND"
        assert "paymaster" in data["user_message"]


class TestErrorShapes:
    """Test error attributes."""

    def test_external_errors_are_retryable(self):
        """External service errors are retryable, validation errors are not."""
        assert ChainUnavailableError("down", service="rpc").retryable
        assert not ValidationError("bad").retryable

    def test_validation_field(self):
        """Should record the offending field."""
        error = ValidationError("bad", field="amount")

        assert error.to_dict()["details"] == {"field": "amount"}

    def test_insufficient_balance_message(self):
        """Should describe both balance and requirement."""
        error = InsufficientBalanceError(balance="0.5", required="1.0", token="ETH", chain="sepolia")

        assert "0.5 ETH < 1.0 ETH" in error.message
        assert error.details["chain"] == "sepolia"
        assert isinstance(error, ValidationError)

    def test_address_mismatch(self):
        """Should keep both addresses."""
        error = AddressMismatchError("0xaa", "0xbb")

        assert error.factory_address == "0xaa"
        assert error.local_address == "0xbb"

    def test_not_found(self):
        """Should carry the transaction id."""
        assert BridgeTransactionNotFound("bridge_1").transaction_id == "bridge_1"
