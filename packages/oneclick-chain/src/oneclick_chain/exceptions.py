"""Unified exception hierarchy for oneclick-chain.

All library exceptions inherit from OneClickChainError, enabling:
- Consistent error handling across the pipeline and the bridge
- Structured error responses with machine-readable error codes
- Mapping of raw paymaster / bundler RPC errors to typed failures

Families:
- Validation errors: rejected before any network call, never retried
- Signing errors: the passkey ceremony failed or was declined
- Sponsorship errors: the paymaster refused or failed to sponsor
- Submission errors: the bundler rejected the operation (not retried)
- External service errors: a dependency is unreachable (retryable by caller)
- Bridge errors: transaction registry and settlement failures

Usage:
    from oneclick_chain.exceptions import (
        OneClickChainError,
        SponsorshipError,
        sponsorship_error_from_rpc,
    )

    try:
        result = await paymaster.sponsor_user_operation(op, entrypoint)
    except InsufficientPaymasterFunds:
        ...
"""
from __future__ import annotations

import logging
from typing import Any, Optional, Type

logger = logging.getLogger(__name__)


class OneClickChainError(Exception):
    """Base exception for all oneclick-chain errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "VALIDATION_ERROR")
        details: Optional additional context
    """

    error_code: str = "ONECLICK_CHAIN_ERROR"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Validation & Input Errors
# =============================================================================

class ValidationError(OneClickChainError):
    """Invalid input data or parameters."""

    error_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class InvalidPublicKey(ValidationError):
    """Public key has the wrong length or cannot be decoded."""

    error_code = "INVALID_PUBLIC_KEY"


class InvalidAddress(ValidationError):
    """Malformed EVM address."""

    error_code = "INVALID_ADDRESS"


class InvalidAmount(ValidationError):
    """Amount is not a positive exact decimal within bounds."""

    error_code = "INVALID_AMOUNT"


class UnsupportedBridgePair(ValidationError):
    """No route configured between the requested chains/tokens."""

    error_code = "UNSUPPORTED_BRIDGE_PAIR"


class AddressMismatchError(ValidationError):
    """Factory and local CREATE2 computation disagree on the account address."""

    error_code = "ADDRESS_MISMATCH"

    def __init__(self, factory_address: str, local_address: str) -> None:
        super().__init__(
            f"Factory address {factory_address} does not match locally derived "
            f"address {local_address}",
            details={"factory_address": factory_address, "local_address": local_address},
        )
        self.factory_address = factory_address
        self.local_address = local_address


class InsufficientBalanceError(ValidationError):
    """Source balance does not cover the requested amount."""

    error_code = "INSUFFICIENT_BALANCE"

    def __init__(
        self,
        balance: str,
        required: str,
        token: str,
        chain: Optional[str] = None,
    ) -> None:
        details: dict[str, Any] = {"balance": balance, "required": required, "token": token}
        if chain:
            details["chain"] = chain
        super().__init__(
            f"Insufficient balance: {balance} {token} < {required} {token}",
            details=details,
        )


class ConfigurationError(OneClickChainError):
    """Required configuration is missing or invalid."""

    error_code = "CONFIGURATION_ERROR"


# =============================================================================
# Signing Errors
# =============================================================================

class SigningError(OneClickChainError):
    """Base class for passkey signing failures."""

    error_code = "SIGNING_ERROR"


class UserCancelled(SigningError):
    """The user declined the passkey prompt."""

    error_code = "USER_CANCELLED"


class CredentialNotFound(SigningError):
    """No passkey matches the credential reference."""

    error_code = "CREDENTIAL_NOT_FOUND"


class SecurityContextInvalid(SigningError):
    """The ceremony was attempted from a non-secure context."""

    error_code = "SECURITY_CONTEXT_INVALID"


class SigningTimeout(SigningError):
    """The human-interaction window elapsed without a signature."""

    error_code = "SIGNING_TIMEOUT"


# =============================================================================
# Sponsorship Errors (paymaster)
# =============================================================================

class SponsorshipError(OneClickChainError):
    """Base class for paymaster sponsorship failures."""

    error_code = "SPONSORSHIP_ERROR"


class InsufficientPaymasterFunds(SponsorshipError):
    """Paymaster deposit cannot cover the operation."""

    error_code = "INSUFFICIENT_PAYMASTER_FUNDS"


class PolicyRejected(SponsorshipError):
    """Sponsorship policy is unknown or refused the operation."""

    error_code = "POLICY_REJECTED"


class OperationIneligible(SponsorshipError):
    """The operation is not eligible for sponsorship."""

    error_code = "OPERATION_INELIGIBLE"


class SponsorshipUnknown(SponsorshipError):
    """Unclassified paymaster failure."""

    error_code = "SPONSORSHIP_UNKNOWN"


# =============================================================================
# Submission Errors (bundler)
# =============================================================================

class SubmissionError(OneClickChainError):
    """Base class for bundler rejections. Never retried automatically."""

    error_code = "SUBMISSION_ERROR"
    user_message = "The transaction could not be submitted."

    def __init__(
        self,
        message: str,
        user_message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details)
        if user_message:
            self.user_message = user_message

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["user_message"] = self.user_message
        return result


class OperationAlreadyPending(SubmissionError):
    error_code = "OPERATION_ALREADY_PENDING"
    user_message = "Transaction already pending. Please wait for it to complete."


class InsufficientPrefund(SubmissionError):
    error_code = "INSUFFICIENT_PREFUND"
    user_message = (
        "Insufficient funds for gas fees. Fund the smart account or enable "
        "paymaster sponsorship."
    )


class SubmissionRejected(SubmissionError):
    error_code = "SUBMISSION_REJECTED"


# =============================================================================
# External Service Errors (retryable by caller)
# =============================================================================

class ExternalServiceError(OneClickChainError):
    """A remote dependency could not be reached or answered garbage."""

    error_code = "EXTERNAL_SERVICE_ERROR"
    retryable = True

    def __init__(
        self,
        message: str,
        service: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if service:
            details["service"] = service
        super().__init__(message, details=details)


class ChainUnavailableError(ExternalServiceError):
    """Chain JSON-RPC node unavailable."""

    error_code = "CHAIN_UNAVAILABLE"


class BundlerUnavailable(ExternalServiceError):
    error_code = "BUNDLER_UNAVAILABLE"


class ContractNotDeployed(ChainUnavailableError):
    """eth_call returned no data: nothing is deployed at the target address."""

    error_code = "CONTRACT_NOT_DEPLOYED"
    retryable = False


class AggregatorUnavailable(ExternalServiceError):
    error_code = "AGGREGATOR_UNAVAILABLE"


# =============================================================================
# Bridge Errors
# =============================================================================

class BridgeError(OneClickChainError):
    """Base class for bridge orchestration errors."""

    error_code = "BRIDGE_ERROR"


class BridgeTransactionNotFound(BridgeError):
    error_code = "BRIDGE_TRANSACTION_NOT_FOUND"

    def __init__(self, transaction_id: str) -> None:
        super().__init__(
            f"Bridge transaction '{transaction_id}' not found",
            details={"transaction_id": transaction_id},
        )
        self.transaction_id = transaction_id


class InvalidStatusTransition(BridgeError):
    error_code = "INVALID_STATUS_TRANSITION"

    def __init__(self, transaction_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Bridge transaction {transaction_id} cannot move from {current} to {requested}",
            details={
                "transaction_id": transaction_id,
                "current": current,
                "requested": requested,
            },
        )


class SourceSettlementFailed(BridgeError):
    error_code = "SOURCE_SETTLEMENT_FAILED"


class CancellationNotAllowed(BridgeError):
    """The transaction is in a state that cannot be cancelled."""

    error_code = "CANCELLATION_NOT_ALLOWED"


# =============================================================================
# Error Mapping Utilities
# =============================================================================

# Paymaster error patterns and their corresponding exception types
SPONSORSHIP_ERROR_PATTERNS: dict[str, tuple[Type[SponsorshipError], str]] = {
    "insufficient deposit": (
        InsufficientPaymasterFunds,
        "Paymaster has insufficient funds",
    ),
    "insufficient balance": (
        InsufficientPaymasterFunds,
        "Paymaster has insufficient funds",
    ),
    "policy not found": (PolicyRejected, "Invalid sponsorship policy"),
    "policy rejected": (PolicyRejected, "Sponsorship policy rejected the operation"),
    "not eligible": (OperationIneligible, "Operation is not eligible for sponsorship"),
}

# Bundler error patterns and their corresponding exception types
SUBMISSION_ERROR_PATTERNS: dict[str, tuple[Type[SubmissionError], str]] = {
    "already in mempool": (OperationAlreadyPending, "UserOperation already pending"),
    "already known": (OperationAlreadyPending, "UserOperation already pending"),
    "aa21": (InsufficientPrefund, "Sender did not pay prefund"),
    "didn't pay prefund": (InsufficientPrefund, "Sender did not pay prefund"),
    "insufficient funds": (InsufficientPrefund, "Insufficient funds for gas"),
    "prefund": (InsufficientPrefund, "Insufficient prefund"),
}


def sponsorship_error_from_rpc(error: Any, method: Optional[str] = None) -> SponsorshipError:
    """Convert a paymaster RPC error payload to a typed sponsorship error."""
    error_str = str(error).lower()
    details: dict[str, Any] = {"original_error": str(error)}
    if method:
        details["method"] = method

    for pattern, (exc_class, message) in SPONSORSHIP_ERROR_PATTERNS.items():
        if pattern in error_str:
            return exc_class(message, details=details)

    return SponsorshipUnknown(f"Sponsorship failed: {error}", details=details)


def submission_error_from_rpc(error: Any, method: Optional[str] = None) -> SubmissionError:
    """Convert a bundler RPC error payload to a typed submission error."""
    error_str = str(error).lower()
    details: dict[str, Any] = {"original_error": str(error)}
    if method:
        details["method"] = method

    for pattern, (exc_class, message) in SUBMISSION_ERROR_PATTERNS.items():
        if pattern in error_str:
            return exc_class(message, details=details)

    return SubmissionRejected(
        f"Bundler rejected UserOperation: {error}",
        user_message=f"Failed to send transaction: {error}",
        details=details,
    )
