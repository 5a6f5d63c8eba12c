"""ERC-4337 helpers: passkey accounts, user operations, bundler and paymaster."""

from .public_key import PublicKey, PublicKeyFormat, decode_public_key
from .address import (
    AddressDeriver,
    AddressSource,
    DerivedAddress,
    build_account_init_code,
    compute_create2_address,
    derive_salt,
)
from .account import Identity, SmartAccount, SmartAccountService
from .user_operation import UserOperation, compute_user_op_hash
from .builder import OperationBuilder
from .signer import (
    AssertionSigner,
    SignerGateway,
    WebAuthnAssertion,
    encode_webauthn_signature,
    parse_der_signature,
    sign_with_timeout,
)
from .paymaster_client import (
    PaymasterClient,
    PaymasterConfig,
    SponsorshipResult,
    SponsorshipStatus,
)
from .bundler_client import (
    BundlerClient,
    BundlerConfig,
    GasEstimate,
    OperationHandle,
    ReceiptOutcome,
    ReceiptPollResult,
    UserOperationReceipt,
)
from .pipeline import OperationPipeline, PipelineResult, build_pipeline

__all__ = [
    "PublicKey",
    "PublicKeyFormat",
    "decode_public_key",
    "AddressDeriver",
    "AddressSource",
    "DerivedAddress",
    "build_account_init_code",
    "compute_create2_address",
    "derive_salt",
    "Identity",
    "SmartAccount",
    "SmartAccountService",
    "UserOperation",
    "compute_user_op_hash",
    "OperationBuilder",
    "AssertionSigner",
    "SignerGateway",
    "WebAuthnAssertion",
    "encode_webauthn_signature",
    "parse_der_signature",
    "sign_with_timeout",
    "PaymasterClient",
    "PaymasterConfig",
    "SponsorshipResult",
    "SponsorshipStatus",
    "BundlerClient",
    "BundlerConfig",
    "GasEstimate",
    "OperationHandle",
    "ReceiptOutcome",
    "ReceiptPollResult",
    "UserOperationReceipt",
    "OperationPipeline",
    "PipelineResult",
    "build_pipeline",
]
