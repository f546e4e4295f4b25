"""Error taxonomy shared by the verifier, settlement executor and relay."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    # Verification failures: the caller should pay correctly and retry.
    MISSING_PROOF = "MissingProof"
    MALFORMED_PROOF = "MalformedProof"
    PROOF_REUSED = "ProofReused"
    TRANSACTION_NOT_FOUND = "TransactionNotFound"
    NOT_CONFIRMED = "NotConfirmed"
    PROOF_EXPIRED = "ProofExpired"
    RECIPIENT_MISMATCH = "RecipientMismatch"
    AMOUNT_INSUFFICIENT = "AmountInsufficient"
    TRANSACTION_FAILED = "TransactionFailed"

    # Settlement failures: operator or configuration problems.
    INVALID_RECIPIENT = "InvalidRecipient"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    UNAUTHORIZED_SIGNER = "UnauthorizedSigner"
    GAS_ESTIMATION_REVERTED = "GasEstimationReverted"
    BROADCAST_FAILED = "BroadcastFailed"
    CONFIRMATION_FAILED = "ConfirmationFailed"
    TRANSACTION_REVERTED = "TransactionReverted"

    # Relay failures.
    UNPARSABLE_CHALLENGE = "UnparsableChallenge"
    MISSING_BENEFICIARY = "MissingBeneficiary"
    UNREACHABLE = "Unreachable"
    RELAY_SETTLEMENT_FAILED = "RelaySettlementFailed"
    DOWNSTREAM_ERROR = "DownstreamError"
    DOWNSTREAM_INTERNAL_PAYMENT_FAILURE = "DownstreamInternalPaymentFailure"

    @property
    def is_verification(self) -> bool:
        return self in _VERIFICATION_KINDS

    @property
    def http_status(self) -> int:
        """402 for anything the caller can fix by paying, 500 otherwise."""
        if self.is_verification:
            return 402
        return 500


_VERIFICATION_KINDS = frozenset(
    {
        ErrorKind.MISSING_PROOF,
        ErrorKind.MALFORMED_PROOF,
        ErrorKind.PROOF_REUSED,
        ErrorKind.TRANSACTION_NOT_FOUND,
        ErrorKind.NOT_CONFIRMED,
        ErrorKind.PROOF_EXPIRED,
        ErrorKind.RECIPIENT_MISMATCH,
        ErrorKind.AMOUNT_INSUFFICIENT,
        ErrorKind.TRANSACTION_FAILED,
    }
)


class ConfigurationError(ValueError):
    """Raised at startup when required configuration is missing or invalid."""


class ProofDecodeError(ValueError):
    """Raised when an X-PAYMENT value does not decode to a transaction hash."""
