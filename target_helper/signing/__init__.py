from .signer import SigningKeyError, SigningService, VerifyResult, canonical_hash

__all__ = ["SigningKeyError", "SigningService", "VerifyResult", "canonical_hash"]
