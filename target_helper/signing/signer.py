"""
Trellis style JWS signatures over JSON resources.

A signature is a compact JWS whose payload records the signature ``type``,
the ``signer`` and a SHA-256 ``hash`` of the resource's canonical JSON
(excluding ``signatures`` and any ``_``-prefixed OADA keys). Signatures are
appended to the resource's ``signatures`` list; verifying the last one yields
an ``original`` view of the resource with that signature removed, so a
re-wrapped signature chain can be walked back to its first signer.
"""

import copy
import hashlib
import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import jwt
from jwt.algorithms import get_default_algorithms

from target_helper.jobs.errors import (
    DocumentFetchFailure,
    SignatureApplicationFailure,
)
from target_helper.shared.config import SigningConfig
from target_helper.shared.observability import get_logger
from target_helper.shared.observability.metrics import signatures_total
from target_helper.store.base import ResourceStore, StoreError

logger = get_logger(__name__)

_DEFAULT_ALGS = {"RSA": "RS256", "EC": "ES256"}


class SigningKeyError(ValueError):
    """The configured private JWK cannot be used for signing."""


def canonical_hash(resource: Dict[str, Any]) -> str:
    content = {
        key: value
        for key, value in resource.items()
        if key != "signatures" and not key.startswith("_")
    }
    encoded = json.dumps(content, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@dataclass
class VerifyResult:
    trusted: bool
    valid: bool
    unchanged: bool
    payload: Optional[Dict[str, Any]]
    original: Optional[Dict[str, Any]]


class SigningService:
    """Signs resources with one private JWK and checks for prior signatures."""

    def __init__(
        self,
        private_jwk: Dict[str, Any],
        signer: Dict[str, str],
        signature_type: str = "transcription",
        trusted_kids: Optional[List[str]] = None,
    ):
        kty = private_jwk.get("kty")
        self.algorithm = private_jwk.get("alg") or _DEFAULT_ALGS.get(kty)
        algorithms = get_default_algorithms()
        if self.algorithm not in algorithms:
            raise SigningKeyError(f"Unsupported signing algorithm for kty={kty}")
        alg = algorithms[self.algorithm]
        try:
            self._private_key = alg.from_jwk(json.dumps(private_jwk))
            public_key = self._private_key.public_key()
        except (ValueError, TypeError, KeyError, AttributeError, jwt.PyJWTError) as e:
            raise SigningKeyError(f"Invalid private JWK: {e}") from e

        self.public_jwk: Dict[str, Any] = alg.to_jwk(public_key, as_dict=True)
        self.header: Dict[str, Any] = {"jwk": self.public_jwk}
        # keep jku and kid from the private key
        for key in ("jku", "kid"):
            if private_jwk.get(key):
                self.header[key] = private_jwk[key]
                self.public_jwk[key] = private_jwk[key]
        self.signer = dict(signer)
        self.signature_type = signature_type
        self.trusted_kids = set(trusted_kids or [])
        if private_jwk.get("kid"):
            self.trusted_kids.add(private_jwk["kid"])

    @classmethod
    def from_config(cls, config: SigningConfig) -> "SigningService":
        path = Path(config.private_jwk)
        try:
            private_jwk = json.loads(path.read_text())
        except (OSError, ValueError) as e:
            raise SigningKeyError(f"Cannot read private JWK at {path}: {e}") from e
        return cls(
            private_jwk,
            signer=config.signer.model_dump(),
            signature_type=config.signature_type,
            trusted_kids=config.trusted_kids,
        )

    def sign(
        self, resource: Dict[str, Any], signature_type: Optional[str] = None
    ) -> Dict[str, Any]:
        """Return a copy of resource with a new signature appended."""
        payload = {
            "type": signature_type or self.signature_type,
            "signer": self.signer,
            "hash": canonical_hash(resource),
            "iat": int(time.time()),
        }
        token = jwt.encode(
            payload,
            self._private_key,
            algorithm=self.algorithm,
            headers=self.header,
        )
        signed = copy.deepcopy(resource)
        signed["signatures"] = list(resource.get("signatures") or []) + [token]
        return signed

    def verify(self, resource: Dict[str, Any]) -> VerifyResult:
        """Verify the last signature on resource."""
        signatures = resource.get("signatures") or []
        if not signatures:
            return VerifyResult(False, False, False, None, None)

        token = signatures[-1]
        rest = signatures[:-1]
        original: Optional[Dict[str, Any]] = None
        if rest:
            original = copy.deepcopy(resource)
            original["signatures"] = list(rest)

        try:
            header = jwt.get_unverified_header(token)
            alg_name = header.get("alg")
            jwk = header.get("jwk")
            algorithms = get_default_algorithms()
            if not isinstance(jwk, dict) or alg_name not in algorithms:
                raise jwt.InvalidTokenError("signature header carries no usable jwk")
            key = algorithms[alg_name].from_jwk(json.dumps(jwk))
            payload = jwt.decode(
                token,
                key,
                algorithms=[alg_name],
                options={"verify_iat": False},
            )
        except (jwt.PyJWTError, KeyError, ValueError) as e:
            logger.debug("signature_invalid", error=str(e))
            return VerifyResult(False, False, False, None, original)

        unchanged_view = copy.deepcopy(resource)
        unchanged_view["signatures"] = list(rest)
        unchanged = payload.get("hash") == canonical_hash(unchanged_view)
        trusted = bool(jwk.get("kid")) and jwk.get("kid") in self.trusted_kids
        return VerifyResult(trusted, True, unchanged, payload, original)

    def has_signature_of_type(
        self, resource: Dict[str, Any], signature_type: Optional[str] = None
    ) -> bool:
        """
        True when any signature in the chain has the given type. Walks the
        ``original`` of each verification so re-wrapped chains are found.
        """
        wanted = signature_type or self.signature_type
        current: Optional[Dict[str, Any]] = resource
        while current and current.get("signatures"):
            result = self.verify(current)
            if result.payload and result.payload.get("type") == wanted:
                return True
            current = result.original
        return False

    async def sign_resource(self, store: ResourceStore, resource_id: str) -> bool:
        """
        Sign the resource at resource_id unless it already carries a signature
        of the configured type. Only the signatures list is written back.

        Returns:
            True if a new signature was written, False if skipped
        """
        try:
            resource = await store.get(f"/{resource_id}")
        except StoreError as e:
            raise DocumentFetchFailure(
                f"Could not fetch /{resource_id} for signing: {e}",
                context={"resource": resource_id},
            ) from e

        try:
            if self.has_signature_of_type(resource):
                logger.warning(
                    "signature_already_present",
                    resource=resource_id,
                    signature_type=self.signature_type,
                )
                signatures_total.labels(outcome="skipped").inc()
                return False
            signed = self.sign(resource)
        except Exception as e:
            logger.error("signature_failed", resource=resource_id, error=str(e))
            raise SignatureApplicationFailure(
                f"Could not apply signature to resource {resource_id}",
                context={"resource": resource_id, "error": str(e)},
            ) from e

        try:
            await store.put(f"/{resource_id}/signatures", signed["signatures"])
        except StoreError as e:
            logger.error(
                "signature_write_failed", resource=resource_id, error=str(e)
            )
            raise SignatureApplicationFailure(
                f"Failed to apply signature to /{resource_id}/signatures",
                context={"resource": resource_id, "error": str(e)},
            ) from e

        signatures_total.labels(outcome="signed").inc()
        logger.info("resource_signed", resource=resource_id)
        return True
