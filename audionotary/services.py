"""
Registration and verification of works.

Registration resolves the caller's address, lets the notarization provider
stamp the payload with its own trusted time, and upserts the row keyed by
content hash (last registration wins). Verification looks a work up by
content hash or storage identifier.
"""
import logging
from typing import Any, Dict, Mapping, Optional

from .db import Store
from .errors import AuthError, NotaryError, UpstreamError, ValidationError
from .hashing import is_content_hash, normalize_content_hash
from .providers import IdentityProvider, NotarizationProvider

logger = logging.getLogger(__name__)

PAYLOAD_KIND = "register"


def _required(value: Optional[str]) -> bool:
    return isinstance(value, str) and value.strip() != ""


class RegistrationService:
    def __init__(self, store: Store, identity: IdentityProvider, notary: NotarizationProvider):
        self.store = store
        self.identity = identity
        self.notary = notary

    def resolve_address(self, credentials: Mapping[str, str]) -> Optional[str]:
        try:
            return self.identity.get_address(credentials)
        except NotaryError:
            raise
        except Exception as e:
            logger.exception("[AUTH] Identity provider failed")
            raise AuthError(f"Identity provider failed: {e}", http_status=500) from e

    def register(
        self,
        credentials: Mapping[str, str],
        storage_id: Optional[str],
        content_hash: Optional[str],
        title: Optional[str] = None,
        artist: Optional[str] = None,
        fingerprint: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Notarize and persist one work.

        Returns ``{"payload": <notarized payload>, "oracle_commitment": str | None}``.
        Nothing is written unless every step before the upsert succeeded.
        """
        if not _required(storage_id) or not _required(content_hash):
            raise ValidationError("Missing storage_id or content_hash")
        storage_id = storage_id.strip()
        content_hash = normalize_content_hash(content_hash)
        if not is_content_hash(content_hash):
            raise ValidationError(
                "content_hash must be a 64-character hex SHA-256 digest",
                details={"content_hash": content_hash},
            )
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be a JSON object")

        address = self.resolve_address(credentials)
        if not address:
            raise AuthError("Wallet address could not be resolved; log in first")

        payload = {
            "title": title,
            "artist": artist,
            "storage_id": storage_id,
            "content_hash": content_hash,
            "fingerprint": fingerprint,
            "address": address,
            "metadata": metadata,
            "kind": PAYLOAD_KIND,
        }

        # The provider's own clock stamps the payload; what it returns is what we store
        notarization = self.notary.notarize(lambda: {**payload, "timestamp": self.notary.now()})
        notarized = notarization.value
        if not isinstance(notarized, dict) or "timestamp" not in notarized:
            raise UpstreamError(
                "Notarization provider returned an unusable payload",
                details={"extra": {"raw": notarized}},
            )

        self.store.upsert_work(
            address=address,
            title=title,
            artist=artist,
            storage_id=storage_id,
            content_hash=content_hash,
            fingerprint=fingerprint,
            payload=notarized,
            notarized=True,
            oracle_commitment=notarization.commitment,
        )
        logger.info(f"[REGISTER] {content_hash[:12]}... cid={storage_id} by {address[:8]}...")

        return {
            "payload": notarized,
            "oracle_commitment": notarization.commitment or None,
        }


class VerificationService:
    def __init__(self, store: Store):
        self.store = store

    def verify(self, content_hash: Optional[str] = None, storage_id: Optional[str] = None) -> Dict[str, Any]:
        if _required(content_hash):
            work = self.store.get_by_content_hash(normalize_content_hash(content_hash))
        elif _required(storage_id):
            work = self.store.get_by_storage_id(storage_id.strip())
        else:
            raise ValidationError("Provide ?content_hash=... or ?storage_id=...")

        if work is None:
            logger.info(f"[VERIFY] No match for content_hash={content_hash} storage_id={storage_id}")
            return {"verified": False}

        return {
            "verified": True,
            "notarized": bool(work.notarized),
            "payload": work.decoded_payload(),
        }
