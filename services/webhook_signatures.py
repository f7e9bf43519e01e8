"""
Webhook signature verification for the payment providers
One strategy per provider scheme, each producing the canonical bytes it signs
and the digest it expects. Schemes never share canonicalization code so one
provider's quirks cannot leak into another's verifier.
"""

import hmac
import json
import hashlib
import logging
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

logger = logging.getLogger(__name__)

Payload = Union[bytes, str, Mapping[str, Any]]


class SignatureScheme:
    """
    Base strategy: canonicalize the payload, then digest it with the secret

    Subclasses set `digest` and `keyed`:
        keyed=True   HMAC(secret, canonical)
        keyed=False  HASH(canonical + secret)
    """

    name = "base"
    digest: Callable[..., Any] = hashlib.sha256
    keyed = True
    signature_field: Optional[str] = None

    def canonical_bytes(self, payload: Payload) -> bytes:
        raise NotImplementedError

    def compute(self, payload: Payload, shared_secret: str) -> str:
        canonical = self.canonical_bytes(payload)
        secret = shared_secret.encode('utf-8')
        if self.keyed:
            return hmac.new(secret, canonical, self.digest).hexdigest()
        return self.digest(canonical + secret).hexdigest()

    def verify(self, payload: Payload, provided_signature: Optional[str], shared_secret: str) -> bool:
        """
        Check a provider signature in constant time

        Args:
            payload: Raw body bytes or the parsed field mapping, depending on the scheme
            provided_signature: Hex digest sent by the provider
            shared_secret: Secret shared with the provider

        Returns:
            bool: True only when the signature matches
        """
        if not provided_signature or not shared_secret:
            return False
        try:
            expected = self.compute(payload, shared_secret)
        except (TypeError, ValueError) as e:
            logger.warning(f"⚠️ {self.name}: payload could not be canonicalized: {e}")
            return False
        return hmac.compare_digest(expected.lower(), str(provided_signature).strip().lower())


def _as_mapping(payload: Payload) -> Dict[str, Any]:
    if isinstance(payload, Mapping):
        return dict(payload)
    if isinstance(payload, bytes):
        payload = payload.decode('utf-8')
    # Key order of the transmitted document is preserved by json.loads
    data = json.loads(payload)
    if not isinstance(data, dict):
        raise ValueError("Signed payload must be a JSON object")
    return data


class PlisioJsonSignature(SignatureScheme):
    """Plisio `?json=true` callbacks: HMAC-SHA1 over the fields in transmitted order"""

    name = "plisio_json"
    digest = hashlib.sha1
    keyed = True
    signature_field = "verify_hash"

    def canonical_bytes(self, payload: Payload) -> bytes:
        fields = _as_mapping(payload)
        fields.pop(self.signature_field, None)
        return json.dumps(fields, separators=(',', ':'), ensure_ascii=False).encode('utf-8')


class PlisioFormSignature(SignatureScheme):
    """Plisio form-encoded callbacks: SHA1 of the values in alphabetical key order plus the secret"""

    name = "plisio_form"
    digest = hashlib.sha1
    keyed = False
    signature_field = "verify_hash"
    excluded_fields: Iterable[str] = ("verify_hash", "secret", "api_key")

    def canonical_bytes(self, payload: Payload) -> bytes:
        fields = _as_mapping(payload)
        values = [
            "" if fields[key] is None else str(fields[key])
            for key in sorted(fields)
            if key not in self.excluded_fields
        ]
        return "".join(values).encode('utf-8')

    def provided_signature(self, fields: Mapping[str, Any]) -> Optional[str]:
        # Older integrations sent the hash under `secret`
        return fields.get("verify_hash") or fields.get("secret")


class CoinbaseCommerceSignature(SignatureScheme):
    """Coinbase Commerce: HMAC-SHA256 of the raw request body (X-CC-Webhook-Signature)"""

    name = "coinbase_commerce"
    digest = hashlib.sha256
    keyed = True
    header = "X-CC-Webhook-Signature"

    def canonical_bytes(self, payload: Payload) -> bytes:
        if isinstance(payload, bytes):
            return payload
        if isinstance(payload, str):
            return payload.encode('utf-8')
        raise TypeError("Coinbase signatures cover the raw body, not parsed fields")


PLISIO_JSON = PlisioJsonSignature()
PLISIO_FORM = PlisioFormSignature()
COINBASE_COMMERCE = CoinbaseCommerceSignature()


def verify(scheme: SignatureScheme, raw_payload: Payload, provided_signature: Optional[str], shared_secret: str) -> bool:
    """verify(raw_payload, provided_signature, shared_secret) for the given provider scheme"""
    return scheme.verify(raw_payload, provided_signature, shared_secret)
