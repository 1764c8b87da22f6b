"""Webhook signature verification for push deliveries."""

import logging
from typing import Optional

from qstash import Receiver
from qstash.errors import SignatureError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "upstash-signature"


class SignatureVerifier:
    """
    Checks the delivery signature over the raw request body.

    With no signing key configured every request is accepted and a warning is
    logged once at startup.
    """

    def __init__(self, current_signing_key: Optional[str], next_signing_key: Optional[str] = None):
        self.enabled = bool(current_signing_key)
        self._receiver = None
        if self.enabled:
            self._receiver = Receiver(
                current_signing_key=current_signing_key,
                next_signing_key=next_signing_key or current_signing_key,
            )
        else:
            logger.warning("[Qstash] Signature verification disabled: no signing key configured")

    def verify(self, body: bytes, signature: Optional[str], url: Optional[str] = None) -> bool:
        if not self.enabled:
            return True
        if not signature:
            logger.warning("[Qstash] Missing signature header")
            return False
        try:
            self._receiver.verify(body=body.decode("utf-8"), signature=signature, url=url)
        except (SignatureError, UnicodeDecodeError) as e:
            logger.warning(f"[Qstash] Invalid signature: {e}")
            return False
        return True
