"""Webhook security and signature verification.

Voice-AI webhooks are accepted when either:
- ``x-vapi-signature`` carries the HMAC-SHA256 hex digest of the raw body,
  keyed with the webhook secret, or
- the shared-secret header carries the secret itself.

Both comparisons are constant time. With no secret configured, requests
are accepted and a warning is logged.

Twilio conference callbacks can additionally be checked against
``X-Twilio-Signature`` (HMAC-SHA1 over URL plus sorted form parameters).
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import TYPE_CHECKING, Any, Mapping

from fastapi import HTTPException, status

from bridge_shared import get_logger

if TYPE_CHECKING:
    from fastapi import Request

    from campaign_bridge.config import Settings

log = get_logger(__name__)

SIGNATURE_HEADER = "x-vapi-signature"


class VoiceAISignatureValidator:
    """Validate voice-AI webhook requests.

    Signature calculation:
    1. Take the raw request body
    2. Compute HMAC-SHA256 using the webhook secret as key
    3. Hex encode the result (optionally prefixed with ``sha256=``)
    """

    def __init__(
        self,
        secret: str,
        secret_header: str = "X-Vapi-Secret",
        enabled: bool = True,
    ) -> None:
        """Initialize validator.

        Args:
            secret: Shared webhook secret
            secret_header: Header carrying the plain shared secret
            enabled: Disable to accept every request
        """
        self.secret = secret
        self.secret_header = secret_header
        self.enabled = enabled

    def compute_signature(self, body: bytes) -> str:
        return hmac.new(self.secret.encode(), body, hashlib.sha256).hexdigest()

    def validate(
        self,
        body: bytes,
        signature: str | None = None,
        shared_secret: str | None = None,
    ) -> bool:
        """Validate a request body against the provided credentials.

        Args:
            body: Raw request body
            signature: Value of the signature header, if any
            shared_secret: Value of the shared-secret header, if any

        Returns:
            True if the request is authentic (or validation is off)
        """
        if not self.enabled:
            return True

        if not self.secret:
            log.warning("Webhook secret not configured, accepting unsigned request")
            return True

        if signature:
            if signature.startswith("sha256="):
                signature = signature[7:]
            if hmac.compare_digest(self.compute_signature(body), signature):
                return True

        if shared_secret and hmac.compare_digest(self.secret, shared_secret):
            return True

        return False

    async def validate_request(self, request: "Request") -> bytes:
        """Validate a FastAPI request.

        Returns:
            The raw body, so the handler does not read it twice

        Raises:
            HTTPException: 401 if the request is not authentic
        """
        body = await request.body()
        valid = self.validate(
            body,
            signature=request.headers.get(SIGNATURE_HEADER),
            shared_secret=request.headers.get(self.secret_header),
        )
        if not valid:
            log.warning(
                "Invalid webhook signature",
                path=request.url.path,
                client=request.client.host if request.client else None,
            )
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid webhook signature",
            )
        return body


class TwilioSignatureValidator:
    """Validate Twilio webhook signatures.

    See: https://www.twilio.com/docs/usage/security

    Signature calculation:
    1. Take the full URL of the request
    2. Sort POST parameters alphabetically and append key + value to the URL
    3. Compute HMAC-SHA1 of the result using the Auth Token as key
    4. Base64 encode the result
    """

    def __init__(self, auth_token: str, enabled: bool = True) -> None:
        self.auth_token = auth_token
        self.enabled = enabled

    def compute_signature(self, url: str, params: Mapping[str, Any] | None = None) -> str:
        data = url
        for key, value in sorted((params or {}).items()):
            data += str(key) + str(value)
        digest = hmac.new(self.auth_token.encode("utf-8"), data.encode("utf-8"), hashlib.sha1)
        return base64.b64encode(digest.digest()).decode("utf-8")

    def validate(self, signature: str, url: str, params: Mapping[str, Any] | None = None) -> bool:
        if not self.enabled:
            return True
        if not self.auth_token:
            log.warning("Twilio auth token not configured, rejecting signed callback")
            return False
        return hmac.compare_digest(self.compute_signature(url, params), signature)

    async def validate_request(self, request: "Request") -> dict[str, Any]:
        """Validate a Twilio form callback.

        Returns:
            The parsed form parameters

        Raises:
            HTTPException: 403 if the signature does not match
        """
        form = dict(await request.form())
        signature = request.headers.get("X-Twilio-Signature", "")
        if not self.validate(signature, str(request.url), form):
            log.warning("Invalid Twilio signature", path=request.url.path)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")
        return form


def voice_ai_validator(settings: "Settings") -> VoiceAISignatureValidator:
    return VoiceAISignatureValidator(
        secret=settings.voice_ai.webhook_secret,
        secret_header=settings.webhooks.secret_header,
        enabled=settings.webhooks.validate_signatures,
    )


def twilio_validator(settings: "Settings") -> TwilioSignatureValidator:
    return TwilioSignatureValidator(
        auth_token=settings.twilio.auth_token,
        enabled=settings.webhooks.validate_twilio_signatures,
    )
