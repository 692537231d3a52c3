import base64
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

import requests
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

from membella.config import payment_config
from membella.schemas.payment import GatewayFailureReason
from membella.services.exceptions import GatewayError

logger = logging.getLogger(__name__)

# Provider error/failure codes -> stable local reasons
FAILURE_CODES = {
    "invalid_card": GatewayFailureReason.INVALID_CARD,
    "invalid_card_number": GatewayFailureReason.INVALID_CARD,
    "insufficient_fund": GatewayFailureReason.INSUFFICIENT_FUNDS,
    "insufficient_funds": GatewayFailureReason.INSUFFICIENT_FUNDS,
    "insufficient_balance": GatewayFailureReason.INSUFFICIENT_FUNDS,
    "stolen_or_lost_card": GatewayFailureReason.STOLEN_OR_LOST_CARD,
    "expired_card": GatewayFailureReason.EXPIRED_CARD,
    "processing_error": GatewayFailureReason.PROCESSING_ERROR,
    "failed_processing": GatewayFailureReason.FAILED_PROCESSING,
    "payment_rejected": GatewayFailureReason.FAILED_PROCESSING,
    "failed_fraud_check": GatewayFailureReason.FAILED_PROCESSING,
    "invalid_security_code": GatewayFailureReason.INVALID_SECURITY_CODE,
    "limit_exceeded": GatewayFailureReason.LIMIT_EXCEEDED,
    "amount_limit_exceeded": GatewayFailureReason.LIMIT_EXCEEDED,
}


def failure_reason_for(code: Optional[str]) -> GatewayFailureReason:
    if not code:
        return GatewayFailureReason.UNKNOWN
    return FAILURE_CODES.get(code, GatewayFailureReason.UNKNOWN)


class PaymentGateway(ABC):
    """Capabilities the payment service needs from a charge provider.

    All amounts are integers in the smallest currency unit.
    """

    @abstractmethod
    def create_charge(
        self,
        amount: int,
        currency: str,
        description: str,
        metadata: Dict[str, Any],
        card_token: Optional[str] = None,
        source_id: Optional[str] = None,
        capture: bool = True,
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    def create_source(self, source_type: str, amount: int, currency: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    def retrieve_charge(self, charge_id: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    def retrieve_source(self, source_id: str) -> Dict[str, Any]:
        ...

    def verify_webhook_signature(self, headers: Mapping[str, str], body: bytes) -> bool:
        return True


class OmiseGateway(PaymentGateway):
    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str] = None,
        api_url: str = payment_config.OMISE_API_URL,
        api_version: str = payment_config.OMISE_API_VERSION,
        timeout: float = payment_config.OMISE_REQUEST_TIMEOUT,
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.api_url = api_url.rstrip("/")
        self.api_version = api_version
        self.timeout = timeout

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.secret_key:
            raise GatewayError(GatewayFailureReason.UNAVAILABLE, "Gateway secret key is not configured")

        try:
            response = requests.request(
                method,
                f"{self.api_url}{path}",
                json=payload,
                auth=(self.secret_key, ""),
                headers={
                    "Accept": "application/json",
                    "Omise-Version": self.api_version,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Gateway request {method} {path} failed: {e}")
            raise GatewayError(GatewayFailureReason.UNAVAILABLE, str(e))

        try:
            result = response.json()
        except ValueError:
            logger.error(f"Gateway returned non-JSON response ({response.status_code}): {response.text[:200]}")
            raise GatewayError(GatewayFailureReason.PROCESSING_ERROR, response.text[:200])

        if response.status_code >= 400 or result.get("object") == "error":
            code = result.get("code")
            message = result.get("message")
            logger.error(f"Gateway error on {method} {path}: code={code}, message={message}")
            reason = failure_reason_for(code)
            if reason == GatewayFailureReason.UNKNOWN and response.status_code >= 500:
                reason = GatewayFailureReason.PROCESSING_ERROR
            raise GatewayError(reason, message, code)

        return result

    def create_charge(
        self,
        amount: int,
        currency: str,
        description: str,
        metadata: Dict[str, Any],
        card_token: Optional[str] = None,
        source_id: Optional[str] = None,
        capture: bool = True,
    ) -> Dict[str, Any]:
        request_data = {
            "amount": amount,
            "currency": currency.upper(),
            "description": description,
            "capture": capture,
            "metadata": metadata,
        }
        if card_token:
            request_data["card"] = card_token
        if source_id:
            request_data["source"] = source_id

        charge = self._request("POST", "/charges", request_data)
        if not charge.get("id"):
            raise GatewayError(
                GatewayFailureReason.PROCESSING_ERROR,
                "Failed to create charge - invalid response from payment gateway",
            )
        logger.info(
            f"Gateway charge created: id={charge['id']}, status={charge.get('status')}, "
            f"paid={charge.get('paid')}"
        )
        return charge

    def create_source(self, source_type: str, amount: int, currency: str) -> Dict[str, Any]:
        source = self._request(
            "POST",
            "/sources",
            {"type": source_type, "amount": amount, "currency": currency.upper()},
        )
        if not source.get("id"):
            raise GatewayError(GatewayFailureReason.PROCESSING_ERROR, f"Failed to create {source_type} source")
        logger.info(f"Gateway source created: id={source['id']}, type={source.get('type')}")
        return source

    def retrieve_charge(self, charge_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/charges/{charge_id}")

    def retrieve_source(self, source_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/sources/{source_id}")

    def verify_webhook_signature(self, headers: Mapping[str, str], body: bytes) -> bool:
        """Verify the HMAC-SHA256 signature of a webhook delivery.

        The signed message is ``"{timestamp}.{body}"`` and the secret is
        base64 encoded. During secret rotation the header carries several
        comma-separated hex signatures; any match is accepted. Without a
        configured secret every delivery is accepted.
        """
        if not self.webhook_secret:
            return True

        lowered = {k.lower(): v for k, v in headers.items()}
        signatures = lowered.get("omise-signature")
        timestamp = lowered.get("omise-signature-timestamp")
        if not signatures or not timestamp:
            return False

        key = base64.b64decode(self.webhook_secret)
        message = timestamp.encode("utf-8") + b"." + body

        for signature in signatures.split(","):
            try:
                expected = bytes.fromhex(signature.strip())
            except ValueError:
                continue
            h = hmac.HMAC(key, hashes.SHA256())
            h.update(message)
            try:
                h.verify(expected)
                return True
            except InvalidSignature:
                continue
        return False
