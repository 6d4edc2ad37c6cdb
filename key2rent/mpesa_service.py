"""
M-Pesa Daraja client.

Covers the three calls the payment flow needs:
    GET  /oauth/v1/generate                  (Basic auth -> bearer token)
    POST /mpesa/stkpush/v1/processrequest    (STK push)
    POST /mpesa/stkpushquery/v1/query        (STK status query)

Expected gateway-side rejections (invalid number, insufficient funds, bad
shortcode) come back as ``{"success": False, ...}`` dicts. Only transport
failures and missing configuration raise.
"""

import base64
import logging
import time
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache

import requests

from key2rent.config import MPESA_ENDPOINTS, MpesaConfig, get_mpesa_config
from key2rent.errors import GatewayError
from key2rent.phone import format_phone_number

logger = logging.getLogger(__name__)

TOKEN_REFRESH_MARGIN = 60


def generate_timestamp(now: datetime = None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def generate_password(shortcode: str, passkey: str, timestamp: str) -> str:
    raw = f"{shortcode}{passkey}{timestamp}".encode("utf-8")
    return base64.b64encode(raw).decode("utf-8")


def whole_shillings(amount) -> int:
    """Daraja only takes whole shillings; halves round up."""
    return int(Decimal(str(amount)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _json_body(resp) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class MpesaClient:
    def __init__(self, config: MpesaConfig = None, session: requests.Session = None):
        self.config = config or get_mpesa_config()
        self.config.validate()
        self.session = session or requests.Session()

        self._access_token = None
        self._token_expiry = 0.0

    def get_access_token(self) -> str:
        self.config.validate()

        if self._access_token and time.monotonic() < self._token_expiry:
            return self._access_token

        credentials = f"{self.config.consumer_key}:{self.config.consumer_secret}"
        auth = base64.b64encode(credentials.encode("utf-8")).decode("utf-8")
        url = f"{self.config.base_url}{MPESA_ENDPOINTS['oauth']}"

        try:
            resp = self.session.get(
                url,
                headers={"Authorization": f"Basic {auth}"},
                timeout=self.config.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.error("M-Pesa OAuth error: %s", exc)
            raise GatewayError("Failed to generate M-Pesa access token") from exc

        data = _json_body(resp)
        token = data.get("access_token")
        if not token:
            logger.error("M-Pesa OAuth response missing access_token: %s", data)
            raise GatewayError("Failed to generate M-Pesa access token")

        expires_in = int(data.get("expires_in") or 3599)
        self._access_token = token
        self._token_expiry = time.monotonic() + max(expires_in - TOKEN_REFRESH_MARGIN, 0)
        return token

    def _post(self, endpoint: str, payload: dict):
        token = self.get_access_token()
        url = f"{self.config.base_url}{MPESA_ENDPOINTS[endpoint]}"
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        try:
            return self.session.post(url, json=payload, headers=headers, timeout=self.config.timeout)
        except requests.RequestException as exc:
            logger.error("M-Pesa %s request failed: %s", endpoint, exc)
            raise GatewayError("Could not reach the M-Pesa gateway") from exc

    def initiate_push(self, phone_number: str, amount, account_reference: str, transaction_desc: str) -> dict:
        self.config.validate()

        formatted_phone = format_phone_number(phone_number)
        timestamp = generate_timestamp()
        payload = {
            "BusinessShortCode": self.config.shortcode,
            "Password": generate_password(self.config.shortcode, self.config.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": whole_shillings(amount),
            "PartyA": formatted_phone,
            "PartyB": self.config.shortcode,
            "PhoneNumber": formatted_phone,
            "CallBackURL": self.config.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": transaction_desc,
        }

        resp = self._post("stk_push", payload)
        data = _json_body(resp)

        if resp.ok and str(data.get("ResponseCode")) == "0":
            return {
                "success": True,
                "checkout_request_id": data.get("CheckoutRequestID"),
                "merchant_request_id": data.get("MerchantRequestID"),
                "response_code": data.get("ResponseCode"),
                "response_description": data.get("ResponseDescription"),
                "customer_message": data.get("CustomerMessage"),
            }

        logger.error("STK push rejected (HTTP %s): %s", resp.status_code, data)
        return {
            "success": False,
            "error": data.get("errorMessage") or data.get("ResponseDescription") or "Failed to initiate payment",
            "response_code": data.get("errorCode") or data.get("ResponseCode") or "UNKNOWN",
        }

    def query_status(self, checkout_request_id: str) -> dict:
        self.config.validate()

        timestamp = generate_timestamp()
        payload = {
            "BusinessShortCode": self.config.shortcode,
            "Password": generate_password(self.config.shortcode, self.config.passkey, timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }

        resp = self._post("stk_query", payload)
        data = _json_body(resp)

        if resp.ok and "ResultCode" in data:
            return {
                "success": True,
                "result_code": int(data["ResultCode"]),
                "result_desc": data.get("ResultDesc"),
            }

        logger.warning("STK query for %s returned HTTP %s: %s", checkout_request_id, resp.status_code, data)
        return {
            "success": False,
            "error": data.get("errorMessage") or "Failed to query transaction",
            "response_code": data.get("errorCode") or "UNKNOWN",
        }


@lru_cache(maxsize=1)
def get_mpesa_client() -> MpesaClient:
    return MpesaClient()
