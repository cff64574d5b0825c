# Overview: Thin httpx adapter for the Safaricom Daraja API (OAuth token + STK push).

from __future__ import annotations

import base64
import threading
import time

import httpx
from flask import current_app

from ..errors import PaymentGatewayError


OAUTH_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"

# Refresh the token a little before Daraja expires it
TOKEN_EXPIRY_MARGIN_SECONDS = 60


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """Daraja password: base64(shortcode + passkey + timestamp)."""
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


class DarajaClient:
    """
    Minimal Daraja client. Any transport error, non-2xx response or
    non-zero ResponseCode is raised as PaymentGatewayError.

    Anything with an ``stk_push(**fields) -> dict`` method can stand in for
    this class (tests pass a fake).
    """

    def __init__(
        self,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
        passkey: str,
        *,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.passkey = passkey
        self.timeout = timeout
        self._transport = transport
        self._token = None
        self._token_expires_at = 0.0
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config) -> "DarajaClient":
        return cls(
            config["MPESA_BASE_URL"],
            config["MPESA_CONSUMER_KEY"],
            config["MPESA_CONSUMER_SECRET"],
            config["MPESA_PASSKEY"],
            timeout=float(config["MPESA_TIMEOUT_SECONDS"]),
        )

    def _client(self) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    def access_token(self) -> str:
        with self._lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            if not self.consumer_key or not self.consumer_secret:
                raise PaymentGatewayError("M-Pesa credentials are not configured")

            try:
                with self._client() as client:
                    response = client.get(
                        OAUTH_PATH,
                        params={"grant_type": "client_credentials"},
                        auth=(self.consumer_key, self.consumer_secret),
                    )
                    response.raise_for_status()
                    body = response.json()
            except httpx.HTTPError as e:
                raise PaymentGatewayError("Unable to obtain M-Pesa access token", details={"reason": str(e)})
            except ValueError:
                raise PaymentGatewayError("M-Pesa token response was not JSON")

            token = body.get("access_token")
            if not token:
                raise PaymentGatewayError("M-Pesa token response had no access_token")
            expires_in = int(body.get("expires_in") or 3599)
            self._token = token
            self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0)
            current_app.logger.info("M-Pesa access token refreshed")
            return token

    def stk_push(
        self,
        *,
        business_short_code: str,
        till_number: str,
        phone_number: str,
        amount: int,
        timestamp: str,
        transaction_type: str,
        callback_url: str,
        account_reference: str,
        description: str,
    ) -> dict:
        """
        Send the STK prompt. Returns the Daraja response body, which carries
        MerchantRequestID and CheckoutRequestID on success.
        """
        payload = {
            "BusinessShortCode": business_short_code,
            "Password": stk_password(business_short_code, self.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": transaction_type,
            "Amount": str(amount),
            "PartyA": phone_number,
            "PartyB": till_number,
            "PhoneNumber": phone_number,
            "CallBackURL": callback_url,
            "AccountReference": account_reference[:12],
            "TransactionDesc": description[:13],
        }
        token = self.access_token()
        try:
            with self._client() as client:
                response = client.post(
                    STK_PUSH_PATH,
                    json=payload,
                    headers={"Authorization": f"Bearer {token}"},
                )
                body = response.json()
        except httpx.HTTPError as e:
            raise PaymentGatewayError("STK push request failed", details={"reason": str(e)})
        except ValueError:
            raise PaymentGatewayError("STK push response was not JSON", details={"status": response.status_code})

        if response.status_code >= 400 or str(body.get("ResponseCode", "")) != "0":
            raise PaymentGatewayError(
                body.get("errorMessage") or body.get("ResponseDescription") or "STK push was rejected",
                details={
                    "status": response.status_code,
                    "error_code": body.get("errorCode") or body.get("ResponseCode"),
                },
            )
        return body
