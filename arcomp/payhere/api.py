import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional
from urllib.parse import urljoin

import requests

from ..config import PayHereConfig
from ..errors import GatewayError

logger = logging.getLogger(__name__)

# Payment search API statuses
GATEWAY_STATUS_MAP = {
    "RECEIVED": "success",
    "CHARGEBACK": "refunded",
    "CANCELED": "cancelled",
    "CANCELLED": "cancelled",
    "FAILED": "failed",
}


@dataclass
class GatewayPayment:
    """A payment as reported by the PayHere merchant API."""

    order_id: str
    payment_id: Optional[str]
    status: str
    outcome: str
    amount: Optional[str]
    currency: Optional[str]
    method: Optional[str]
    raw: dict

    @property
    def resolved(self) -> bool:
        return self.outcome != "unresolved"


def map_gateway_status(status: Optional[str]) -> str:
    """Map a merchant API status to ``success``/``refunded``/``cancelled``/``failed``.

    Anything unknown (including ``PENDING``) is ``unresolved``.
    """

    if not status:
        return "unresolved"
    return GATEWAY_STATUS_MAP.get(status.strip().upper(), "unresolved")


class PayHereClient:
    """Minimal client for the PayHere merchant (retrieval) API.

    Authenticates with the OAuth client-credentials grant using the
    merchant's app id and app secret and caches the bearer token for the
    lifetime of the client.
    """

    def __init__(
        self,
        config: PayHereConfig,
        session: Optional[requests.Session] = None,
        timeout: int = 30,
    ):
        if not config.app_id or not config.app_secret:
            raise ValueError(
                "PAYHERE_APP_ID and PAYHERE_APP_SECRET are required for the merchant API"
            )
        self.config = config
        self.base_url = config.api_base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self._token: Optional[str] = None

    # -------- core request --------
    def _request(
        self,
        method: str,
        path: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[dict] = None,
        data: Optional[dict] = None,
        auth: Optional[tuple[str, str]] = None,
    ) -> Any:
        url = urljoin(self.base_url + "/", path.lstrip("/"))
        try:
            r = self.session.request(
                method=method.upper(),
                url=url,
                headers=headers or {"Accept": "application/json"},
                params=params,
                data=data,
                auth=auth,
                timeout=self.timeout,
            )
            r.raise_for_status()
        except requests.RequestException as e:
            # Do not include headers; they carry credentials
            logger.error(f"PayHere request {method.upper()} {path} failed: {e}")
            raise GatewayError(f"PayHere request failed: {path}") from e
        return r.json() if r.content else None

    # -------- auth --------
    def get_access_token(self, refresh: bool = False) -> str:
        """Return a bearer token, fetching one on first use or when ``refresh``."""

        if self._token and not refresh:
            return self._token
        payload = self._request(
            "POST",
            "/merchant/v1/oauth/token",
            data={"grant_type": "client_credentials"},
            auth=(self.config.app_id or "", self.config.app_secret or ""),
        )
        token = (payload or {}).get("access_token")
        if not token:
            raise GatewayError("PayHere token response did not include an access token")
        logger.debug("PayHere access token acquired")
        self._token = token
        return token

    @property
    def auth_headers(self) -> Mapping[str, str]:
        return {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.get_access_token()}",
        }

    # -------- API callers --------
    def retrieve_payment(self, order_id: str) -> Optional[GatewayPayment]:
        """Look up the gateway's view of ``order_id``.

        Returns ``None`` when the gateway has no payment for the order. When
        several attempts exist, a received payment wins over the latest one.
        """

        payload = self._request(
            "GET",
            "/merchant/v1/payment/search",
            headers=self.auth_headers,
            params={"order_id": order_id},
        )
        if not payload:
            return None
        status = payload.get("status")
        rows = payload.get("data") or []
        if status is not None and int(status) < 0:
            logger.info(f"PayHere has no payment for order {order_id}: {payload.get('msg')}")
            return None
        if not rows:
            return None

        chosen = rows[-1]
        for row in rows:
            if str(row.get("status", "")).upper() == "RECEIVED":
                chosen = row
                break

        gateway_status = str(chosen.get("status") or "")
        return GatewayPayment(
            order_id=str(chosen.get("order_id") or order_id),
            payment_id=(
                str(chosen["payment_id"]) if chosen.get("payment_id") is not None else None
            ),
            status=gateway_status,
            outcome=map_gateway_status(gateway_status),
            amount=str(chosen["amount"]) if chosen.get("amount") is not None else None,
            currency=chosen.get("currency"),
            method=chosen.get("payment_method") or chosen.get("method"),
            raw=dict(chosen),
        )
