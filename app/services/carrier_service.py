"""Carrier client for the Voximplant platform API.

Mutating calls (attach, deactivate, bind) are sent once: a timeout means the
outcome is unknown and is surfaced as ``UpstreamTimeoutError`` for the caller
to reconcile. Read calls are retried.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.core.config import settings
from app.core.errors import UpstreamError, UpstreamTimeoutError
from app.core.logging import get_logger
from app.utils.helpers import mask_phone

logger = get_logger(__name__)


class AttachOutcome(str, Enum):
    ATTACHED = "attached"
    ALREADY_ATTACHED = "already_attached"


class CarrierRejectedError(UpstreamError):
    """The carrier answered with an error object."""

    kind = "carrier_rejected"

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message, code=code)
        self.code = code


@dataclass(frozen=True)
class CarrierNumberState:
    """What the carrier currently knows about a number on our account."""

    number: str
    attached: bool
    deactivated: bool = False
    price: Decimal = Decimal("0")
    region: Optional[str] = None
    sms_supported: bool = False
    next_renewal: Optional[datetime] = None

    @property
    def active(self) -> bool:
        return self.attached and not self.deactivated


@dataclass(frozen=True)
class AvailableNumber:
    """A number the carrier offers for purchase."""

    number: str
    category: str
    price: Decimal = Decimal("0")
    installation_price: Decimal = Decimal("0")
    region: Optional[str] = None
    sms_supported: bool = False


# Error codes the platform API uses for "number already belongs to the account"
ALREADY_ATTACHED_CODES = {100, 469}


def _parse_price(value: Any) -> Decimal:
    try:
        return Decimal(str(value)) if value is not None else Decimal("0")
    except InvalidOperation:
        return Decimal("0")


def _parse_date(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


class CarrierClient:
    """Thin async wrapper over the platform API (``POST /<Method>?params``)."""

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = settings.carrier_api_url.rstrip("/")
        self.api_key = settings.carrier_api_key
        self.account_id = settings.carrier_account_id
        self.timeout = timeout or settings.carrier_timeout_seconds
        self._transport = transport

    async def _call(self, method: str, **params: Any) -> Any:
        query = {"api_key": self.api_key, "account_id": self.account_id}
        query.update({k: v for k, v in params.items() if v is not None})

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.post(f"{self.base_url}/{method}", params=query)
        except httpx.ConnectTimeout as e:
            # Never reached the carrier: nothing happened
            raise UpstreamError(f"Carrier unreachable: {method}", method=method) from e
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"Carrier timed out: {method}", method=method) from e
        except httpx.TransportError as e:
            raise UpstreamError(f"Carrier transport error: {e}", method=method) from e

        if response.status_code >= 500:
            raise UpstreamError(
                f"Carrier responded {response.status_code}",
                method=method,
                status=response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            data = None

        error = data.get("error") if isinstance(data, dict) else None
        if error:
            if not isinstance(error, dict):
                error = {"msg": str(error)}
            raise CarrierRejectedError(
                error.get("msg") or f"{method} failed",
                code=error.get("code"),
            )
        if response.status_code >= 400:
            raise CarrierRejectedError(
                f"Carrier responded {response.status_code} to {method}",
                code=response.status_code,
            )
        if not isinstance(data, dict):
            raise UpstreamError(f"Carrier sent an unreadable response to {method}", method=method)
        return data.get("result")

    async def attach(self, number: str) -> AttachOutcome:
        """Attach ``number`` to the account with auto-renewal disabled."""
        try:
            await self._call(
                "AttachPhoneNumber",
                phone_number=number,
                country_code=settings.carrier_country_code,
                auto_charge="false",
                application_id=settings.carrier_application_id or None,
            )
        except CarrierRejectedError as e:
            if e.code in ALREADY_ATTACHED_CODES:
                logger.info("carrier_number_already_attached", number=mask_phone(number))
                return AttachOutcome.ALREADY_ATTACHED
            raise

        logger.info("carrier_number_attached", number=mask_phone(number))
        return AttachOutcome.ATTACHED

    async def deactivate(self, number: str) -> None:
        await self._call("DeactivatePhoneNumber", phone_number=number)
        logger.info("carrier_number_deactivated", number=mask_phone(number))

    async def bind_inbound(self, number: str) -> None:
        """Route inbound calls on ``number`` to the voice application."""
        await self._call(
            "BindPhoneNumberToApplication",
            phone_number=number,
            application_id=settings.carrier_application_id or None,
            rule_id=settings.carrier_inbound_rule_id or None,
            bind="true",
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(UpstreamTimeoutError),
        reraise=True,
    )
    async def get_number_state(self, number: str) -> CarrierNumberState:
        """Carrier truth for ``number``; ``attached=False`` when it is not ours."""
        result = await self._call("GetPhoneNumbers", phone_number=number)
        rows = result or []
        if not isinstance(rows, list):
            raise UpstreamError("Carrier sent an unreadable number list", method="GetPhoneNumbers")
        if not rows:
            return CarrierNumberState(number=number, attached=False)

        row = rows[0]
        if not isinstance(row, dict):
            raise UpstreamError("Carrier sent an unreadable number row", method="GetPhoneNumbers")
        return CarrierNumberState(
            number=number,
            attached=True,
            deactivated=bool(row.get("deactivated", False)),
            price=_parse_price(row.get("phone_price")),
            region=row.get("phone_region_name"),
            sms_supported=bool(row.get("is_sms_enabled", False)),
            next_renewal=_parse_date(row.get("phone_next_renewal")),
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(UpstreamTimeoutError),
        reraise=True,
    )
    async def list_available(self, sms: bool = False) -> list[AvailableNumber]:
        """Numbers the carrier offers for purchase.

        ``sms=True`` asks for SMS-capable mobile numbers, otherwise geographic ones.
        """
        if sms:
            category, region_id = "MOBILE", settings.carrier_sms_region_id
        else:
            category, region_id = "GEOGRAPHIC", settings.carrier_geographic_region_id

        result = await self._call(
            "GetNewPhoneNumbers",
            country_code=settings.carrier_country_code,
            phone_category_name=category,
            phone_region_id=region_id,
            count=settings.carrier_offer_count,
        )
        if not isinstance(result, list):
            raise UpstreamError("Carrier sent no number offers", method="GetNewPhoneNumbers")

        offers = []
        for row in result:
            if not isinstance(row, dict) or not row.get("phone_number"):
                continue
            number = str(row["phone_number"])
            offers.append(
                AvailableNumber(
                    number=number if number.startswith("+") else f"+{number}",
                    category=category,
                    price=_parse_price(row.get("phone_price")),
                    installation_price=_parse_price(row.get("phone_installation_price")),
                    region=row.get("phone_region_name"),
                    sms_supported=sms,
                )
            )
        return offers
