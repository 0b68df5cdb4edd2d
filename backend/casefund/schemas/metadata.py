"""Payment metadata attached to checkout sessions and read back from webhooks

The three intents are a tagged union on the ``type`` key. Values arrive from
the processor as strings, so every model coerces on the way in.
"""
from decimal import Decimal
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Tag, TypeAdapter, field_validator

PLATFORM_CASE_ID = "platform"


class _BaseMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    user_id: int
    amount: Decimal
    platform_fee: Decimal = Decimal("0.00")
    net_amount: Decimal

    @field_validator("amount", "platform_fee", "net_amount")
    @classmethod
    def two_places(cls, v: Decimal) -> Decimal:
        return v.quantize(Decimal("0.01"))

    def to_stripe(self) -> Dict[str, str]:
        """Flatten to the string map Stripe stores as metadata"""
        return {k: str(v) for k, v in self.model_dump().items() if v is not None}


class WalletDepositMetadata(_BaseMetadata):
    type: Literal["wallet_deposit"] = "wallet_deposit"


class CaseDonationMetadata(_BaseMetadata):
    type: Literal["case_donation"] = "case_donation"
    case_id: int


class PlatformDonationMetadata(_BaseMetadata):
    type: Literal["platform_donation"] = "platform_donation"
    case_id: Optional[str] = PLATFORM_CASE_ID


def _intent_tag(value: Any) -> Optional[str]:
    if isinstance(value, BaseModel):
        return getattr(value, "type", None)
    if not isinstance(value, dict):
        return None

    intent = value.get("type")
    # A donation without a case (or to the "platform" pseudo-case) goes to the platform
    if intent in ("case_donation", "donation", "platform_donation"):
        case_id = value.get("case_id")
        if case_id in (None, "", PLATFORM_CASE_ID) or intent == "platform_donation":
            return "platform_donation"
        return "case_donation"
    if intent in ("wallet_deposit", "deposit"):
        return "wallet_deposit"
    return intent


PaymentMetadata = Annotated[
    Union[
        Annotated[WalletDepositMetadata, Tag("wallet_deposit")],
        Annotated[CaseDonationMetadata, Tag("case_donation")],
        Annotated[PlatformDonationMetadata, Tag("platform_donation")],
    ],
    Discriminator(_intent_tag),
]

_adapter = TypeAdapter(PaymentMetadata)


def _normalize(raw: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(raw)
    tag = _intent_tag(data)
    if tag:
        data["type"] = tag
    if tag == "platform_donation" and data.get("case_id") in (None, ""):
        data["case_id"] = PLATFORM_CASE_ID
    return data


def parse_metadata(raw: Optional[Dict[str, Any]]) -> Union[WalletDepositMetadata, CaseDonationMetadata, PlatformDonationMetadata]:
    """Validate processor metadata into one of the payment intents.

    Raises pydantic.ValidationError when fields are missing or malformed.
    """
    return _adapter.validate_python(_normalize(raw or {}))


def has_ledger_metadata(raw: Optional[Dict[str, Any]]) -> bool:
    """True when the metadata was written by our checkout (as opposed to another integration)"""
    return bool(raw) and _intent_tag(raw) in ("wallet_deposit", "case_donation", "platform_donation")
