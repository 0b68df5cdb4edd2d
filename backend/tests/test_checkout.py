"""Checkout initiation and payment metadata tests"""
from decimal import Decimal

import pytest
import stripe as real_stripe
from pydantic import ValidationError as PydanticValidationError

from casefund.core.config import settings
from casefund.core.errors import NotFoundError, ProcessorError, ValidationError
from casefund.models import Case, Transaction, Wallet
from casefund.schemas.metadata import (
    CaseDonationMetadata, PlatformDonationMetadata, WalletDepositMetadata,
    has_ledger_metadata, parse_metadata
)
from casefund.services.checkout_service import create_checkout

from conftest import USER_ID


class TestPaymentMetadata:
    """Tagged union over the three payment intents"""

    def test_parses_wallet_deposit(self):
        metadata = parse_metadata({
            "type": "wallet_deposit", "user_id": "42", "amount": "100.00",
            "platform_fee": "0.00", "net_amount": "100.00"
        })
        assert isinstance(metadata, WalletDepositMetadata)
        assert metadata.user_id == 42
        assert metadata.amount == Decimal("100.00")

    def test_parses_case_donation(self):
        metadata = parse_metadata({
            "type": "case_donation", "user_id": "42", "case_id": "7",
            "amount": "50.00", "platform_fee": "5.00", "net_amount": "45.00"
        })
        assert isinstance(metadata, CaseDonationMetadata)
        assert metadata.case_id == 7

    @pytest.mark.parametrize("case_id", [None, "", "platform"])
    def test_donation_without_case_is_platform_donation(self, case_id):
        raw = {"type": "case_donation", "user_id": "42", "amount": "10.00", "net_amount": "10.00"}
        if case_id is not None:
            raw["case_id"] = case_id
        assert isinstance(parse_metadata(raw), PlatformDonationMetadata)

    def test_missing_required_field_is_rejected(self):
        with pytest.raises(PydanticValidationError):
            parse_metadata({"type": "wallet_deposit", "user_id": "42", "amount": "100.00"})

    def test_unknown_intent_is_rejected(self):
        with pytest.raises(PydanticValidationError):
            parse_metadata({"type": "subscription", "user_id": "42", "amount": "1", "net_amount": "1"})

    def test_has_ledger_metadata(self):
        assert has_ledger_metadata({"type": "wallet_deposit"})
        assert not has_ledger_metadata({})
        assert not has_ledger_metadata({"plan": "pro"})

    def test_to_stripe_flattens_to_strings(self):
        metadata = CaseDonationMetadata(
            user_id=42, case_id=7, amount=Decimal("50"), platform_fee=Decimal("5"), net_amount=Decimal("45")
        )
        flat = metadata.to_stripe()
        assert flat == {
            "type": "case_donation", "user_id": "42", "case_id": "7",
            "amount": "50.00", "platform_fee": "5.00", "net_amount": "45.00"
        }
        assert parse_metadata(flat) == metadata


@pytest.mark.critical
class TestCreateCheckout:
    """Checkout initiation has no ledger side effects"""

    def test_wallet_deposit_checkout(self, db_session, auto_mock_stripe):
        result = create_checkout(USER_ID, "wallet_deposit", Decimal("100.00"), db_session)

        assert result == {"session_id": "cs_test123", "checkout_url": "https://checkout.stripe.com/test"}
        kwargs = auto_mock_stripe.checkout.Session.create.call_args.kwargs
        assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 10000
        assert kwargs["metadata"]["type"] == "wallet_deposit"
        assert kwargs["payment_intent_data"]["metadata"] == kwargs["metadata"]

        assert db_session.query(Transaction).count() == 0
        assert db_session.query(Wallet).count() == 0

    def test_case_donation_metadata_carries_fee(self, db_session, auto_mock_stripe, open_case):
        create_checkout(USER_ID, "case_donation", Decimal("50.00"), db_session, case_id=open_case.id)

        metadata = auto_mock_stripe.checkout.Session.create.call_args.kwargs["metadata"]
        assert metadata["case_id"] == str(open_case.id)
        assert metadata["platform_fee"] == "5.00"
        assert metadata["net_amount"] == "45.00"

    def test_platform_donation_has_no_fee(self, db_session, auto_mock_stripe):
        create_checkout(USER_ID, "platform_donation", Decimal("25.00"), db_session)

        metadata = auto_mock_stripe.checkout.Session.create.call_args.kwargs["metadata"]
        assert metadata["type"] == "platform_donation"
        assert metadata["platform_fee"] == "0.00"

    def test_amount_below_minimum_rejected(self, db_session, auto_mock_stripe):
        with pytest.raises(ValidationError):
            create_checkout(USER_ID, "wallet_deposit", Decimal("4.99"), db_session)
        auto_mock_stripe.checkout.Session.create.assert_not_called()

    def test_unknown_case_rejected(self, db_session):
        with pytest.raises(NotFoundError):
            create_checkout(USER_ID, "case_donation", Decimal("50.00"), db_session, case_id=999)

    @pytest.mark.parametrize("status", ["resolved", "closed"])
    def test_closed_case_rejected(self, db_session, auto_mock_stripe, status):
        case = Case(title="Old case", status=status)
        db_session.add(case)
        db_session.commit()

        with pytest.raises(ValidationError):
            create_checkout(USER_ID, "case_donation", Decimal("50.00"), db_session, case_id=case.id)
        auto_mock_stripe.checkout.Session.create.assert_not_called()

    def test_case_donation_requires_case_id(self, db_session):
        with pytest.raises(ValidationError):
            create_checkout(USER_ID, "case_donation", Decimal("50.00"), db_session)

    def test_return_urls_default_to_frontend(self, db_session, auto_mock_stripe):
        create_checkout(USER_ID, "wallet_deposit", Decimal("10.00"), db_session)

        kwargs = auto_mock_stripe.checkout.Session.create.call_args.kwargs
        assert kwargs["success_url"] == f"{settings.FRONTEND_URL}/payment/success?session_id={{CHECKOUT_SESSION_ID}}"
        assert kwargs["cancel_url"] == f"{settings.FRONTEND_URL}/payment/cancelled"

    def test_return_urls_on_frontend_accepted(self, db_session, auto_mock_stripe):
        create_checkout(
            USER_ID, "wallet_deposit", Decimal("10.00"), db_session,
            success_url=f"{settings.FRONTEND_URL}/wallet?paid=1",
            cancel_url=f"{settings.FRONTEND_URL}/wallet",
        )

        kwargs = auto_mock_stripe.checkout.Session.create.call_args.kwargs
        assert kwargs["success_url"] == f"{settings.FRONTEND_URL}/wallet?paid=1"
        assert kwargs["cancel_url"] == f"{settings.FRONTEND_URL}/wallet"

    @pytest.mark.parametrize("url", [
        "https://evil.example.com/phish",
        "//evil.example.com/phish",
        "javascript:alert(1)",
        "/payment/success",
    ])
    def test_return_url_off_frontend_rejected(self, db_session, auto_mock_stripe, url):
        with pytest.raises(ValidationError):
            create_checkout(USER_ID, "wallet_deposit", Decimal("10.00"), db_session, success_url=url)
        with pytest.raises(ValidationError):
            create_checkout(USER_ID, "wallet_deposit", Decimal("10.00"), db_session, cancel_url=url)
        auto_mock_stripe.checkout.Session.create.assert_not_called()

    def test_lookalike_host_rejected(self, db_session, auto_mock_stripe):
        with pytest.raises(ValidationError):
            create_checkout(
                USER_ID, "wallet_deposit", Decimal("10.00"), db_session,
                success_url=f"{settings.FRONTEND_URL}@evil.example.com/phish",
            )

    def test_transient_error_is_retried(self, db_session, auto_mock_stripe):
        auto_mock_stripe.checkout.Session.create.side_effect = [
            real_stripe.APIConnectionError("connection reset"),
            real_stripe.APIConnectionError("connection reset"),
            auto_mock_stripe.checkout.Session.create.return_value,
        ]

        result = create_checkout(USER_ID, "wallet_deposit", Decimal("10.00"), db_session)

        assert result["session_id"] == "cs_test123"
        assert auto_mock_stripe.checkout.Session.create.call_count == 3

    def test_retries_are_bounded(self, db_session, auto_mock_stripe):
        auto_mock_stripe.checkout.Session.create.side_effect = real_stripe.APIConnectionError("down")

        with pytest.raises(ProcessorError) as exc_info:
            create_checkout(USER_ID, "wallet_deposit", Decimal("10.00"), db_session)

        assert exc_info.value.transient is True
        assert auto_mock_stripe.checkout.Session.create.call_count == 3

    def test_permanent_error_not_retried(self, db_session, auto_mock_stripe):
        auto_mock_stripe.checkout.Session.create.side_effect = real_stripe.InvalidRequestError("bad currency", "currency")

        with pytest.raises(ProcessorError) as exc_info:
            create_checkout(USER_ID, "wallet_deposit", Decimal("10.00"), db_session)

        assert exc_info.value.transient is False
        assert auto_mock_stripe.checkout.Session.create.call_count == 1
