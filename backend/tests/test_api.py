"""HTTP surface tests: authentication, error mapping, webhook status codes"""
import asyncio
from decimal import Decimal
from unittest.mock import patch

import pytest
import stripe as real_stripe

from casefund.models import WebhookFailure
from casefund.services import webhook_service

from conftest import SESSION_ID, USER_ID, as_payload, deposit_metadata
from test_webhooks import SIG, db_outage

WITHDRAWAL_BODY = {
    "amount": "10.00",
    "bank_details": {"account_holder": "Dana Scully", "iban": "DE89370400440532013000"},
}


class TestAuthentication:
    def test_wallet_requires_session(self, client):
        response = client.get("/api/wallet")
        assert response.status_code == 401

    def test_expired_session_rejected(self, client):
        client.cookies.set("session_id", "unknown-session")
        response = client.get("/api/wallet")
        assert response.status_code == 401

    def test_operator_routes_require_key(self, client):
        assert client.post("/api/admin/withdrawals/process").status_code == 401

    def test_operator_routes_reject_wrong_key(self, client):
        response = client.post("/api/admin/withdrawals/process", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_user_session_is_not_operator(self, authenticated_client):
        assert authenticated_client.get("/api/admin/webhook-failures").status_code == 401


class TestWalletRoutes:
    def test_wallet_created_on_first_read(self, authenticated_client):
        response = authenticated_client.get("/api/wallet")

        assert response.status_code == 200
        data = response.json()
        assert data["user_id"] == USER_ID
        assert data["balance"] == "0.00"
        assert data["reserved"] == "0.00"

    def test_transactions_listed_after_deposit(self, authenticated_client, db_session, payment_event):
        event = payment_event("evt_1", deposit_metadata("25.00"))
        authenticated_client.post("/api/stripe/webhook", content=as_payload(event), headers={"stripe-signature": SIG})

        response = authenticated_client.get("/api/wallet/transactions")

        assert response.status_code == 200
        transactions = response.json()["transactions"]
        assert len(transactions) == 1
        assert transactions[0]["transaction_type"] == "deposit"
        assert transactions[0]["amount"] == "25.00"


class TestCheckoutRoutes:
    def test_deposit_checkout(self, authenticated_client, auto_mock_stripe):
        response = authenticated_client.post(
            "/api/checkout/sessions", json={"intent": "wallet_deposit", "amount": "25.00"}
        )

        assert response.status_code == 200
        assert response.json()["session_id"] == "cs_test123"

    def test_below_minimum_is_400(self, authenticated_client, auto_mock_stripe):
        response = authenticated_client.post(
            "/api/checkout/sessions", json={"intent": "wallet_deposit", "amount": "4.99"}
        )

        assert response.status_code == 400
        auto_mock_stripe.checkout.Session.create.assert_not_called()

    def test_foreign_return_url_is_400(self, authenticated_client, auto_mock_stripe):
        response = authenticated_client.post(
            "/api/checkout/sessions",
            json={"intent": "wallet_deposit", "amount": "25.00", "success_url": "https://evil.example.com/"}
        )

        assert response.status_code == 400
        auto_mock_stripe.checkout.Session.create.assert_not_called()

    def test_unknown_case_is_404(self, authenticated_client):
        response = authenticated_client.post(
            "/api/checkout/sessions", json={"intent": "case_donation", "amount": "10.00", "case_id": 999}
        )
        assert response.status_code == 404

    def test_processor_outage_is_502(self, authenticated_client, auto_mock_stripe):
        auto_mock_stripe.checkout.Session.create.side_effect = real_stripe.APIConnectionError("down")

        response = authenticated_client.post(
            "/api/checkout/sessions", json={"intent": "wallet_deposit", "amount": "25.00"}
        )

        assert response.status_code == 502


class TestWithdrawalRoutes:
    def test_create_withdrawal(self, authenticated_client, wallet_factory):
        wallet_factory(balance="20.00")

        response = authenticated_client.post("/api/withdrawals", json=WITHDRAWAL_BODY)

        assert response.status_code == 201
        data = response.json()
        assert data["withdrawal"]["status"] == "pending"
        assert data["withdrawal"]["fee"] == "0.20"
        assert data["withdrawal"]["iban_last4"] == "3000"

        listed = authenticated_client.get("/api/withdrawals").json()["withdrawals"]
        assert [w["id"] for w in listed] == [data["withdrawal_id"]]

    def test_insufficient_balance_is_400(self, authenticated_client, wallet_factory):
        wallet_factory(balance="5.00")
        response = authenticated_client.post("/api/withdrawals", json=WITHDRAWAL_BODY)
        assert response.status_code == 400

    def test_rate_limited_reports_reset_time(self, authenticated_client, wallet_factory):
        wallet_factory(balance="100.00")
        for _ in range(3):
            assert authenticated_client.post("/api/withdrawals", json=WITHDRAWAL_BODY).status_code == 201

        response = authenticated_client.post("/api/withdrawals", json=WITHDRAWAL_BODY)

        assert response.status_code == 429
        detail = response.json()["detail"]
        assert detail["remaining"] == 0
        assert detail["reset_at"]
        assert int(response.headers["Retry-After"]) > 0

    def test_malformed_body_is_422(self, authenticated_client):
        response = authenticated_client.post("/api/withdrawals", json={"amount": "10.00"})
        assert response.status_code == 422


class TestWebhookRoute:
    def test_applied_event_returns_200(self, client, payment_event):
        event = payment_event("evt_1", deposit_metadata("10.00"))

        response = client.post("/api/stripe/webhook", content=as_payload(event), headers={"stripe-signature": SIG})

        assert response.status_code == 200
        assert response.json()["status"] == "applied"

    def test_missing_signature_is_400(self, client, payment_event):
        event = payment_event("evt_1", deposit_metadata("10.00"))
        response = client.post("/api/stripe/webhook", content=as_payload(event))
        assert response.status_code == 400

    def test_bad_signature_is_400(self, client, auto_mock_stripe, payment_event):
        auto_mock_stripe.Webhook.construct_event.side_effect = real_stripe.SignatureVerificationError("bad", SIG)
        event = payment_event("evt_1", deposit_metadata("10.00"))

        response = client.post("/api/stripe/webhook", content=as_payload(event), headers={"stripe-signature": SIG})

        assert response.status_code == 400

    def test_database_outage_is_500(self, client, db_session, payment_event):
        event = payment_event("evt_1", deposit_metadata("10.00"))

        with patch.object(webhook_service, "_apply_deposit", side_effect=db_outage):
            response = client.post("/api/stripe/webhook", content=as_payload(event), headers={"stripe-signature": SIG})

        assert response.status_code == 500
        assert db_session.query(WebhookFailure).filter(WebhookFailure.stripe_event_id == "evt_1").count() == 1

    def test_invalid_metadata_acknowledged(self, client, db_session, payment_event):
        event = payment_event("evt_bad", {"type": "wallet_deposit", "user_id": "abc", "amount": "10.00"})

        response = client.post("/api/stripe/webhook", content=as_payload(event), headers={"stripe-signature": SIG})

        assert response.status_code == 200
        assert response.json()["status"] == "rejected"
        assert db_session.query(WebhookFailure).count() == 1

    def test_ledger_work_runs_off_the_event_loop(self, client, payment_event):
        seen = {}

        def record_thread(payload, sig_header, db):
            try:
                asyncio.get_running_loop()
                seen["on_loop"] = True
            except RuntimeError:
                seen["on_loop"] = False
            seen["payload"] = payload
            return {"status": "applied"}

        event = payment_event("evt_1", deposit_metadata("10.00"))
        with patch("casefund.api.webhooks.process_stripe_webhook", side_effect=record_thread):
            response = client.post("/api/stripe/webhook", content=as_payload(event), headers={"stripe-signature": SIG})

        assert response.status_code == 200
        assert seen == {"on_loop": False, "payload": as_payload(event)}

    def test_webhook_is_not_rate_limited(self, client, mock_redis, payment_event):
        mock_redis.set("ratelimit:ip:testclient", 10 ** 6)
        event = payment_event("evt_1", deposit_metadata("10.00"))

        response = client.post("/api/stripe/webhook", content=as_payload(event), headers={"stripe-signature": SIG})

        assert response.status_code == 200


class TestOperatorRoutes:
    def test_list_and_retry_webhook_failure(self, client, db_session, operator_headers, payment_event):
        event = payment_event("evt_1", deposit_metadata("10.00"))
        with patch.object(webhook_service, "_apply_deposit", side_effect=db_outage):
            client.post("/api/stripe/webhook", content=as_payload(event), headers={"stripe-signature": SIG})

        failures = client.get("/api/admin/webhook-failures", headers=operator_headers).json()["failures"]
        assert len(failures) == 1

        response = client.post(
            "/api/admin/webhook-failures/retry", json={"failure_id": failures[0]["id"]}, headers=operator_headers
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert client.get("/api/admin/webhook-failures", headers=operator_headers).json()["failures"] == []

    def test_retry_unknown_failure_is_404(self, client, operator_headers):
        response = client.post("/api/admin/webhook-failures/retry", json={"failure_id": 999}, headers=operator_headers)
        assert response.status_code == 404

    def test_process_withdrawals(self, client, operator_headers, db_session, wallet_factory):
        from casefund.services.withdrawal_service import request_withdrawal

        wallet_factory(balance="20.00")
        request_withdrawal(USER_ID, Decimal("20.00"), WITHDRAWAL_BODY["bank_details"], db_session)

        response = client.post("/api/admin/withdrawals/process", headers=operator_headers)

        assert response.status_code == 200
        assert response.json() == {"processed": 1, "failed": 0, "skipped": 0}

    def test_retry_pending_withdrawal_is_409(self, client, operator_headers, db_session, wallet_factory):
        from casefund.services.withdrawal_service import request_withdrawal

        wallet_factory(balance="20.00")
        request = request_withdrawal(USER_ID, Decimal("20.00"), WITHDRAWAL_BODY["bank_details"], db_session)

        response = client.post(f"/api/admin/withdrawals/{request.id}/retry", headers=operator_headers)

        assert response.status_code == 409

    def test_run_settlement(self, client, operator_headers):
        response = client.post("/api/admin/settlements/run", headers=operator_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "skipped"

    def test_settlement_already_running_is_409(self, client, operator_headers, mock_redis):
        mock_redis.set("joblock:fee_settlement", "other-worker")
        response = client.post("/api/admin/settlements/run", headers=operator_headers)
        assert response.status_code == 409

    def test_run_reconciliation(self, client, operator_headers):
        response = client.post("/api/admin/reconciliation/run", headers=operator_headers)

        assert response.status_code == 200
        assert response.json()["operations"]["diff"] == "0.00"


class TestRequestRateLimit:
    def test_exhausted_window_returns_429(self, authenticated_client, mock_redis):
        mock_redis.set(f"ratelimit:session:{SESSION_ID}", 10 ** 6)

        response = authenticated_client.get("/api/wallet")

        assert response.status_code == 429

    @pytest.mark.parametrize("path", ["/health", "/metrics"])
    def test_monitoring_paths_exempt(self, client, mock_redis, path):
        mock_redis.set("ratelimit:ip:testclient", 10 ** 6)
        assert client.get(path).status_code == 200


class TestMonitoring:
    def test_health_reports_dependencies(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "database": "ok", "redis": "ok"}

    def test_health_degraded_without_redis(self, client, mock_redis):
        from redis import ConnectionError as RedisConnectionError

        with patch.object(mock_redis, "ping", side_effect=RedisConnectionError("refused")):
            response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["redis"] == "unavailable"

    def test_metrics_exposes_ledger_counters(self, client, payment_event):
        event = payment_event("evt_m", deposit_metadata("10.00"))
        client.post("/api/stripe/webhook", content=as_payload(event), headers={"stripe-signature": SIG})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "webhook_events_total" in response.text
