"""API endpoint tests"""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from app.core.config import settings
from app.core.exceptions import BillingAPIError
from app.models.entitlement import Entitlement
from app.models.usage_limit import UsageLimit
from app.models.webhook_attempt import WebhookAttempt
from conftest import INTERNAL_AUTH, make_event, make_subscription


def _paid_user(db_session, user, used=0, limit=3):
    now = datetime.now(timezone.utc)
    db_session.add(Entitlement(
        user_id=user.id, plan_tier="pro", status="active",
        current_period_end=now + timedelta(days=20), source_version=1,
    ))
    db_session.add(UsageLimit(
        user_id=user.id, used_count=used, limit_count=limit,
        period_start=now - timedelta(days=10), period_end=now + timedelta(days=20),
    ))
    db_session.commit()


@pytest.mark.critical
class TestAuthentication:
    @pytest.mark.parametrize("method,path", [
        ("get", "/api/subscription/check"),
        ("post", "/api/subscription/status-sync"),
        ("get", "/api/usage/image-limit"),
        ("get", "/api/admin/webhook-attempts"),
    ])
    def test_user_endpoints_require_session(self, client, method, path):
        response = getattr(client, method)(path)
        assert response.status_code == 401

    def test_expired_session_rejected(self, client):
        response = client.get("/api/subscription/check", headers={"Authorization": "Bearer unknown-token"})
        assert response.status_code == 401

    def test_session_cookie_accepted(self, client, test_user, mock_redis):
        from app.db.redis import set_session
        set_session("cookie-token", test_user.id)
        client.cookies.set("session_id", "cookie-token")
        response = client.get("/api/subscription/check")
        assert response.status_code == 200

    @pytest.mark.parametrize("path", [
        "/api/subscription/sync",
        "/api/webhooks/retry",
        "/api/usage/generation-result",
    ])
    def test_internal_endpoints_require_key(self, client, auth_headers, path):
        assert client.post(path, json={}).status_code == 401
        # A user session is not the internal key
        assert client.post(path, json={}, headers=auth_headers).status_code == 401

    def test_internal_endpoints_unavailable_without_configured_key(self, client):
        with patch.object(settings, "INTERNAL_API_KEY", ""):
            response = client.post("/api/subscription/sync", headers={"Authorization": "Bearer anything"})
        assert response.status_code == 503

    def test_admin_endpoints_reject_regular_users(self, client, auth_headers):
        assert client.get("/api/admin/webhook-attempts", headers=auth_headers).status_code == 403


@pytest.mark.critical
class TestSubscriptionEndpoints:
    def test_check_not_subscribed(self, client, auth_headers):
        response = client.get("/api/subscription/check", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["subscribed"] is False
        assert response.json()["plan_tier"] == "free"

    def test_check_subscribed(self, client, auth_headers, test_user, fake_stripe):
        fake_stripe.add_customer(test_user.email, "cus_1", [make_subscription("sub_pro", "prod_pro")])
        response = client.post("/api/subscription/check", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["subscribed"] is True
        assert data["product_id"] == "prod_pro"
        assert data["plan_tier"] == "pro"
        assert data["subscription_end"]

    def test_check_stripe_failure_is_retryable_error(self, client, auth_headers, test_user, fake_stripe):
        fake_stripe.failing_emails.add(test_user.email)
        response = client.get("/api/subscription/check", headers=auth_headers)
        assert response.status_code == 502
        assert response.json()["subscribed"] is False
        assert response.json()["error"]

    def test_check_test_mode_key_is_server_error(self, client, auth_headers):
        with patch.object(settings, "STRIPE_SECRET_KEY", "sk_test_abc"):
            response = client.get("/api/subscription/check", headers=auth_headers)
        assert response.status_code == 500
        assert response.json()["subscribed"] is False

    def test_sync(self, client, test_user, fake_stripe):
        fake_stripe.add_customer(test_user.email, "cus_1", [make_subscription("sub_pro", "prod_pro")])
        response = client.post("/api/subscription/sync", headers=INTERNAL_AUTH)
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["synced"] == 1
        assert data["errors"] == 0

    def test_sync_conflicts_with_running_sync(self, client, mock_redis):
        from app.db.redis import SYNC_LOCK_KEY
        mock_redis.set(SYNC_LOCK_KEY, "1")
        response = client.post("/api/subscription/sync", headers=INTERNAL_AUTH)
        assert response.status_code == 409

    def test_restore_with_internal_key(self, client, test_user, fake_stripe):
        fake_stripe.add_customer(test_user.email, "cus_1", [make_subscription("sub_pro", "prod_pro")])
        response = client.post(
            "/api/subscription/restore",
            json={"userId": test_user.id, "userEmail": test_user.email},
            headers=INTERNAL_AUTH,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["restored"] is True
        assert data["plan"] == "pro"
        assert data["image_limit"] == 500

    def test_restore_as_admin(self, client, admin_headers, test_user):
        response = client.post(
            "/api/subscription/restore",
            json={"user_id": test_user.id, "user_email": test_user.email},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["restored"] is False

    def test_restore_forbidden_for_regular_user(self, client, auth_headers, test_user):
        response = client.post(
            "/api/subscription/restore",
            json={"userId": test_user.id, "userEmail": test_user.email},
            headers=auth_headers,
        )
        assert response.status_code == 403

    def test_restore_unknown_user(self, client):
        response = client.post(
            "/api/subscription/restore",
            json={"userId": 4242, "userEmail": "ghost@example.com"},
            headers=INTERNAL_AUTH,
        )
        assert response.status_code == 404

    def test_restore_validates_body(self, client):
        response = client.post("/api/subscription/restore", json={"userId": 1}, headers=INTERNAL_AUTH)
        assert response.status_code == 422

    def test_status_sync(self, client, auth_headers):
        response = client.post("/api/subscription/status-sync", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "no_subscription"

    def test_status_sync_stripe_failure(self, client, auth_headers, test_user, db_session):
        db_session.add(Entitlement(user_id=test_user.id, plan_tier="pro", status="active", stripe_subscription_id="sub_x"))
        db_session.commit()
        with patch("app.services.stripe_service.retrieve_subscription", side_effect=BillingAPIError("timeout")):
            response = client.post("/api/subscription/status-sync", headers=auth_headers)
        assert response.status_code == 502


@pytest.mark.high
class TestUsageEndpoints:
    def test_image_limit(self, client, auth_headers, test_user, db_session):
        _paid_user(db_session, test_user, used=1, limit=3)
        response = client.get("/api/usage/image-limit", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["can_generate"] is True
        assert data["remaining"] == 2
        assert data["limit"] == 3

    def test_generation_result_counts_images(self, client, test_user, db_session):
        _paid_user(db_session, test_user, limit=1)

        first = client.post(
            "/api/usage/generation-result",
            json=[{"userId": test_user.id, "imageUrl": "https://cdn.example.com/1.png"}],
            headers=INTERNAL_AUTH,
        )
        second = client.post(
            "/api/usage/generation-result",
            json={"user_id": test_user.id, "image_url": "https://cdn.example.com/2.png"},
            headers=INTERNAL_AUTH,
        )

        assert first.json() == {"kind": "image", "status": "counted", "counted": True}
        assert second.json() == {"kind": "image", "status": "limit_reached", "counted": False}
        usage = db_session.query(UsageLimit).filter(UsageLimit.user_id == test_user.id).one()
        db_session.refresh(usage)
        assert usage.used_count == 1

    def test_generation_result_text_is_ignored(self, client, test_user):
        response = client.post(
            "/api/usage/generation-result",
            json={"userId": test_user.id, "output": "a caption"},
            headers=INTERNAL_AUTH,
        )
        assert response.status_code == 200
        assert response.json()["kind"] == "text"
        assert response.json()["counted"] is False

    def test_generation_result_rejects_invalid_body(self, client):
        response = client.post("/api/usage/generation-result", json={"imageUrl": "x"}, headers=INTERNAL_AUTH)
        assert response.status_code == 400


@pytest.mark.high
class TestWebhookAdminEndpoints:
    def _attempt(self, db_session, event_id, status="failed", attempt_number=5, next_retry_at=None):
        attempt = WebhookAttempt(
            stripe_event_id=event_id,
            event_type="charge.refunded",
            request_payload=make_event(event_id, "charge.refunded", {"customer": "cus_1"}),
            status=status,
            attempt_number=attempt_number,
            next_retry_at=next_retry_at,
        )
        db_session.add(attempt)
        db_session.commit()
        return attempt

    def test_retry_endpoint_returns_camel_case_summary(self, client):
        response = client.post("/api/webhooks/retry", headers=INTERNAL_AUTH)
        assert response.status_code == 200
        assert response.json() == {
            "success": True, "retriedCount": 0, "successCount": 0, "failedCount": 0, "results": []
        }

    def test_list_exhausted_attempts(self, client, admin_headers, db_session):
        self._attempt(db_session, "evt_exhausted")
        self._attempt(db_session, "evt_pending", attempt_number=2, next_retry_at=datetime.now(timezone.utc))
        self._attempt(db_session, "evt_done", status="success")

        response = client.get("/api/admin/webhook-attempts?exhausted=true", headers=admin_headers)

        assert response.status_code == 200
        assert [a["stripe_event_id"] for a in response.json()] == ["evt_exhausted"]

    def test_list_by_status(self, client, admin_headers, db_session):
        self._attempt(db_session, "evt_exhausted")
        self._attempt(db_session, "evt_done", status="success")
        response = client.get("/api/admin/webhook-attempts?status=success", headers=admin_headers)
        assert [a["stripe_event_id"] for a in response.json()] == ["evt_done"]

    def test_replay_unknown_attempt(self, client, admin_headers):
        assert client.post("/api/admin/webhook-attempts/999/replay", headers=admin_headers).status_code == 404

    def test_replay_succeeded_attempt_conflicts(self, client, admin_headers, db_session):
        attempt = self._attempt(db_session, "evt_done", status="success")
        response = client.post(f"/api/admin/webhook-attempts/{attempt.id}/replay", headers=admin_headers)
        assert response.status_code == 409


@pytest.mark.medium
class TestMonitoring:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_metrics(self, client, db_session, test_user):
        _paid_user(db_session, test_user)
        response = client.get("/metrics")
        assert response.status_code == 200
        assert 'entitlements_active{plan_tier="pro"} 1.0' in response.text
        assert "entitlements_webhook_attempts" in response.text
