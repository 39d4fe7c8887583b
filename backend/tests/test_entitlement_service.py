"""Entitlement reconciliation tests: on-demand check, version guard and status sync"""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from app.core.config import settings
from app.core.exceptions import BillingAPIError, ConfigurationError
from app.models.entitlement import Entitlement
from app.models.usage_limit import UsageLimit
from app.services import entitlement_service
from app.services.entitlement_service import (
    check_subscription, cleanup_expired_entitlements, clear_entitlement,
    reconcile_customer_entitlement, sync_stripe_status
)
from app.utils.dates import ensure_utc
from conftest import DAY, future_ts, make_subscription


def _entitlement(db_session, user):
    return db_session.query(Entitlement).filter(Entitlement.user_id == user.id).first()


@pytest.mark.critical
class TestCheckSubscription:
    def test_no_customer_is_not_subscribed(self, db_session, test_user):
        result = check_subscription(db_session, test_user)
        assert result == {"subscribed": False, "product_id": None, "subscription_end": None, "plan_tier": "free"}

    def test_active_subscription_is_written(self, db_session, test_user, fake_stripe):
        end = future_ts(30)
        fake_stripe.add_customer(test_user.email, "cus_1", [make_subscription("sub_pro", "prod_pro", period_end=end)])

        result = check_subscription(db_session, test_user)

        assert result["subscribed"] is True
        assert result["plan_tier"] == "pro"
        assert result["product_id"] == "prod_pro"
        assert result["subscription_end"] == datetime.fromtimestamp(end, tz=timezone.utc)

        entitlement = _entitlement(db_session, test_user)
        assert entitlement.plan_tier == "pro"
        assert entitlement.stripe_subscription_id == "sub_pro"
        assert entitlement.stripe_customer_id == "cus_1"
        assert entitlement.source_version > 0
        db_session.refresh(test_user)
        assert test_user.stripe_customer_id == "cus_1"

    def test_highest_tier_wins_over_multiple_subscriptions(self, db_session, test_user, fake_stripe):
        pro_end, ultra_end = future_ts(10), future_ts(40)
        fake_stripe.add_customer(test_user.email, "cus_1", [
            make_subscription("sub_pro", "prod_pro", period_end=pro_end),
            make_subscription("sub_ultra", "prod_ultra", period_end=ultra_end),
        ])
        result = check_subscription(db_session, test_user)
        assert result["plan_tier"] == "ultra_pro"
        entitlement = _entitlement(db_session, test_user)
        assert entitlement.stripe_subscription_id == "sub_ultra"
        assert ensure_utc(entitlement.current_period_end) == datetime.fromtimestamp(ultra_end, tz=timezone.utc)

    def test_trialing_subscription_counts(self, db_session, test_user, fake_stripe):
        trial_end = future_ts(7)
        fake_stripe.add_customer(test_user.email, "cus_1", [
            make_subscription("sub_t", "prod_pro", status="trialing", period_end=future_ts(37), trial_end=trial_end),
        ])

        result = check_subscription(db_session, test_user)

        assert result["subscribed"] is True
        assert result["plan_tier"] == "pro"
        assert result["subscription_end"] == datetime.fromtimestamp(trial_end, tz=timezone.utc)
        entitlement = _entitlement(db_session, test_user)
        assert (entitlement.plan_tier, entitlement.stripe_subscription_id) == ("pro", "sub_t")

    def test_entitlement_created_concurrently_is_updated(self, db_session, test_user, fake_stripe):
        fake_stripe.add_customer(test_user.email, "cus_1", [make_subscription("sub_ultra", "prod_ultra")])
        real_lock = entitlement_service._lock_entitlement
        calls = []

        def lock_after_concurrent_insert(db, user_id):
            if not calls:
                calls.append(user_id)
                db.execute(Entitlement.__table__.insert().values(
                    user_id=user_id, plan_tier="pro", status="active", source_version=1,
                ))
                return None
            return real_lock(db, user_id)

        with patch.object(entitlement_service, "_lock_entitlement", side_effect=lock_after_concurrent_insert):
            result = check_subscription(db_session, test_user)

        assert result["plan_tier"] == "ultra_pro"
        rows = db_session.query(Entitlement).filter(Entitlement.user_id == test_user.id).all()
        assert [(e.plan_tier, e.stripe_subscription_id) for e in rows] == [("ultra_pro", "sub_ultra")]

    def test_canceled_subscription_clears_previous_entitlement(self, db_session, test_user, fake_stripe):
        fake_stripe.add_customer(test_user.email, "cus_1", [make_subscription("sub_pro", "prod_pro")])
        check_subscription(db_session, test_user)
        fake_stripe.cancel_subscription("sub_pro")

        result = check_subscription(db_session, test_user)

        assert result["subscribed"] is False
        entitlement = _entitlement(db_session, test_user)
        assert entitlement.plan_tier == "free"
        assert entitlement.status == "canceled"
        assert entitlement.stripe_subscription_id is None

    def test_expired_period_is_not_subscribed(self, db_session, test_user, fake_stripe):
        fake_stripe.add_customer(test_user.email, "cus_1", [
            make_subscription("sub_pro", "prod_pro", period_end=int(datetime.now(timezone.utc).timestamp()) - DAY),
        ])
        assert check_subscription(db_session, test_user)["subscribed"] is False

    def test_test_mode_key_refused_before_any_write(self, db_session, test_user, fake_stripe):
        fake_stripe.add_customer(test_user.email, "cus_1", [make_subscription("sub_pro", "prod_pro")])
        with patch.object(settings, "STRIPE_SECRET_KEY", "sk_test_abc"):
            with pytest.raises(ConfigurationError):
                check_subscription(db_session, test_user)
        assert _entitlement(db_session, test_user) is None

    def test_stripe_failure_propagates(self, db_session, test_user, fake_stripe):
        fake_stripe.failing_emails.add(test_user.email)
        with pytest.raises(BillingAPIError):
            check_subscription(db_session, test_user)


@pytest.mark.critical
class TestSourceVersionGuard:
    def test_older_write_is_rejected(self, db_session, test_user, fake_stripe):
        fake_stripe.add_customer(test_user.email, "cus_1", [make_subscription("sub_ultra", "prod_ultra")])
        reconcile_customer_entitlement(db_session, test_user, "cus_1", source_version=200)
        db_session.commit()

        fake_stripe.subscriptions["cus_1"] = [make_subscription("sub_pro", "prod_pro")]
        result = reconcile_customer_entitlement(db_session, test_user, "cus_1", source_version=100)
        db_session.commit()

        assert result.applied is False
        entitlement = _entitlement(db_session, test_user)
        assert entitlement.plan_tier == "ultra_pro"
        assert entitlement.source_version == 200

    def test_equal_or_newer_write_is_applied(self, db_session, test_user, fake_stripe):
        fake_stripe.add_customer(test_user.email, "cus_1", [make_subscription("sub_ultra", "prod_ultra")])
        reconcile_customer_entitlement(db_session, test_user, "cus_1", source_version=200)
        db_session.commit()

        fake_stripe.subscriptions["cus_1"] = [make_subscription("sub_pro", "prod_pro")]
        result = reconcile_customer_entitlement(db_session, test_user, "cus_1", source_version=200)
        db_session.commit()

        assert result.applied is True
        assert _entitlement(db_session, test_user).plan_tier == "pro"

    def test_stale_clear_is_rejected(self, db_session, test_user, fake_stripe):
        fake_stripe.add_customer(test_user.email, "cus_1", [make_subscription("sub_pro", "prod_pro")])
        reconcile_customer_entitlement(db_session, test_user, "cus_1", source_version=500)
        db_session.commit()

        assert clear_entitlement(db_session, test_user, 400) is False
        db_session.commit()
        assert _entitlement(db_session, test_user).plan_tier == "pro"

    def test_clear_keeps_row_and_period_end(self, db_session, test_user, fake_stripe):
        fake_stripe.add_customer(test_user.email, "cus_1", [make_subscription("sub_pro", "prod_pro")])
        reconcile_customer_entitlement(db_session, test_user, "cus_1", source_version=500)
        db_session.commit()
        period_end = _entitlement(db_session, test_user).current_period_end

        assert clear_entitlement(db_session, test_user, 600) is True
        db_session.commit()

        entitlement = _entitlement(db_session, test_user)
        assert entitlement.plan_tier == "free"
        assert entitlement.source_version == 600
        assert entitlement.current_period_end == period_end

    def test_unmapped_products_leave_user_free(self, db_session, test_user, fake_stripe):
        fake_stripe.add_customer(test_user.email, "cus_1", [make_subscription("sub_x", "prod_unmapped")])
        result = reconcile_customer_entitlement(db_session, test_user, "cus_1", source_version=10)
        db_session.commit()
        assert result.selected is None
        assert _entitlement(db_session, test_user) is None


@pytest.mark.high
class TestStripeStatusSync:
    def _grant(self, db_session, user, fake_stripe):
        fake_stripe.add_customer(user.email, "cus_1", [make_subscription("sub_pro", "prod_pro")])
        reconcile_customer_entitlement(db_session, user, "cus_1", source_version=1, update_usage=True)
        db_session.commit()

    def test_no_subscription(self, db_session, test_user):
        assert sync_stripe_status(db_session, test_user)["status"] == "no_subscription"

    def test_live_subscription_unchanged(self, db_session, test_user, fake_stripe):
        self._grant(db_session, test_user, fake_stripe)
        result = sync_stripe_status(db_session, test_user)
        assert result == {"status": "unchanged", "stripe_status": "active"}
        assert _entitlement(db_session, test_user).plan_tier == "pro"

    def test_dead_subscription_clears_entitlement_and_usage(self, db_session, test_user, fake_stripe):
        self._grant(db_session, test_user, fake_stripe)
        fake_stripe.subscriptions["cus_1"][0]["status"] = "unpaid"

        result = sync_stripe_status(db_session, test_user)

        assert result == {"status": "cleared", "stripe_status": "unpaid"}
        assert _entitlement(db_session, test_user).plan_tier == "free"
        assert db_session.query(UsageLimit).filter(UsageLimit.user_id == test_user.id).count() == 0

    def test_missing_subscription_clears_entitlement(self, db_session, test_user, fake_stripe):
        self._grant(db_session, test_user, fake_stripe)
        fake_stripe.subscriptions["cus_1"] = []

        result = sync_stripe_status(db_session, test_user)

        assert result["stripe_status"] == "resource_missing"
        assert _entitlement(db_session, test_user).plan_tier == "free"


@pytest.mark.medium
class TestCleanupExpiredEntitlements:
    def test_deletes_only_old_dead_entitlements(self, db_session, test_user, admin_user):
        now = datetime.now(timezone.utc)
        old = Entitlement(
            user_id=test_user.id, plan_tier="free", status="canceled",
            current_period_end=now - timedelta(days=30), updated_at=now - timedelta(days=10),
        )
        alive = Entitlement(
            user_id=admin_user.id, plan_tier="pro", status="active",
            current_period_end=now - timedelta(days=30), updated_at=now - timedelta(days=10),
        )
        db_session.add_all([old, alive])
        db_session.commit()

        assert cleanup_expired_entitlements(db_session) == 1
        remaining = db_session.query(Entitlement).all()
        assert [e.user_id for e in remaining] == [admin_user.id]

    def test_recently_ended_entitlement_is_kept(self, db_session, test_user):
        now = datetime.now(timezone.utc)
        db_session.add(Entitlement(
            user_id=test_user.id, plan_tier="free", status="canceled",
            current_period_end=now - timedelta(days=2), updated_at=now - timedelta(days=2),
        ))
        db_session.commit()

        assert cleanup_expired_entitlements(db_session) == 0
        assert ensure_utc(_entitlement(db_session, test_user).current_period_end) < now
