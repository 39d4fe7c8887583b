#!/usr/bin/env python3
"""
Manage the Stripe product -> plan tier mapping and run one-off reconciliations.

Usage:
    # Map a Stripe product to a tier
    python manage_plans.py map --product prod_123 --tier pro --name "Pro"

    # Show the current mapping
    python manage_plans.py list

    # Reconcile every user against Stripe now
    python manage_plans.py sync

    # Rebuild one user's entitlement from Stripe
    python manage_plans.py restore --email user@example.com
"""

import argparse
import os
import sys

# Add backend directory to path to import the app package
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.config import TIER_PRIORITY
from app.core.exceptions import EntitlementError
from app.core.logging import setup_logging
from app.db.session import SessionLocal, init_db
from app.models.stripe_product import StripeProduct
from app.models.user import User
from app.services.entitlement_service import restore_user_subscription
from app.services.plan_service import load_product_plans
from app.services.sync_service import run_locked_sync


def map_product(product_id: str, tier: str, name: str) -> bool:
    """Create or update one product mapping"""
    db = SessionLocal()
    try:
        product = db.query(StripeProduct).filter(StripeProduct.stripe_product_id == product_id).first()
        if product:
            print(f"Updating {product_id}: {product.plan_tier} -> {tier}")
            product.plan_tier = tier
            product.plan_name = name
        else:
            print(f"Mapping {product_id} to {tier}")
            db.add(StripeProduct(stripe_product_id=product_id, plan_tier=tier, plan_name=name))
        db.commit()
        return True
    except Exception as e:
        print(f"❌ Error: {e}")
        db.rollback()
        return False
    finally:
        db.close()


def list_products() -> bool:
    db = SessionLocal()
    try:
        plans = load_product_plans(db)
        if not plans:
            print("No product mappings configured")
        for product_id, plan in sorted(plans.items(), key=lambda item: TIER_PRIORITY[item[1].tier]):
            print(f"{product_id:40} {plan.tier:10} {plan.plan_name}")
        return True
    finally:
        db.close()


def sync_all() -> bool:
    db = SessionLocal()
    try:
        result = run_locked_sync(db)
        print(f"✅ {result['message']}")
        return result["errors"] == 0
    except EntitlementError as e:
        print(f"❌ Sync aborted: {e}")
        return False
    finally:
        db.close()


def restore(email: str) -> bool:
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.email == email).first()
        if not user:
            print(f"❌ User not found: {email}")
            return False
        result = restore_user_subscription(db, user.id, email)
        if result["restored"]:
            print(f"✅ Restored {result['plan']} (limit {result['image_limit']}, period end {result['period_end']})")
        else:
            print(f"Nothing restored: {result['message']}")
        return result["restored"]
    except EntitlementError as e:
        print(f"❌ Restore failed: {e}")
        return False
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description="Manage plan mappings and reconciliations")
    subparsers = parser.add_subparsers(dest="command", required=True)

    map_parser = subparsers.add_parser("map", help="Map a Stripe product to a plan tier")
    map_parser.add_argument("--product", required=True, help="Stripe product ID (prod_...)")
    map_parser.add_argument("--tier", required=True, choices=[t for t in TIER_PRIORITY if t != "free"])
    map_parser.add_argument("--name", required=True, help="Plan display name")

    subparsers.add_parser("list", help="List product mappings")
    subparsers.add_parser("sync", help="Reconcile all users against Stripe")

    restore_parser = subparsers.add_parser("restore", help="Restore one user's entitlement")
    restore_parser.add_argument("--email", required=True)

    args = parser.parse_args()
    setup_logging()
    init_db()

    if args.command == "map":
        ok = map_product(args.product, args.tier, args.name)
    elif args.command == "list":
        ok = list_products()
    elif args.command == "sync":
        ok = sync_all()
    else:
        ok = restore(args.email)

    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
