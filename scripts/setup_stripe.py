#!/usr/bin/env python3
"""
Stripe setup script - creates membership products and one-off prices.
Writes a plan file that MEMBERSHIP_PLANS_FILE can point at.
"""

import argparse
import json
import os
import sys
import stripe
from dotenv import load_dotenv
from typing import Dict, Any, List

STRIPE_API_VERSION = "2024-11-20.acacia"
CURRENCY = "thb"

# amount_minor: one-off price in satang (1/100 THB)
PRODUCTS = {
    'USER_BRONZE': {
        'name': 'Fitmate Bronze',
        'description': 'Bronze membership',
        'label': 'Bronze 499',
        'amount_minor': 49900,
    },
    'USER_GOLD': {
        'name': 'Fitmate Gold',
        'description': 'Gold membership',
        'label': 'Gold 1299',
        'amount_minor': 129900,
    },
    'USER_PLATINUM': {
        'name': 'Fitmate Platinum',
        'description': 'Platinum membership',
        'label': 'Platinum 2999',
        'amount_minor': 299900,
    },
}

def load_env_file(env_file: str) -> bool:
    """Load environment variables from .env.{env_file}."""
    script_dir = os.path.dirname(os.path.abspath(__file__))
    project_root = os.path.dirname(script_dir)

    paths = [
        os.path.join(project_root, f'.env.{env_file}'),
        f'.env.{env_file}',
    ]

    for path in paths:
        if os.path.exists(path):
            load_dotenv(path, override=True)
            print(f"✓ Loaded {path}")
            return True
    print(f"⚠️  .env.{env_file} not found")
    return False

def find_or_create_price(product_id: str, role: str, config: Dict[str, Any], existing_prices: List[Any]) -> Any:
    """Finds or creates the one-off price for a membership role (idempotent via lookup_key)."""
    lookup_key = f"{role.lower()}_membership"

    for price in existing_prices:
        if price.product != product_id or not price.active:
            continue
        if getattr(price, 'recurring', None):
            continue
        if price.unit_amount == config['amount_minor'] and price.currency == CURRENCY:
            if getattr(price, 'lookup_key', None) == lookup_key:
                print(f"    ✓ Found price by lookup_key: {price.id} ({lookup_key})")
            else:
                print(f"    ✓ Reusing price: {price.id} ({config['amount_minor']} {CURRENCY})")
            return price

    print(f"    ➕ Creating price: {config['amount_minor']} {CURRENCY} (lookup_key: {lookup_key})")
    return stripe.Price.create(
        product=product_id,
        currency=CURRENCY,
        unit_amount=config['amount_minor'],
        lookup_key=lookup_key,
        transfer_lookup_key=True,
    )

def create_or_update_products() -> Dict[str, Dict[str, Any]]:
    print(f"\n{'='*60}\nSyncing Stripe Products\n{'='*60}\n")

    results = {}
    all_products = stripe.Product.list(limit=100).data
    existing_products = {p.name: p for p in all_products if p.active}
    existing_prices = stripe.Price.list(limit=100, active=True).data

    for role, config in PRODUCTS.items():
        print(f"Plan: {config['name']}")

        product = existing_products.get(config['name'])
        if not product:
            product = stripe.Product.create(name=config['name'], description=config['description'])
            print(f"  ✓ Created product: {product.id}")

        price = find_or_create_price(product.id, role, config, existing_prices)

        # Shape read by fitmate.services.plan_registry.load_plans_file
        results[price.id] = {
            'role': role,
            'amount': config['amount_minor'],
            'currency': CURRENCY.upper(),
            'label': config['label'],
        }
    return results

def save_config(plans: Dict[str, Dict[str, Any]], mode: str) -> str:
    script_dir = os.path.dirname(os.path.abspath(__file__))
    project_root = os.path.dirname(script_dir)
    target_dir = os.path.join(project_root, 'backend', 'fitmate', 'core', 'assets')

    os.makedirs(target_dir, exist_ok=True)
    file_path = os.path.join(target_dir, f'membership_plans_{mode}.json')

    with open(file_path, 'w') as f:
        json.dump(plans, f, indent=2)
    print(f"\n✓ Configuration saved to: {file_path}")
    return file_path

def main():
    parser = argparse.ArgumentParser(description='Setup Stripe membership prices.')
    parser.add_argument('--env-file', choices=['dev', 'prod'], help='Load from .env file')
    parser.add_argument('--mode', choices=['test', 'live'], help='Stripe mode')
    args = parser.parse_args()

    if args.env_file:
        load_env_file(args.env_file)

    api_key = os.getenv('STRIPE_SECRET_KEY')
    if not api_key:
        print("❌ STRIPE_SECRET_KEY not found in environment.")
        sys.exit(1)

    mode = args.mode or ('test' if api_key.startswith('sk_test_') else 'live')
    stripe.api_key = api_key
    stripe.api_version = STRIPE_API_VERSION

    print(f"Starting Setup: {mode.upper()}")

    plans = create_or_update_products()
    file_path = save_config(plans, mode)
    print(f"\nSet MEMBERSHIP_PLANS_FILE={file_path} to use these prices")
    print(f"\n{'='*60}\n✅ Idempotent Sync Complete\n{'='*60}")

if __name__ == '__main__':
    main()
