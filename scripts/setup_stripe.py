#!/usr/bin/env python3
"""
Stripe setup script for the basic/pro/enterprise plans and the billing webhook.

Usage:
    # Test/Sandbox mode:
    python scripts/setup_stripe.py --mode test --api-key sk_test_... [--webhook-url URL]

    # Production/Live mode:
    python scripts/setup_stripe.py --mode live --api-key sk_live_... [--webhook-url URL]

Prints the STRIPE_PRICE_* and STRIPE_WEBHOOK_SECRET lines for the backend .env.
"""

import argparse
import sys
import traceback
from typing import Any, Dict, Optional

import stripe


# Plan definitions, keyed by the plan name the backend uses
PLANS = {
    'basic': {
        'name': 'Collab Basic',
        'description': 'Personal projects',
        'price_cents': 500,  # $5.00/month
    },
    'pro': {
        'name': 'Collab Pro',
        'description': 'Team projects and shared editing',
        'price_cents': 1500,  # $15.00/month
    },
    'enterprise': {
        'name': 'Collab Enterprise',
        'description': 'Organisation-wide collaboration',
        'price_cents': 4900,  # $49.00/month
    },
}

# Events the webhook handler acts on
WEBHOOK_EVENTS = [
    'checkout.session.completed',
    'customer.subscription.updated',
    'customer.subscription.deleted',
]


def validate_api_key(api_key: str, mode: str) -> bool:
    """Validate that API key matches the specified mode."""
    prefix = 'sk_test_' if mode == 'test' else 'sk_live_'
    if not api_key.startswith(prefix):
        print(f"❌ Error: {mode} mode requires a key starting with {prefix}")
        print(f"   Your key starts with: {api_key[:10]}...")
        return False
    return True


def find_monthly_price(product_id: str, price_cents: int) -> Optional[Any]:
    for price in stripe.Price.list(product=product_id, active=True, limit=100).data:
        if (price.unit_amount == price_cents and price.currency == 'usd'
                and price.recurring and price.recurring.interval == 'month'):
            return price
    return None


def create_or_update_plans(mode: str) -> Dict[str, Dict[str, Any]]:
    """
    Create the plan products and monthly prices, reusing existing ones.

    Returns:
        Dict mapping plan keys to their Stripe IDs
    """
    print(f"\n{'='*60}")
    print(f"Creating/Updating Plans ({mode.upper()} mode)")
    print(f"{'='*60}\n")

    results = {}
    existing_products = {p.name: p for p in stripe.Product.list(limit=100).data}

    for key, config in PLANS.items():
        print(f"Processing: {config['name']}")

        product = existing_products.get(config['name'])
        if product:
            print(f"  ✓ Found existing product: {product.id}")
        else:
            product = stripe.Product.create(
                name=config['name'],
                description=config['description'],
                metadata={'plan': key},
            )
            print(f"  ✓ Created product: {product.id}")

        price = find_monthly_price(product.id, config['price_cents'])
        if price:
            print(f"  ✓ Found existing price: {price.id}")
        else:
            price = stripe.Price.create(
                product=product.id,
                unit_amount=config['price_cents'],
                currency='usd',
                recurring={'interval': 'month'},
                metadata={'plan': key},
            )
            print(f"  ✓ Created price: {price.id} (${config['price_cents']/100:.2f}/month)")

        results[key] = {'product_id': product.id, 'price_id': price.id}
        print()

    return results


def create_or_update_webhook(webhook_url: str, mode: str) -> Dict[str, Any]:
    """
    Create the webhook endpoint or align the events of an existing one.

    The signing secret is only returned by Stripe when the endpoint is created.
    """
    print(f"\nWebhook URL: {webhook_url}")
    print(f"Events: {', '.join(WEBHOOK_EVENTS)}\n")

    for webhook in stripe.WebhookEndpoint.list(limit=100).data:
        if webhook.url != webhook_url:
            continue
        print(f"✓ Found existing webhook: {webhook.id}")
        if set(webhook.enabled_events) != set(WEBHOOK_EVENTS):
            stripe.WebhookEndpoint.modify(webhook.id, enabled_events=WEBHOOK_EVENTS)
            print("✓ Updated webhook events")
        print(f"⚠️  Copy the signing secret from https://dashboard.stripe.com/{'test/' if mode == 'test' else ''}webhooks")
        return {'id': webhook.id, 'secret': None}

    webhook = stripe.WebhookEndpoint.create(
        url=webhook_url,
        enabled_events=WEBHOOK_EVENTS,
        description=f"Collab billing webhook ({mode} mode)",
    )
    print(f"✓ Created webhook: {webhook.id}")
    return {'id': webhook.id, 'secret': getattr(webhook, 'secret', None)}


def print_env(plans: Dict[str, Dict[str, Any]], webhook: Optional[Dict[str, Any]]):
    print(f"\n{'='*60}")
    print("Add to backend .env:")
    print(f"{'='*60}\n")
    for key, info in plans.items():
        print(f"STRIPE_PRICE_{key.upper()}={info['price_id']}")
    if webhook and webhook.get('secret'):
        print(f"STRIPE_WEBHOOK_SECRET={webhook['secret']}")
    print()


def main():
    parser = argparse.ArgumentParser(description='Setup Stripe plans and billing webhook')
    parser.add_argument('--mode', required=True, choices=['test', 'live'],
                        help='Stripe mode: test (sandbox) or live (production)')
    parser.add_argument('--api-key', required=True, help='Stripe secret API key')
    parser.add_argument('--webhook-url', help='e.g. https://api.example.com/api/webhooks/stripe')
    args = parser.parse_args()

    if not validate_api_key(args.api_key, args.mode):
        sys.exit(1)

    stripe.api_key = args.api_key

    try:
        plans = create_or_update_plans(args.mode)
        webhook = create_or_update_webhook(args.webhook_url, args.mode) if args.webhook_url else None
    except stripe.error.StripeError as e:
        print(f"❌ Stripe API error: {e}")
        sys.exit(1)
    except Exception as e:
        print(f"❌ Unexpected error: {e}")
        traceback.print_exc()
        sys.exit(1)

    print_env(plans, webhook)


if __name__ == '__main__':
    main()
