#!/usr/bin/env python3
"""
SpectraOps Test App - Error Generator

Raises a variety of errors and ships them to a running SpectraOps server
through the Python SDK. Useful for exercising batching, retry and the
dashboard listing by hand.

Usage:
    python error_generator.py --endpoint http://localhost:3000 --api-key KEY --random 25
"""

import argparse
import asyncio
import random
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from spectraops.sdk.client import SpectraOpsClient, SpectraOpsConfig
from spectraops.sdk.signals import ProcessSignals


# =============================================================================
# Error classes
# =============================================================================

class DatabaseConnectionError(Exception):
    pass


class APIRateLimitError(Exception):
    pass


class PaymentProcessingError(Exception):
    pass


class ExternalServiceError(Exception):
    pass


SAMPLE_TRANSACTIONS = ["txn-abc123", "txn-def456", "txn-ghi789", "txn-jkl012"]


# =============================================================================
# Error scenarios
# =============================================================================

def simulate_database_error():
    raise DatabaseConnectionError("PostgreSQL connection failed: connection refused (localhost:5432)")


def simulate_api_rate_limit():
    raise APIRateLimitError("Rate limit exceeded: 429 Too Many Requests - Stripe API")


def simulate_payment_error():
    transaction_id = random.choice(SAMPLE_TRANSACTIONS)
    raise PaymentProcessingError(f"Payment failed (transaction {transaction_id}): insufficient balance")


def simulate_external_service_error():
    raise ExternalServiceError("SMS delivery failed: Twilio unreachable (timeout)")


def simulate_division_by_zero():
    return 100 / 0


def simulate_key_error():
    data = {"name": "test", "value": 123}
    return data["missing_key"]


def simulate_type_error():
    return "Total: " + 42


def simulate_markup_error():
    raise ValueError("<script>alert('xss')</script>Rendered widget failed")


ERROR_SCENARIOS = {
    "database": {"func": simulate_database_error, "description": "Database connection error", "level": "error"},
    "rate_limit": {"func": simulate_api_rate_limit, "description": "API rate limit error", "level": "warning"},
    "payment": {"func": simulate_payment_error, "description": "Payment processing error", "level": "error"},
    "external": {"func": simulate_external_service_error, "description": "External service error", "level": "error"},
    "division": {"func": simulate_division_by_zero, "description": "Division by zero", "level": "error"},
    "key": {"func": simulate_key_error, "description": "KeyError - missing key", "level": "error"},
    "type": {"func": simulate_type_error, "description": "TypeError - str + int", "level": "error"},
    "markup": {"func": simulate_markup_error, "description": "Message with HTML (sanitized server-side)", "level": "info"},
}


def generate_single_error(client: SpectraOpsClient, error_type: str) -> bool:
    scenario = ERROR_SCENARIOS[error_type]
    try:
        scenario["func"]()
    except Exception as e:
        client.capture_error(e, severity=scenario["level"])
        print(f"  captured {type(e).__name__}: {scenario['description']}")
        return True
    return False


def list_error_types():
    print("\nAvailable error types:")
    print("=" * 60)
    for key, scenario in ERROR_SCENARIOS.items():
        print(f"  [{scenario['level']:7}] {key:12} - {scenario['description']}")
    print("=" * 60)


async def run(args: argparse.Namespace) -> None:
    client = SpectraOpsClient(signals=ProcessSignals())
    client.initialize(
        SpectraOpsConfig(
            endpoint=args.endpoint,
            api_key=args.api_key,
            batch_size=args.batch_size,
            environment=args.env,
            debug=True,
        )
    )

    if args.type:
        types = [args.type]
    else:
        types = [random.choice(list(ERROR_SCENARIOS)) for _ in range(args.random or 1)]

    for i, error_type in enumerate(types):
        print(f"[{i + 1}/{len(types)}]", end="")
        generate_single_error(client, error_type)
        await asyncio.sleep(args.delay)

    await client.flush()
    if client.pending_count:
        print(f"\n{client.pending_count} errors could not be delivered (kept in buffer)")
    else:
        print(f"\nDelivered {len(types)} errors")

    client.destroy()


def main():
    parser = argparse.ArgumentParser(description="SpectraOps Test App - Error Generator")
    parser.add_argument("--endpoint", default="http://localhost:3000", help="SpectraOps server base URL")
    parser.add_argument("--api-key", help="Project API key")
    parser.add_argument("--type", "-t", choices=list(ERROR_SCENARIOS.keys()), help="Error type to raise")
    parser.add_argument("--random", "-r", type=int, metavar="N", help="Raise N random errors")
    parser.add_argument("--batch-size", type=int, default=10, help="SDK batch size (default: 10)")
    parser.add_argument("--delay", "-d", type=float, default=0.1, help="Delay between errors in seconds")
    parser.add_argument("--env", default="development", choices=["development", "staging", "production"])
    parser.add_argument("--list", "-l", action="store_true", help="List error types")

    args = parser.parse_args()

    if args.list:
        list_error_types()
        return

    if not args.api_key:
        print("--api-key is required (create a project in the dashboard first)")
        parser.print_help()
        sys.exit(1)

    asyncio.run(run(args))


if __name__ == "__main__":
    main()
