#!/usr/bin/env python3
"""
Reset dev environment: clears users, sessions, devices, reports and quota locks.

SAFETY FEATURES:
- Loads credentials from .env.local
- Refuses to run with PROD URLs or ENVIRONMENT=production
- Requires confirmation before deletion

Usage:
    python scripts/reset_dev_data.py
    python scripts/reset_dev_data.py --force  # Skip confirmation
    python scripts/reset_dev_data.py --seed   # Re-seed demo accounts and mock reports
"""

import argparse
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

# Load environment from .env.local (project root) before the store picks a backend
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env.local")
load_dotenv(project_root / ".env")  # Fallback

sys.path.insert(0, str(project_root / "backend"))

import store  # noqa: E402


class Colors:
    RED = '\033[91m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    BOLD = '\033[1m'
    END = '\033[0m'


def print_colored(message: str, color: str):
    print(f"{color}{message}{Colors.END}")


def is_production_url(url: str) -> bool:
    if not url:
        return False
    url_lower = url.lower()
    return "prod" in url_lower or "production" in url_lower


def validate_environment():
    """Ensure we're using DEV credentials, not production."""
    environment = os.getenv("ENVIRONMENT", "development")
    if environment == "production":
        raise ValueError(
            "ENVIRONMENT=production detected!\n"
            "This script is for DEV only. Set ENVIRONMENT=development"
        )

    for name in ("REDIS_URL", "UPSTASH_REDIS_URL", "UPSTASH_REDIS_REST_URL"):
        if is_production_url(os.getenv(name, "")):
            raise ValueError(
                f"PRODUCTION URL DETECTED in {name}!\n"
                "This script is for DEV only. Check your .env file."
            )

    return True


def reset_store():
    """Clear every key family the API writes."""
    backend = type(store.get_store()).__name__
    print(f"🗑️  Clearing {backend}...")

    steps = [
        ("users and sessions", store.clear_users),
        ("devices and anonymous posts", store.clear_devices),
        ("reports", store.clear_reports),
        ("quota locks", store.clear_locks),
    ]
    ok = True
    for label, clear in steps:
        try:
            clear()
            print_colored(f"   ✓ Cleared {label}", Colors.GREEN)
        except Exception as e:
            print_colored(f"   ✗ Failed to clear {label}: {e}", Colors.RED)
            ok = False
    return ok


def seed():
    from main import seed_mock_data

    print("🌱 Seeding demo data...")
    try:
        counts = seed_mock_data()
    except Exception as e:
        print_colored(f"   ✗ Seeding failed: {e}", Colors.RED)
        return False
    print_colored(
        f"   ✓ Added {counts['users_added']} demo users and {counts['reports_added']} reports",
        Colors.GREEN,
    )
    return True


def main():
    parser = argparse.ArgumentParser(description="Reset DEV environment")
    parser.add_argument("--force", action="store_true", help="Skip confirmation")
    parser.add_argument("--seed", action="store_true", help="Re-seed demo accounts and mock reports")
    args = parser.parse_args()

    print_colored("=" * 50, Colors.BOLD)
    print_colored("  DEV ENVIRONMENT RESET", Colors.BOLD)
    print_colored("=" * 50, Colors.BOLD)
    print()

    try:
        validate_environment()
        print_colored("✓ Environment validated (DEV mode)", Colors.GREEN)
        print()
    except ValueError as e:
        print_colored(f"❌ SAFETY CHECK FAILED: {e}", Colors.RED)
        return 1

    if not args.force:
        print_colored("⚠️  This will DELETE ALL users, devices and reports!", Colors.YELLOW)
        print()
        response = input("Type 'DELETE' to confirm: ")
        if response != "DELETE":
            print_colored("❌ Aborted.", Colors.RED)
            return 1
        print()

    success = reset_store()
    if success and args.seed:
        print()
        success = seed()

    print()
    if success:
        print_colored("🎉 Dev environment reset complete!", Colors.GREEN)
    else:
        print_colored("⚠️  Some operations failed. Check output above.", Colors.YELLOW)
    return 0 if success else 1


if __name__ == "__main__":
    sys.exit(main())
