#!/usr/bin/env python3
"""
Setup Verification Script

Validates configuration and connections before running the booking service.
Run this after setting up your .env file to ensure the store, Redis and the
email service are reachable.

Usage:
    python scripts/verify_setup.py
"""

import asyncio
import os
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Load environment variables
from dotenv import load_dotenv
load_dotenv()


def print_header(title: str) -> None:
    """Print section header."""
    print(f"\n{'='*60}")
    print(f" {title}")
    print(f"{'='*60}")


def print_result(name: str, success: bool, message: str = "") -> None:
    """Print check result."""
    status = "[PASS]" if success else "[FAIL]"
    color = "\033[92m" if success else "\033[91m"
    reset = "\033[0m"
    msg = f" - {message}" if message else ""
    print(f"  {color}{status}{reset} {name}{msg}")


def check_env_file() -> bool:
    """Check if .env file exists."""
    env_path = project_root / ".env"
    exists = env_path.exists()
    if not exists:
        print_result(".env file", False, "File not found. Settings fall back to defaults")
    else:
        print_result(".env file", True, "Found")
    return exists


def uses_in_memory_store() -> bool:
    return os.getenv("USE_IN_MEMORY_STORE", "false").lower() in ("1", "true", "yes")


def check_required_vars() -> dict[str, bool]:
    """Check required environment variables."""
    results = {}

    required = [
        ("STORE_URL", "Required for the appointment store"),
        ("STORE_API_KEY", "Required for store authentication"),
        ("REDIS_URL", "Required for wizard sessions and realtime"),
    ]

    for var, description in required:
        value = os.getenv(var, "")

        if not value:
            if uses_in_memory_store() and var.startswith("STORE_"):
                print_result(var, True, "Not needed (in-memory store)")
                results[var] = True
                continue
            print_result(var, False, f"Not set - {description}")
            results[var] = False
        elif var == "STORE_API_KEY" and value == "dev-store-key-change-in-production":
            print_result(var, True, "Using dev key (change for production!)")
            results[var] = True
        else:
            # Mask sensitive values
            if "KEY" in var:
                masked = f"{value[:8]}...{value[-4:]}" if len(value) > 12 else "***"
            else:
                masked = value
            print_result(var, True, f"Set ({masked})")
            results[var] = True

    return results


def check_optional_vars() -> None:
    """Check optional environment variables."""
    optional = [
        ("APP_ENV", "development"),
        ("DEBUG", "false"),
        ("PORT", "8000"),
        ("USE_IN_MEMORY_STORE", "false"),
        ("EMAIL_SERVICE_URL", "http://localhost:5000"),
        ("DEFAULT_CANCELLATION_POLICY_HOURS", "24"),
        ("SLOT_REFRESH_INTERVAL", "0"),
    ]

    for var, default in optional:
        value = os.getenv(var, default)
        print_result(var, True, f"{value}")


async def check_store() -> bool:
    """Verify the appointment store answers."""
    try:
        from dentalbook.infra.store_client import get_store
        store = get_store()
        healthy = await store.ping()
        await store.close()

        if healthy:
            print_result("Store", True, "Reachable")
        else:
            print_result("Store", False, "Not reachable")
        return healthy

    except Exception as e:
        print_result("Store", False, str(e)[:50])
        return False


async def check_redis() -> bool:
    """Verify Redis connection."""
    try:
        from dentalbook.infra.redis import check_redis_health
        healthy = await check_redis_health()

        if healthy:
            print_result("Redis", True, "Connection successful")
        else:
            print_result("Redis", False, "Connection failed (will use fallback)")
        return healthy

    except Exception as e:
        print_result("Redis", False, str(e)[:50])
        return False


async def check_email_service() -> bool:
    """Check if the email service is reachable."""
    url = os.getenv("EMAIL_SERVICE_URL", "http://localhost:5000")

    try:
        import httpx

        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(url)

            if response.status_code < 500:
                print_result("Email service", True, f"Reachable at {url}")
                return True
            else:
                print_result("Email service", False, f"Responded with {response.status_code}")
                return False

    except Exception:
        print_result("Email service", False, f"Not reachable at {url}")
        return False


def check_dependencies() -> bool:
    """Check if required Python packages are installed."""
    required_packages = [
        "fastapi",
        "uvicorn",
        "pydantic",
        "pydantic_settings",
        "redis",
        "httpx",
        "dotenv",
    ]

    missing = []
    for package in required_packages:
        try:
            __import__(package)
        except ImportError:
            missing.append(package)

    if missing:
        print_result("Python packages", False, f"Missing: {', '.join(missing)}")
        return False
    else:
        print_result("Python packages", True, "All required packages installed")
        return True


async def main():
    """Run all verification checks."""
    print("\n" + "="*60)
    print(" dentalbook - Setup Verification")
    print("="*60)

    all_passed = True
    critical_failed = False

    print_header("Environment File")
    check_env_file()  # Non-critical

    print_header("Python Dependencies")
    if not check_dependencies():
        all_passed = False
        critical_failed = True

    print_header("Required Environment Variables")
    var_results = check_required_vars()
    if not all(var_results.values()):
        all_passed = False
        if not var_results.get("STORE_URL"):
            critical_failed = True

    print_header("Optional Environment Variables")
    check_optional_vars()

    print_header("Service Connections")

    # Store
    if uses_in_memory_store():
        print_result("Store", True, "In-memory store enabled")
    elif var_results.get("STORE_URL"):
        if not await check_store():
            all_passed = False
            critical_failed = True
    else:
        print_result("Store", False, "Skipped - STORE_URL not set")

    # Redis
    if var_results.get("REDIS_URL"):
        if not await check_redis():
            pass  # Redis failure is non-critical (graceful degradation)
    else:
        print_result("Redis", False, "Skipped - REDIS_URL not set")

    # Email service (optional - separate service)
    if os.getenv("EMAIL_ENABLED", "true").lower() in ("1", "true", "yes"):
        await check_email_service()  # Non-critical

    print_header("Summary")

    if critical_failed:
        print("\n  \033[91mCRITICAL: Some required services failed.\033[0m")
        print("  Please fix the issues above before running the application.")
        print("\n  Quick fixes:")
        if not var_results.get("STORE_URL"):
            print("  1. Add to .env: STORE_URL=https://<your-store-host>")
            print("     or run locally with USE_IN_MEMORY_STORE=true")
        print()
        return 1
    elif not all_passed:
        print("\n  \033[93mWARNING: Some optional checks failed.\033[0m")
        print("  The application may run with limited functionality.")
        print()
        return 0
    else:
        print("\n  \033[92mAll checks passed!\033[0m")
        print("  You can start the application with:")
        print("    uvicorn dentalbook.main:app --reload")
        print()
        return 0


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
