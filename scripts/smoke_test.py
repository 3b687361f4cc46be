#!/usr/bin/env python3
"""
Smoke Test Script

Validates configuration and connectivity without making a real call.

Checks:
1. Required dependencies import
2. Environment variables are set (without printing secrets)
3. The configured LLM model exists via API
4. FastAPI app answers /health and the TwiML webhook
"""

import asyncio
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def print_header(text: str) -> None:
    """Print a section header."""
    print(f"\n{'=' * 50}")
    print(f" {text}")
    print('=' * 50)


def print_ok(text: str) -> None:
    """Print success message."""
    print(f"  [OK] {text}")


def print_error(text: str) -> None:
    """Print error message."""
    print(f"  [ERR] {text}")


def print_warn(text: str) -> None:
    """Print warning message."""
    print(f"  [WARN] {text}")


def check_dependencies() -> bool:
    """Check that required dependencies are importable."""
    print_header("Checking Dependencies")

    dependencies = [
        ("fastapi", "FastAPI"),
        ("uvicorn", "Uvicorn"),
        ("websockets", "WebSockets"),
        ("openai", "OpenAI SDK"),
        ("twilio", "Twilio SDK"),
        ("structlog", "Structlog"),
        ("msgspec", "msgspec"),
        ("httpx", "HTTPX"),
    ]

    all_ok = True
    for module, name in dependencies:
        try:
            __import__(module)
            print_ok(name)
        except ImportError as e:
            print_error(f"{name}: {e}")
            all_ok = False

    print("\nOptional dependencies:")
    try:
        __import__("uvloop")
        print_ok("uvloop")
    except ImportError:
        print_warn("uvloop: not installed")

    return all_ok


def check_env_vars() -> bool:
    """Check that the configuration validates."""
    print_header("Checking Environment Variables")

    from src.callagent.config import ConfigError, get_config

    config = get_config()
    try:
        config.validate()
    except ConfigError as e:
        print_error(str(e))
        return False

    print_ok(f"PUBLIC_HOST: {config.public_host}")
    print_ok(f"LLM: {config.llm_provider} / {config.llm_model}")
    print_ok(f"TTS: {config.tts_provider}")
    if not (config.twilio_account_sid and config.twilio_auth_token):
        print_warn("Twilio credentials not set: transfers and SMS confirmations are disabled")
    if not config.transfer_number:
        print_warn("TRANSFER_NUMBER not set: live transfers are disabled")
    return True


async def check_llm_model() -> bool:
    """Validate the configured LLM model exists."""
    print_header("Validating LLM Model")

    from src.callagent.config import get_config
    from src.callagent.llm import validate_model

    try:
        await validate_model(get_config())
    except SystemExit as e:
        print_error(str(e))
        return False
    print_ok("Model exists")
    return True


def check_http_endpoints() -> bool:
    """Check /health and the TwiML webhook without starting the lifespan."""
    print_header("Testing HTTP Endpoints")

    try:
        from fastapi.testclient import TestClient
        from server.app import app

        client = TestClient(app)
        health = client.get("/health")
        twiml = client.post("/incoming-call")
    except Exception as e:
        print_error(f"Failed to test endpoints: {e}")
        return False

    ok = True
    if health.status_code == 200 and health.json().get("status") == "healthy":
        print_ok("Health endpoint returned healthy")
    else:
        print_error(f"Health endpoint returned status {health.status_code}")
        ok = False

    if twiml.status_code == 200 and "<Stream" in twiml.text:
        print_ok("TwiML webhook returned a Stream")
    else:
        print_error(f"TwiML webhook returned status {twiml.status_code}")
        ok = False
    return ok


async def main() -> int:
    """Run all smoke tests."""
    print("\n" + "=" * 50)
    print(" PHONE CALL AGENT - SMOKE TEST")
    print("=" * 50)

    results = []
    results.append(("Dependencies", check_dependencies()))
    env_ok = check_env_vars()
    results.append(("Environment Variables", env_ok))
    if env_ok:
        results.append(("LLM Model", await check_llm_model()))
    results.append(("HTTP Endpoints", check_http_endpoints()))

    print_header("Summary")

    all_passed = True
    for name, passed in results:
        if passed:
            print_ok(name)
        else:
            print_error(name)
            all_passed = False

    print()

    if all_passed:
        print("[OK] All checks passed!")
        print("\nNext steps:")
        print("  1. Run 'python -m server.app' to start the server")
        print("  2. Expose the port with a tunnel and set PUBLIC_HOST (or PUBLIC_HOST_FILE)")
        print("  3. Run 'python scripts/update_twilio_webhook.py' to point your number here")
        print("  4. Make a test call!")
        return 0

    print("[ERR] Some checks failed. Fix the issues above and try again.")
    return 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
