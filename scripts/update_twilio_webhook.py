#!/usr/bin/env python3
"""
Point a Twilio phone number at this server.

Updates the number's voice URL, voice fallback URL and status callback URL.
Defaults come from the environment (.env), so after a tunnel restart this is
usually just:

    python scripts/update_twilio_webhook.py --silent
"""

import argparse
import os
import re
import sys
from typing import Optional

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def print_ok(text: str) -> None:
    print(f"  [OK] {text}")


def print_error(text: str) -> None:
    print(f"  [ERR] {text}")


def build_url(server: str, path: str, port: str = "", params: str = "") -> Optional[str]:
    """Build an https webhook URL, or None when either part is missing."""
    if not server or not path:
        return None
    host = re.sub(r"^https?://", "", server.strip()).rstrip("/")
    url = f"https://{host}{':' + port if port else ''}{path}"
    if params:
        url += ("&" if "?" in url else "?") + params
    return url


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    from src.callagent.config import get_config

    config = get_config()
    parser = argparse.ArgumentParser(description="Update Twilio phone number webhooks")
    parser.add_argument("-n", "--number", default=config.twilio_phone_number, help="The Twilio phone number")
    parser.add_argument("-s", "--server", default=config.public_host, help="The server host")
    parser.add_argument("-p", "--port", default="", help="The server port (omit behind a tunnel)")
    parser.add_argument("-i", "--incoming", default="/incoming-call", help="Endpoint for incoming calls")
    parser.add_argument("-f", "--fail", default="/fail", help="Endpoint for primary handler failures")
    parser.add_argument("-c", "--callback", default="/status", help="Endpoint for status callbacks")
    parser.add_argument("-u", "--urlparams", default="", help="URL parameters appended to each webhook URL")
    parser.add_argument("--silent", action="store_true", help="Do not ask for confirmation")
    args = parser.parse_args(argv)

    if not args.number:
        parser.error("--number is required (or set TWILIO_PHONE_NUMBER)")
    if not args.server:
        parser.error("--server is required (or set PUBLIC_HOST)")
    return args


def main(argv: Optional[list] = None) -> int:
    args = parse_args(argv)

    from twilio.rest import Client as TwilioClient
    from src.callagent.config import get_config

    config = get_config()

    voice_url = build_url(args.server, args.incoming, args.port, args.urlparams)
    fallback_url = build_url(args.server, args.fail, args.port, args.urlparams)
    status_url = build_url(args.server, args.callback, args.port, args.urlparams)

    print(f"Phone Number: {args.number}")
    print(f"Voice URL: {voice_url or 'None'}")
    print(f"Fallback URL: {fallback_url or 'None'}")
    print(f"Status Callback URL: {status_url or 'None'}")

    if not args.silent:
        answer = input("Do you want to proceed with updating these URLs? [y/N] ").strip().lower()
        if answer not in ("y", "yes"):
            print("Update canceled by user.")
            return 0

    client = TwilioClient(config.twilio_account_sid, config.twilio_auth_token)
    try:
        numbers = client.incoming_phone_numbers.list(phone_number=args.number)
        if not numbers:
            print_error(f"No incoming phone number matches {args.number}")
            return 1
        updated = numbers[0].update(
            voice_url=voice_url,
            voice_fallback_url=fallback_url,
            status_callback=status_url,
        )
    except Exception as e:
        print_error(f"Failed to update phone number: {e}")
        return 1

    print_ok(f"Updated Phone Number: {updated.sid}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
