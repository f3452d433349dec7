#!/usr/bin/env python3
"""
Legacy QR Code Tool.

WHAT:
    Encode chart state into the legacy QR blob format, or decode a blob
    (or a full legacy URL) into the query string the redirect would produce.

USAGE:
    # Decode a blob
    python scripts/legacy_qr.py decode eJwlyKsKgEAURdF...

    # Decode a full legacy link
    python scripts/legacy_qr.py decode "https://www.mortality.watch/?qr=eJwlyKsKgEAURdF..."

    # Encode state for a test QR code
    python scripts/legacy_qr.py encode '{"c": ["FRA", "BEL"], "e": 1}'

REFERENCES:
    - backend/app/services/legacy_qr.py
    - backend/app/middleware/legacy_qr.py
"""

import argparse
import json
import logging
import os
import sys
from urllib.parse import parse_qs, urlparse

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.services.legacy_qr import (  # noqa: E402
    DecodedLegacyParams,
    EXPLORER_PATH,
    decode_legacy_qr,
    encode_legacy_state,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _extract_blob(value: str) -> str:
    """Accept either a bare blob or a URL carrying ?qr=."""
    if "://" not in value and not value.startswith("/"):
        return value
    qr = parse_qs(urlparse(value).query).get("qr")
    return qr[0] if qr else ""


def decode_command(value: str) -> int:
    result = decode_legacy_qr(_extract_blob(value))
    if not isinstance(result, DecodedLegacyParams):
        logger.error(f"Not a decodable legacy QR value: {result.reason}")
        return 1

    for key, item in result.items():
        print(f"{key}={item}")
    query = result.to_query_string()
    print("")
    print(f"Redirect: {EXPLORER_PATH}?{query}" if query else f"Redirect: {EXPLORER_PATH}")
    return 0


def encode_command(state_json: str) -> int:
    try:
        state = json.loads(state_json)
    except json.JSONDecodeError as e:
        logger.error(f"State is not valid JSON: {e}")
        return 1
    if not isinstance(state, dict):
        logger.error("State must be a JSON object")
        return 1

    print(encode_legacy_state(state))
    return 0


def main():
    parser = argparse.ArgumentParser(description="Encode or decode legacy QR code state")
    subparsers = parser.add_subparsers(dest="command", help="Command")

    decode_parser = subparsers.add_parser("decode", help="Decode a blob or legacy URL")
    decode_parser.add_argument("value", help="Blob or URL containing ?qr=")

    encode_parser = subparsers.add_parser("encode", help="Encode a JSON state object")
    encode_parser.add_argument("state", help='JSON object, e.g. \'{"c": ["FRA"], "e": 1}\'')

    args = parser.parse_args()

    if args.command == "decode":
        sys.exit(decode_command(args.value))
    elif args.command == "encode":
        sys.exit(encode_command(args.state))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
