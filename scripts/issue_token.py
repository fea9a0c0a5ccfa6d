#!/usr/bin/env python3
import argparse
import os
import sys
from pathlib import Path

from cipherline.core.auth import TokenAuthenticator
from cipherline.server.config import load_settings


def main():
    ap = argparse.ArgumentParser(description="Issue a bearer token for a cipherline user")
    ap.add_argument("--user", required=True)
    ap.add_argument("--secret", help="Signing secret; defaults to the server config")
    ap.add_argument("--config", help="Server YAML config holding auth.secret")
    ap.add_argument("--ttl", type=int, default=None, help="Token lifetime in seconds")
    args = ap.parse_args()

    if args.secret:
        secret, ttl = args.secret, 86400
    else:
        try:
            settings = load_settings(Path(args.config) if args.config else None, env=os.environ)
        except ValueError as exc:
            print(exc, file=sys.stderr)
            sys.exit(2)
        secret, ttl = settings.auth.secret, settings.auth.token_ttl_secs

    if args.ttl is not None:
        ttl = args.ttl
    print(TokenAuthenticator(secret, ttl_secs=ttl).issue(args.user))


if __name__ == "__main__":
    main()
