from __future__ import annotations

import argparse
from datetime import datetime, timedelta

import jwt

ROLES = ("superadmin", "admin", "supervisor", "user")


def main() -> None:
    parser = argparse.ArgumentParser(description="Mint a bearer token for the WhatsApp Gateway API.")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--user-id", required=True, help="Token subject; owner id for phones.")
    parser.add_argument("--role", choices=ROLES, action="append", required=True)
    parser.add_argument("--hours", type=int, default=12)
    parser.add_argument("--algorithm", default="HS256")
    args = parser.parse_args()

    payload = {
        "sub": args.user_id,
        "roles": sorted(set(args.role)),
        "exp": datetime.utcnow() + timedelta(hours=args.hours),
    }
    print(jwt.encode(payload, args.secret, algorithm=args.algorithm))


if __name__ == "__main__":
    main()
