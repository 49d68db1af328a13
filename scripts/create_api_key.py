"""Create an API key for a user (or an admin key) and print the raw token once."""
from __future__ import annotations

import argparse

from dotenv import load_dotenv

load_dotenv()

from freelance_escrow.db import get_sessionmaker, init_engine  # noqa: E402
from freelance_escrow.models.api_key import ApiKey, ApiScope  # noqa: E402
from freelance_escrow.models.user import User  # noqa: E402
from freelance_escrow.utils.apikey import gen_key  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--name", required=True)
    parser.add_argument("--scope", choices=[scope.value for scope in ApiScope], default=ApiScope.admin.value)
    parser.add_argument("--user-id", type=int, default=None)
    args = parser.parse_args()

    scope = ApiScope(args.scope)
    if scope is not ApiScope.admin and args.user_id is None:
        parser.error("client and freelancer keys must be bound to --user-id")

    init_engine()
    db = get_sessionmaker()()
    try:
        if args.user_id is not None and db.get(User, args.user_id) is None:
            parser.error(f"user {args.user_id} does not exist")
        raw, prefix, key_hash = gen_key()
        api_key = ApiKey(
            name=args.name,
            prefix=prefix,
            key_hash=key_hash,
            scope=scope,
            is_active=True,
            user_id=args.user_id,
        )
        db.add(api_key)
        db.commit()
        db.refresh(api_key)

        print("==========================================")
        print(f"API key created (id={api_key.id}, scope={scope.value}, user={args.user_id})")
        print("Use it in your Authorization header:")
        print(f"    Authorization: Bearer {raw}")
        print("==========================================")
    finally:
        db.close()


if __name__ == "__main__":
    main()
