from __future__ import annotations

import argparse
from collections.abc import Sequence

from backend.app.config import load_settings
from backend.app.repositories.api_key_repository import ApiKeyRepository
from backend.app.repositories.database import Database


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Manage caller API keys for the video digest service.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    create_parser = subparsers.add_parser("create", help="Create a new API key for a user.")
    create_parser.add_argument(
        "--user-id",
        required=True,
        help="User the key acts for; analytics and rate limits are attributed to it.",
    )
    create_parser.add_argument(
        "--label",
        default="",
        help="Human-readable label (for example: ios-app or ops-laptop).",
    )
    create_parser.add_argument(
        "--admin",
        action="store_true",
        help="Allow the key to read /admin/analytics endpoints.",
    )

    revoke_parser = subparsers.add_parser("revoke", help="Revoke an existing API key.")
    revoke_parser.add_argument(
        "--key-id",
        required=True,
        help="Key id (vdk_...).",
    )

    list_parser = subparsers.add_parser("list", help="List API keys.")
    list_parser.add_argument(
        "--all",
        action="store_true",
        help="Include revoked keys.",
    )
    list_parser.add_argument(
        "--user-id",
        default=None,
        help="Only list keys owned by this user.",
    )

    return parser.parse_args(argv)


def _print_key_list(
    repository: ApiKeyRepository,
    *,
    include_revoked: bool,
    user_id: str | None,
) -> None:
    keys = repository.list_keys(include_revoked=include_revoked, user_id=user_id)
    if not keys:
        print("No API keys found.")
        return

    print("key_id\tuser_id\tlabel\tadmin\tcreated_at\trevoked_at\tlast_used_at")
    for key in keys:
        print(
            "\t".join(
                [
                    key.key_id,
                    key.user_id,
                    key.label or "-",
                    "yes" if key.is_admin else "no",
                    key.created_at,
                    key.revoked_at or "-",
                    key.last_used_at or "-",
                ]
            )
        )


def main(argv: Sequence[str] | None = None) -> None:
    args = _parse_args(argv)
    settings = load_settings(validate_provider_secrets=False)
    database = Database(settings.db_path)
    database.initialize()
    repository = ApiKeyRepository(database)

    if args.command == "create":
        record, token = repository.create_key(
            user_id=args.user_id,
            label=args.label,
            is_admin=args.admin,
        )
        print(f"Created API key: {record.key_id}")
        print(f"User: {record.user_id}{' (admin)' if record.is_admin else ''}")
        print(f"Token (save now, only shown once): {token}")
        print(f"Authorization header: Bearer {token}")
        return

    if args.command == "revoke":
        revoked = repository.revoke_key(args.key_id)
        if revoked:
            print(f"Revoked API key: {args.key_id}")
        else:
            print(f"No active API key found for: {args.key_id}")
        return

    if args.command == "list":
        _print_key_list(repository, include_revoked=args.all, user_id=args.user_id)
        return

    raise RuntimeError(f"Unhandled command: {args.command}")


if __name__ == "__main__":
    main()
