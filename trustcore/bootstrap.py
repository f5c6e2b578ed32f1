"""Create or promote the first platform administrator.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng-Passw0rd' trustcore-bootstrap-admin

    trustcore-bootstrap-admin --email admin@example.com --password 'Str0ng-Passw0rd'

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must satisfy the password policy)
    SHARED_FS_ROOT: Directory holding the persisted store state
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

from trustcore.service.errors import ServiceError

BOOTSTRAP_CONTEXT_AGENT = "trustcore-bootstrap-admin"


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create an admin account, or grant ROLE_ADMIN to an existing one.

    Returns a dict with ``user_id``, ``email`` and ``status`` (``created``,
    ``promoted``, ``already_admin`` or ``dry_run``).
    """
    # Imported late so env defaults set by main() apply to Settings
    from trustcore.service.audit import RequestContext
    from trustcore.service.roles import ROLE_ADMIN, ROLE_USER
    from trustcore.service.runtime import get_runtime

    runtime = get_runtime()
    context = RequestContext(client_ip="localhost", user_agent=BOOTSTRAP_CONTEXT_AGENT)
    email = email.strip().lower()
    existing = runtime.store.get_user_by_email(email)

    if existing is not None:
        if runtime.roles.is_platform_admin(existing.id):
            print(f"User {email} already exists as admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.safeguards.grant_role(existing.id, ROLE_ADMIN, None, existing.id, context)
        print(f"Promoted existing user {email} to admin (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    runtime.credentials.policy.enforce(password)
    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    with runtime.store.transaction():
        user = runtime.store.create_user(email, email_verified=True)
        runtime.credentials.set_password(user.id, password)
        runtime.store.grant_role(user.id, ROLE_USER)
    runtime.safeguards.grant_role(user.id, ROLE_ADMIN, None, user.id, context)
    print(f"Created admin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap a platform administrator for trustcore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1

    # Bootstrap only writes to the store; shared rate-limit state is irrelevant
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        fields = exc.detail.get("fields", {}) if isinstance(exc.detail, dict) else {}
        for problems in fields.values():
            for problem in problems:
                print(f"       {problem}")
        return 1

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
