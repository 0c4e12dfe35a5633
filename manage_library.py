#!/usr/bin/env python3
"""
Library Management Utility

This script provides maintenance commands for the ReadingBud database:
- Promote a user to admin (or back to user)
- Show document statistics
- Reconcile back-references left inconsistent by interrupted writes
"""

import asyncio
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from api.auth import password_manager, token_manager
from library.cascade import CascadeDeleter
from library.database import MongoDBManager
from library.errors import LibraryError
from library.models import Role
from library.reconciliation import ReferenceReconciler
from library.user_service import UserService
from utilities.config import config
from utilities.logger import setup_logging


def _db_manager() -> MongoDBManager:
    return MongoDBManager(
        connection_url=config.get_mongodb_url(),
        database_name=config.get_database_name()
    )


async def promote_user(email: str, role: str = "admin") -> bool:
    """Set the role of the user registered with the given email."""
    print(f"\n👤 SETTING ROLE '{role}' FOR {email}")
    print("="*80)

    try:
        target_role = Role(role)
    except ValueError:
        print(f"❌ Unknown role: {role}. Use one of: {', '.join(r.value for r in Role)}")
        return False

    db_manager = _db_manager()
    try:
        await db_manager.connect()
        users = UserService(db_manager, password_manager, token_manager, CascadeDeleter(db_manager))
        user = await users.set_role(email, target_role)
        print(f"✅ {user['full_name']} <{user['email']}> is now '{user['role']}'")
        return True
    except LibraryError as e:
        print(f"❌ {e.message}")
        return False
    finally:
        await db_manager.disconnect()


async def show_statistics() -> None:
    """Show document counts per collection."""
    print("\n📊 LIBRARY STATISTICS")
    print("="*80)

    db_manager = _db_manager()
    try:
        await db_manager.connect()
        stats = await db_manager.get_database_stats()

        print(f"👤 Users: {stats['users']}")
        print(f"📚 Books: {stats['books']}")
        print(f"📝 Reviews: {stats['reviews']}")
        print(f"🗂️  Collections: {stats['collections']}")
    finally:
        await db_manager.disconnect()


async def reconcile_references() -> None:
    """Repair dangling and missing back-references."""
    print("\n🧹 RECONCILING REFERENCES")
    print("="*80)

    db_manager = _db_manager()
    try:
        await db_manager.connect()
        result = await ReferenceReconciler(db_manager).run()

        for title, counts in (
            ("Orphans deleted", result.orphans_deleted),
            ("Dangling references removed", result.dangling_references_removed),
            ("Back-references restored", result.back_references_restored),
        ):
            print(f"{title}:")
            repaired = {key: count for key, count in counts.items() if count}
            if not repaired:
                print("   none")
            for key, count in sorted(repaired.items()):
                print(f"   {key}: {count}")

        if result.total_repairs > 0:
            print(f"✅ Reconciliation completed, {result.total_repairs} repairs")
        else:
            print("ℹ️  No inconsistent references found")
    finally:
        await db_manager.disconnect()


async def main():
    """Main function."""
    if len(sys.argv) < 2:
        print("Usage: python manage_library.py [promote|stats|reconcile] [email] [role]")
        print()
        print("Commands:")
        print("  promote    - Set a user's role (default: admin)")
        print("  stats      - Show document counts")
        print("  reconcile  - Repair dangling and missing back-references")
        print()
        print("Examples:")
        print("  python manage_library.py promote reader@example.com")
        print("  python manage_library.py promote reader@example.com user")
        print("  python manage_library.py reconcile")
        sys.exit(1)

    command = sys.argv[1].lower()

    # Setup logging
    setup_logging(
        log_level=config.log_level,
        log_format=config.log_format,
        log_file=config.log_file,
        debug=config.debug
    )

    if command == "promote":
        if len(sys.argv) < 3:
            print("❌ Error: email required for promote command")
            print("Usage: python manage_library.py promote <email> [role]")
            sys.exit(1)
        role = sys.argv[3] if len(sys.argv) > 3 else Role.ADMIN.value
        if not await promote_user(sys.argv[2], role):
            sys.exit(1)
    elif command == "stats":
        await show_statistics()
    elif command == "reconcile":
        await reconcile_references()
    else:
        print(f"❌ Unknown command: {command}")
        print("Available commands: promote, stats, reconcile")
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
