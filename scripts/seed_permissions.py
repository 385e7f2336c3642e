"""
Seed script to populate the default permission layers.

Run this script after database initialization to create:
- Global role defaults (the owner/manager/accounts/staff matrix)
- Plan presets for every plan that has none yet
- Optionally, a super admin from an existing user's email

Existing rows are left untouched, so the script can be re-run safely.

Usage:
    python -m scripts.seed_permissions
    python -m scripts.seed_permissions admin@example.com
"""
import asyncio
import sys
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db, init_db
from app.features.permissions.service import seed_global_defaults, seed_plan_presets
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)


async def promote_super_admin(db: AsyncSession, email: str) -> bool:
    """Flag an existing user as super admin."""
    result = await db.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()
    if user is None:
        log.warning(f"No user with email '{email}'; they must sign in once before promotion")
        return False
    user.is_super_admin = True
    log.info(f"Promoted {email} to super admin")
    return True


async def main(super_admin_email: Optional[str] = None):
    """Main function to seed the permission layers."""
    log.info("Starting permission seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    # Get database session
    async for db in get_db():
        try:
            created = await seed_global_defaults(db)
            log.info(f"Created {created} global role permissions")

            counts = await seed_plan_presets(db)
            for plan, count in counts.items():
                if count:
                    log.info(f"  - {plan}: {count} presets")
                else:
                    log.info(f"  - {plan}: presets already present, skipped")

            if super_admin_email:
                await promote_super_admin(db, super_admin_email)

            await db.commit()
            log.info("Permission seeding completed successfully!")

        except Exception as e:
            log.error(f"Error seeding permissions: {e}", exc_info=True)
            await db.rollback()
            raise

        break  # Only use first session


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None))
