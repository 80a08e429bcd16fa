"""Seed business entities, the service catalog and an admin account.

Idempotent: existing entities and services (matched by name) are updated
in place, and an existing admin keeps their password.

Run inside Docker:
    docker compose exec backend python -m scripts.seed_entities
"""

import asyncio
import os
import sys
from pathlib import Path

# Add backend to path so imports work when run as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import select

from memberhub.auth.security import hash_password
from memberhub.config import settings
from memberhub.database import async_session_factory
from memberhub.models.business_entity import BusinessEntity, ServiceOffering
from memberhub.models.user import User

# ---------------------------------------------------------------------------
# Seed data definitions
# ---------------------------------------------------------------------------

ADMIN_USER = {
    "email": os.environ.get("SEED_ADMIN_EMAIL", "admin@memberhub.local"),
    "password": os.environ.get("SEED_ADMIN_PASSWORD", "admin1234"),
    "first_name": "Admin",
    "last_name": "User",
}

ENTITIES = [
    {
        "name": "aura_mma",
        "display_name": "Aura MMA",
        "description": "Premier martial arts training facility",
    },
    {
        "name": "aura_tuition",
        "display_name": "Aura Tuition Company",
        "description": "1-on-1 personal training & coaching",
    },
    {
        "name": "aura_womens",
        "display_name": "Aura Women's Gym",
        "description": "Dedicated women-only fitness space",
    },
    {
        "name": "aura_wellness",
        "display_name": "Aura Wellness Center",
        "description": "Recovery, wellness & mental health",
    },
]

# (service name, category, preferred entity name)
SERVICES = [
    ("Martial Arts Training", "martial_arts", "aura_mma"),
    ("Personal Training", "personal_training", "aura_tuition"),
    ("Women's Classes", "womens_fitness", "aura_womens"),
    ("Wellness & Recovery", "wellness", "aura_wellness"),
]


# ---------------------------------------------------------------------------
# Main seed function
# ---------------------------------------------------------------------------


async def seed() -> None:
    async with async_session_factory() as session:
        # ------------------------------------------------------------------
        # 1. Business entities
        # ------------------------------------------------------------------
        entities: dict[str, BusinessEntity] = {}
        for data in ENTITIES:
            result = await session.execute(select(BusinessEntity).where(BusinessEntity.name == data["name"]))
            entity = result.scalar_one_or_none()
            if entity is None:
                entity = BusinessEntity(
                    vat_threshold=settings.default_vat_threshold_gbp,
                    status="ACTIVE",
                    **data,
                )
                session.add(entity)
                print(f"✅ Created business entity: {data['display_name']}")
            else:
                entity.display_name = data["display_name"]
                entity.description = data["description"]
                print(f"   Updated business entity: {data['display_name']}")
            await session.flush()
            entities[entity.name] = entity

        # ------------------------------------------------------------------
        # 2. Service catalog
        # ------------------------------------------------------------------
        for name, category, entity_name in SERVICES:
            result = await session.execute(select(ServiceOffering).where(ServiceOffering.name == name))
            service = result.scalar_one_or_none()
            if service is None:
                service = ServiceOffering(name=name, category=category)
                session.add(service)
            service.preferred_entity_id = entities[entity_name].id
            service.is_active = True
        await session.flush()
        print(f"✅ Seeded {len(SERVICES)} services")

        # ------------------------------------------------------------------
        # 3. Admin user
        # ------------------------------------------------------------------
        result = await session.execute(select(User).where(User.email == ADMIN_USER["email"]))
        admin = result.scalar_one_or_none()
        if admin is None:
            admin = User(
                email=ADMIN_USER["email"],
                hashed_password=hash_password(ADMIN_USER["password"]),
                first_name=ADMIN_USER["first_name"],
                last_name=ADMIN_USER["last_name"],
                role="admin",
                is_active=True,
            )
            session.add(admin)
            print(f"✅ Created admin user: {ADMIN_USER['email']}")
        else:
            admin.role = "admin"
            print(f"   Admin user {ADMIN_USER['email']} already exists")

        await session.commit()

    print("🎉 Done! Log in at /api/v1/auth/login")


if __name__ == "__main__":
    asyncio.run(seed())
