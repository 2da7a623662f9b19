#!/usr/bin/env python3
"""Seed a development database with sample Kita data.

Creates:
  - 1 SUPER_ADMIN (institution-less)
  - 2 institutions: "Kita Sonnenschein" and "Kita Regenbogen"
  - per institution: 1 admin, 2 educators, 3 parents, 2 groups, 4 children
  - guardian links; some parents have given app consent, one child has
    paper (manual) consent only, one child has no consent at all
  - a few messages, notes and personal tasks so exports are non-empty

Idempotent: safe to run multiple times - existing records identified by
email / name are skipped rather than duplicated.

Usage:
    # From project root (PostgreSQL must be running and migrated)
    python scripts/seed.py

    # Local SQLite file, schema created on the fly
    DATABASE_URL=sqlite+aiosqlite:///kita.db python scripts/seed.py
"""

from __future__ import annotations

import asyncio
import sys
from datetime import UTC, date, datetime
from pathlib import Path

# ---------------------------------------------------------------------------
# Ensure the project root is on sys.path so "kitagov.*" imports work whether
# this script is run directly or via "python scripts/seed.py".
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

INSTITUTIONS: list[dict] = [
    {
        "name": "Kita Sonnenschein",
        "slug": "sonnenschein",
        "address": "Lindenstraße 12, 10969 Berlin",
        "groups": ["Marienkäfer", "Igel"],
        "children": [
            # name, birth date, group index, parent indices, manual consent
            ("Emma Schulz", date(2021, 4, 12), 0, [0], False),
            ("Leon Weber", date(2020, 11, 3), 0, [1], False),
            ("Mia Wagner", date(2021, 1, 27), 1, [2], True),
            ("Paul Becker", date(2022, 6, 9), 1, [], False),
        ],
    },
    {
        "name": "Kita Regenbogen",
        "slug": "regenbogen",
        "address": "Bergmannstraße 40, 10961 Berlin",
        "groups": ["Schmetterlinge", "Füchse"],
        "children": [
            ("Noah Hoffmann", date(2020, 8, 19), 0, [0, 1], False),
            ("Lina Koch", date(2021, 3, 2), 0, [1], False),
            ("Ben Richter", date(2022, 2, 14), 1, [2], True),
            ("Clara Klein", date(2021, 9, 30), 1, [2], False),
        ],
    },
]

# Parents at these indices have given app consent
CONSENTING_PARENTS = {0, 1}


async def seed() -> None:
    """Main seed routine - idempotent."""
    from sqlalchemy import select

    from kitagov.config import get_settings
    from kitagov.database import Base, close_db, get_engine, init_db, session_scope
    from kitagov.models import (
        Child,
        Group,
        Institution,
        Message,
        Note,
        PersonalTask,
        User,
        UserRole,
    )
    from kitagov.telemetry import configure_logging

    settings = get_settings()
    configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)
    init_db(settings)
    if settings.database_url.startswith("sqlite"):
        # Local SQLite runs skip Alembic
        async with get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    now = datetime.now(UTC)

    async def get_or_create_user(db, *, email, name, role, institution_id, consent=False):
        result = await db.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()
        if user is not None:
            print(f"  [~] User exists:  {email}")
            return user
        user = User(
            email=email,
            name=name,
            role=role,
            institution_id=institution_id,
            consent_given=consent,
            consent_date=now if consent else None,
        )
        db.add(user)
        await db.flush()
        print(f"  [+] User created: {email} (role={role})")
        return user

    async with session_scope() as db:
        super_admin = await get_or_create_user(
            db,
            email="super@kitagov.dev",
            name="Plattform Admin",
            role=UserRole.SUPER_ADMIN,
            institution_id=None,
        )

        for inst_data in INSTITUTIONS:
            # --------------------------------------------------------------
            # Institution
            # --------------------------------------------------------------
            result = await db.execute(
                select(Institution).where(Institution.name == inst_data["name"])
            )
            institution = result.scalar_one_or_none()
            if institution is not None:
                print(f"  [~] Institution exists:  {institution.name}")
                continue
            institution = Institution(name=inst_data["name"], address=inst_data["address"])
            db.add(institution)
            await db.flush()
            print(f"  [+] Institution created: {institution.name} ({institution.id})")

            slug = inst_data["slug"]

            # --------------------------------------------------------------
            # Staff and guardians
            # --------------------------------------------------------------
            admin = await get_or_create_user(
                db,
                email=f"leitung@{slug}.dev",
                name=f"Leitung {institution.name}",
                role=UserRole.ADMIN,
                institution_id=institution.id,
            )
            educators = [
                await get_or_create_user(
                    db,
                    email=f"erzieher{i + 1}@{slug}.dev",
                    name=f"Erzieher:in {i + 1}",
                    role=UserRole.EDUCATOR,
                    institution_id=institution.id,
                )
                for i in range(2)
            ]
            parents = [
                await get_or_create_user(
                    db,
                    email=f"eltern{i + 1}@{slug}.dev",
                    name=f"Elternteil {i + 1}",
                    role=UserRole.PARENT,
                    institution_id=institution.id,
                    consent=i in CONSENTING_PARENTS,
                )
                for i in range(3)
            ]

            # --------------------------------------------------------------
            # Groups and children
            # --------------------------------------------------------------
            groups = []
            for idx, group_name in enumerate(inst_data["groups"]):
                group = Group(institution_id=institution.id, name=group_name)
                group.educators = [educators[idx % len(educators)]]
                db.add(group)
                groups.append(group)
            await db.flush()

            for name, birth_date, group_idx, parent_idx, manual in inst_data["children"]:
                child_parents = [parents[i] for i in parent_idx]
                child = Child(
                    institution_id=institution.id,
                    group_id=groups[group_idx].id,
                    name=name,
                    birth_date=birth_date,
                    consent_given=any(p.consent_given for p in child_parents),
                    consent_date=now if any(p.consent_given for p in child_parents) else None,
                    manual_consent_given=manual,
                    manual_consent_date=now if manual else None,
                    manual_consent_set_by=admin.id if manual else None,
                )
                child.parents = child_parents
                db.add(child)
                await db.flush()
                print(f"  [+] Child created: {name} (group={groups[group_idx].name})")

                db.add(
                    Note(
                        child_id=child.id,
                        educator_id=educators[0].id,
                        content=f"{name} hat heute gut gegessen und mittags geschlafen.",
                    )
                )

            # --------------------------------------------------------------
            # Communication
            # --------------------------------------------------------------
            db.add(
                Message(
                    sender_id=admin.id,
                    institution_id=institution.id,
                    content="Am Freitag bleibt die Kita wegen Teamfortbildung geschlossen.",
                )
            )
            db.add(
                Message(
                    sender_id=parents[0].id,
                    institution_id=institution.id,
                    group_id=groups[0].id,
                    content="Wir holen heute etwas früher ab.",
                )
            )
            db.add(PersonalTask(user_id=educators[0].id, title="Portfolio-Ordner aktualisieren"))
            await db.flush()

    divider = "=" * 72
    print(f"\n{divider}")
    print("SEED COMPLETE")
    print(divider)
    print(f"  Super admin : {super_admin.email}")
    for inst_data in INSTITUTIONS:
        print(f"  {inst_data['name']:<20}: leitung@{inst_data['slug']}.dev")
    print(f"{divider}\n")

    await close_db()


if __name__ == "__main__":
    asyncio.run(seed())
