#!/usr/bin/env python
"""
Seed script to populate the database with sample data for local development.

Usage:
    python scripts/seed_data.py --apartments 3
"""

import argparse
import sys
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from propertyhub.auth.jwt import get_password_hash  # noqa: E402
from propertyhub.constants import PaymentStatus  # noqa: E402
from propertyhub.database import database  # noqa: E402
from propertyhub.models.models import Apartment, Owner, RentPayment, ServiceProvider, Tenant, User, utcnow  # noqa: E402
from propertyhub.services.apartments import create_apartment  # noqa: E402
from propertyhub.services.consistency import assign_tenant  # noqa: E402

DEMO_PASSWORD = "changeme123"


def get_or_create_user(session, model, email: str, **fields) -> User:
    user = session.query(User).filter(User.email == email).first()
    if user:
        return user
    user = model(email=email, hashed_password=get_password_hash(DEMO_PASSWORD), **fields)
    session.add(user)
    session.commit()
    return user


def seed_database(apartments: int) -> None:
    database.init(create_schema=True)
    with database.session() as session:
        owner = get_or_create_user(session, Owner, "owner@example.com", first_name="Olivia", last_name="Owner")
        tenant = get_or_create_user(session, Tenant, "tenant@example.com", first_name="Theo", last_name="Tenant")
        get_or_create_user(
            session,
            ServiceProvider,
            "provider@example.com",
            first_name="Pat",
            last_name="Provider",
            company_name="Fix-It Plumbing",
            service_types=["plumbing", "general"],
        )

        existing = session.query(Apartment).filter(Apartment.owner_id == owner.id).count()
        created = []
        for index in range(existing + 1, existing + max(apartments, 0) + 1):
            created.append(
                create_apartment(
                    session,
                    owner,
                    {
                        "apartment_number": f"A-{100 + index}",
                        "location": f"{index} Main Street, Springfield",
                        "rent_amount": Decimal("1000.00"),
                        "rent_due_day": 5,
                    },
                )
            )

        if created and tenant.current_apartment_id is None:
            home = assign_tenant(session, created[0], tenant, owner)
            session.add(
                RentPayment(
                    apartment_id=home.id,
                    tenant_id=tenant.id,
                    amount=home.rent_amount,
                    due_date=utcnow() + timedelta(days=2),
                    status=PaymentStatus.PENDING,
                )
            )
            session.commit()

        print(f"Seed complete. Created {len(created)} apartments (password for demo accounts: '{DEMO_PASSWORD}').")
    database.dispose()


def main():
    parser = argparse.ArgumentParser(description="Seed the PropertyHub database with sample data.")
    parser.add_argument("--apartments", type=int, default=3, help="Number of apartments to create for the demo owner")
    args = parser.parse_args()
    seed_database(args.apartments)


if __name__ == "__main__":
    main()
