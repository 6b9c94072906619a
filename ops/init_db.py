#!/usr/bin/env python3
"""
Create the pipeline tables and optionally seed a tenant.
Usage: python ops/init_db.py [slug name phone_number_id [owner_phone]]
"""

import sys

from app.database import Base, SessionLocal, engine
from app.models import Tenant


def main(argv: list[str]) -> int:
    Base.metadata.create_all(bind=engine)
    print("Schema ready")

    if len(argv) < 3:
        return 0

    slug, name, phone_number_id = argv[:3]
    owner_phone = argv[3] if len(argv) > 3 else None
    db = SessionLocal()
    try:
        tenant = db.query(Tenant).filter(Tenant.slug == slug).first()
        if tenant is None:
            tenant = Tenant(slug=slug, name=name)
            db.add(tenant)
        tenant.name = name
        tenant.phone_number_id = phone_number_id
        tenant.owner_phone = owner_phone
        tenant.is_active = True
        db.commit()
        print(f"Tenant {tenant.slug}: id={tenant.id} phone_number_id={tenant.phone_number_id}")
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
