from __future__ import annotations

from sqlalchemy import select

from .database import Base, engine, SessionLocal
from .models import ServiceTemplate


DEFAULT_TEMPLATES = [
    ("Sunday Service", 120, "Main"),
    ("Midweek Service", 90, "Main"),
    ("Youth Service", 90, None),
]


def upsert_defaults() -> int:
    """Create the default service templates that do not exist yet; returns how many were added."""
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    added = 0
    try:
        existing = set(db.execute(select(ServiceTemplate.name)).scalars().all())
        for name, duration, campus in DEFAULT_TEMPLATES:
            id_ = name.lower().replace(" ", "_")
            if name in existing or db.get(ServiceTemplate, id_):
                continue
            db.add(
                ServiceTemplate(
                    id=id_,
                    name=name,
                    default_duration_minutes=duration,
                    campus=campus,
                )
            )
            added += 1
        db.commit()
    finally:
        db.close()
    return added


def main() -> None:
    added = upsert_defaults()
    print(f"Seed complete ({added} templates added).")


if __name__ == "__main__":
    main()
