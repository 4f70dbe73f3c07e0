from __future__ import annotations

from sqlalchemy.orm import Session

from .models import Business, Hotel, Omd


def lookup_omd(s: Session, slug: str) -> Omd | None:
    slug = (slug or "").strip().lower()
    if not slug:
        return None
    return s.query(Omd).filter(Omd.slug == slug).first()


def hotels_for_omd(s: Session, omd_id: str) -> list[Hotel]:
    """Hotels of the destination's active businesses."""
    return (
        s.query(Hotel)
        .join(Business, Business.id == Hotel.business_id)
        .filter(Business.omd_id == omd_id)
        .filter(Business.status == "active")
        .all()
    )
