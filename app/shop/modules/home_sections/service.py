from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.shop.audit import record_event
from app.shop.errors import ApiError, NotFound
from app.shop.modules.home_sections.models import HomeSection
from app.shop.utils import iso, normalize_text, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.shop.models import User

TEXT_FIELDS = {
    "subtitle": "subtitle",
    "imageUrl": "image_url",
    "buttonText": "button_text",
    "buttonLink": "button_link",
}


def section_to_dict(h: HomeSection) -> dict[str, Any]:
    return {
        "id": h.id,
        "title": h.title,
        "subtitle": h.subtitle,
        "imageUrl": h.image_url,
        "buttonText": h.button_text,
        "buttonLink": h.button_link,
        "sort": h.sort,
        "isActive": h.is_active,
        "createdAt": iso(h.created_at),
        "updatedAt": iso(h.updated_at),
    }


def list_sections(s: "Session", *, include_inactive: bool = False) -> list[HomeSection]:
    q = s.query(HomeSection)
    if not include_inactive:
        q = q.filter(HomeSection.is_active.is_(True))
    return q.order_by(HomeSection.sort.asc(), HomeSection.id.asc()).all()


def get_section(s: "Session", section_id: int, *, include_inactive: bool = False) -> HomeSection:
    h = s.get(HomeSection, section_id)
    if h is None or (not h.is_active and not include_inactive):
        raise NotFound("Home section not found.")
    return h


def _apply(s: "Session", h: HomeSection, payload: dict, *, partial: bool) -> None:
    if not partial or "title" in payload:
        title = normalize_text(payload.get("title"))
        if not title:
            raise ApiError("Title is required.")
        dup = s.query(HomeSection.id).filter(HomeSection.title == title)
        if h.id is not None:
            dup = dup.filter(HomeSection.id != h.id)
        if dup.first() is not None:
            raise ApiError("A home section with this title already exists.")
        h.title = title
    for key, attr in TEXT_FIELDS.items():
        if key in payload:
            setattr(h, attr, normalize_text(payload.get(key)) or None)
    if "sort" in payload:
        sort = parse_int(payload.get("sort"))
        if sort is None:
            raise ApiError("sort must be an integer.")
        h.sort = sort
    if "isActive" in payload:
        h.is_active = bool(payload.get("isActive"))


def create_section(s: "Session", payload: dict, user: "User") -> HomeSection:
    now = datetime.utcnow()
    h = HomeSection(sort=0, is_active=True, created_at=now, updated_at=now)
    _apply(s, h, payload, partial=False)
    s.add(h)
    s.flush()
    record_event(s, actor=user, action="home_section.create", entity_type="HomeSection", entity_id=str(h.id), metadata={"title": h.title})
    return h


def update_section(s: "Session", h: HomeSection, payload: dict, user: "User") -> HomeSection:
    _apply(s, h, payload, partial=True)
    h.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="home_section.update", entity_type="HomeSection", entity_id=str(h.id), metadata={"fields": sorted(payload)})
    return h


def delete_section(s: "Session", h: HomeSection, user: "User") -> None:
    record_event(s, actor=user, action="home_section.delete", entity_type="HomeSection", entity_id=str(h.id), metadata={"title": h.title})
    s.delete(h)
