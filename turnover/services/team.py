"""Team roster synchronization and actor resolution helpers."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import Role, TeamMember
from ..schemas import TeamMemberSyncItem


def sync_team_members(session: Session, items: list[TeamMemberSyncItem]) -> tuple[list[TeamMember], list[str]]:
    """Upsert the roster; members missing from the payload are deactivated."""

    existing = {m.id: m for m in session.execute(select(TeamMember)).scalars().all()}

    seen_ids: set[str] = set()
    deactivated_ids: set[str] = set()

    for item in items:
        member = existing.get(item.id)
        if member is None:
            member = TeamMember(
                id=item.id,
                name=item.name.strip(),
                role=Role(item.role),
                active=item.active,
            )
            session.add(member)
        else:
            was_active = bool(member.active)
            member.name = item.name.strip()
            member.role = Role(item.role)
            member.active = item.active
            if was_active and not member.active:
                deactivated_ids.add(member.id)
        seen_ids.add(item.id)

    for member in existing.values():
        if member.id not in seen_ids and member.active:
            member.active = False
            deactivated_ids.add(member.id)

    session.commit()

    rows = list_team_members(session)
    return rows, sorted(deactivated_ids)


def list_team_members(session: Session) -> list[TeamMember]:
    return session.execute(select(TeamMember).order_by(TeamMember.name.asc())).scalars().all()


def resolve_actor(session: Session, actor_team_member_id: str | None) -> TeamMember | None:
    """Resolve an actor id to an active team member; unknown ids return None."""

    if not actor_team_member_id:
        return None
    member = session.get(TeamMember, actor_team_member_id)
    if member is None or not member.active:
        return None
    return member
