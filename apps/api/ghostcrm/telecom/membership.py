from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from ghostcrm.core.auth import AuthUser
from ghostcrm.models.organization import OrganizationMember
from ghostcrm.telecom.errors import NoMembershipError


@dataclass(slots=True)
class Membership:
    organization_id: uuid.UUID
    user_id: str
    role: str


def resolve_membership(session: Session, user: AuthUser, requested_organization_id: str | None = None) -> Membership:
    """Pick the organization the caller acts for.

    An explicit ``X-Organization-Id`` must match one of the caller's
    memberships; without it the oldest membership wins.
    """
    if user.is_anonymous:
        raise NoMembershipError("caller is not signed in")

    query = select(OrganizationMember).where(OrganizationMember.user_id == user.sub)
    if requested_organization_id:
        try:
            requested = uuid.UUID(requested_organization_id)
        except ValueError as exc:
            raise NoMembershipError("organization id is not valid") from exc
        query = query.where(OrganizationMember.organization_id == requested)

    member = session.scalar(query.order_by(OrganizationMember.created_at.asc(), OrganizationMember.id.asc()))
    if member is None:
        raise NoMembershipError("caller has no organization membership")
    return Membership(organization_id=member.organization_id, user_id=member.user_id, role=member.role)
