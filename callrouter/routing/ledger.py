"""Persistence helpers the engine uses for incidents, attempts and events."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from callrouter.models.call_attempt import AttemptResult, CallAttempt
from callrouter.models.incident import Incident, IncidentStatus, RoutingState
from callrouter.models.incident_event import IncidentEvent
from callrouter.models.site import Site
from callrouter.models.user import User
from callrouter.routing.errors import NotFound

OPEN_STATUSES = (
    IncidentStatus.OPEN.value,
    IncidentStatus.EN_ROUTE.value,
    IncidentStatus.ON_SITE.value,
)


class IncidentLedger:
    """Reads and appends incident, attempt and event rows for one session."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # ── incidents ────────────────────────────────────────────

    async def get_incident(self, incident_id: int) -> Incident:
        result = await self.session.execute(select(Incident).where(Incident.id == incident_id))
        incident = result.scalar_one_or_none()
        if incident is None:
            raise NotFound("incident", incident_id)
        return incident

    async def find_by_external_id(self, external_id: str) -> Optional[Incident]:
        result = await self.session.execute(
            select(Incident).where(Incident.external_id == external_id)
        )
        return result.scalar_one_or_none()

    async def create_incident(
        self,
        *,
        created_at: datetime,
        business_hours: bool,
        caller_id: str | None,
        external_id: str | None = None,
        site_id: int | None = None,
    ) -> Incident:
        incident = Incident(
            external_id=external_id,
            created_at=created_at,
            updated_at=created_at,
            business_hours=business_hours,
            caller_id=caller_id,
            site_id=site_id,
            status=IncidentStatus.OPEN.value,
            critical=False,
            answered_unclaimed=False,
            follow_up_required=False,
            routing_state=RoutingState.ROUTING.value,
            ladder_json=[],
            current_step=0,
            attempted_user_ids_json=[],
        )
        self.session.add(incident)
        await self.session.flush()
        return incident

    async def list_open(self) -> list[Incident]:
        result = await self.session.execute(
            select(Incident)
            .where(Incident.status.in_(OPEN_STATUSES))
            .order_by(desc(Incident.created_at), desc(Incident.id))
        )
        return list(result.scalars().all())

    async def list_unclaimed(self) -> list[Incident]:
        result = await self.session.execute(
            select(Incident)
            .where(
                Incident.status == IncidentStatus.OPEN.value,
                Incident.assigned_user_id.is_(None),
            )
            .order_by(desc(Incident.created_at), desc(Incident.id))
        )
        return list(result.scalars().all())

    async def list_for_user(self, user_id: int) -> list[Incident]:
        result = await self.session.execute(
            select(Incident)
            .where(Incident.assigned_user_id == user_id)
            .order_by(desc(Incident.created_at), desc(Incident.id))
        )
        return list(result.scalars().all())

    async def awaiting_claim_since(self, cutoff: datetime) -> list[int]:
        """Ids of answered incidents still unclaimed at ``cutoff``."""
        result = await self.session.execute(
            select(Incident.id).where(
                Incident.routing_state == RoutingState.AWAITING_CLAIM.value,
                Incident.answered_unclaimed.is_(False),
                Incident.answered_at <= cutoff,
            )
        )
        return [int(incident_id) for incident_id in result.scalars().all()]

    # ── call attempts ────────────────────────────────────────

    async def create_attempt(
        self,
        incident_id: int,
        step: int,
        target_user_id: int,
        started_at: datetime,
    ) -> CallAttempt:
        attempt = CallAttempt(
            incident_id=incident_id,
            step=step,
            target_user_id=target_user_id,
            started_at=started_at,
            result=AttemptResult.RINGING.value,
        )
        self.session.add(attempt)
        await self.session.flush()
        return attempt

    async def find_ringing_attempt(self, incident_id: int, user_id: int) -> Optional[CallAttempt]:
        result = await self.session.execute(
            select(CallAttempt)
            .where(
                CallAttempt.incident_id == incident_id,
                CallAttempt.target_user_id == user_id,
                CallAttempt.result == AttemptResult.RINGING.value,
            )
            .order_by(desc(CallAttempt.id))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def ringing_attempts(self, incident_id: int, step: int | None = None) -> list[CallAttempt]:
        query = select(CallAttempt).where(
            CallAttempt.incident_id == incident_id,
            CallAttempt.result == AttemptResult.RINGING.value,
        )
        if step is not None:
            query = query.where(CallAttempt.step == step)
        result = await self.session.execute(query.order_by(CallAttempt.id))
        return list(result.scalars().all())

    async def stale_ringing(self, cutoff: datetime) -> list[CallAttempt]:
        """Attempts still ringing that started at or before ``cutoff``."""
        result = await self.session.execute(
            select(CallAttempt)
            .where(
                CallAttempt.result == AttemptResult.RINGING.value,
                CallAttempt.started_at <= cutoff,
            )
            .order_by(CallAttempt.id)
        )
        return list(result.scalars().all())

    @staticmethod
    def finish_attempt(
        attempt: CallAttempt,
        result: AttemptResult,
        ended_at: datetime,
        decline_reason: str | None = None,
        decline_reason_text: str | None = None,
    ) -> None:
        attempt.result = result.value
        attempt.ended_at = ended_at
        if decline_reason is not None:
            attempt.decline_reason = decline_reason
        if decline_reason_text is not None:
            attempt.decline_reason_text = decline_reason_text

    async def attempts_for(self, incident_id: int) -> list[CallAttempt]:
        result = await self.session.execute(
            select(CallAttempt)
            .where(CallAttempt.incident_id == incident_id)
            .order_by(CallAttempt.started_at, CallAttempt.id)
        )
        return list(result.scalars().all())

    # ── events ───────────────────────────────────────────────

    async def log_event(
        self,
        incident_id: int,
        event_type: str,
        at: datetime,
        user_id: int | None = None,
        payload: dict[str, Any] | None = None,
    ) -> IncidentEvent:
        event = IncidentEvent(
            incident_id=incident_id,
            type=event_type,
            user_id=user_id,
            at=at,
            payload_json=payload or {},
        )
        self.session.add(event)
        await self.session.flush()
        return event

    async def events_for(self, incident_id: int, event_type: str | None = None) -> list[IncidentEvent]:
        query = select(IncidentEvent).where(IncidentEvent.incident_id == incident_id)
        if event_type:
            query = query.where(IncidentEvent.type == event_type)
        result = await self.session.execute(query.order_by(IncidentEvent.at, IncidentEvent.id))
        return list(result.scalars().all())

    # ── users and sites ──────────────────────────────────────

    async def get_user(self, user_id: int) -> User:
        result = await self.session.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if user is None:
            raise NotFound("user", user_id)
        return user

    async def users_by_id(self, user_ids: list[int]) -> dict[int, User]:
        if not user_ids:
            return {}
        result = await self.session.execute(select(User).where(User.id.in_(user_ids)))
        return {user.id: user for user in result.scalars().all()}

    async def find_user_by_phone(self, phone: str) -> User:
        result = await self.session.execute(
            select(User).where(User.phone == phone).order_by(User.id).limit(1)
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise NotFound("user with phone", phone)
        return user

    async def get_site(self, site_id: int) -> Optional[Site]:
        result = await self.session.execute(select(Site).where(Site.id == site_id))
        return result.scalar_one_or_none()

    async def match_site_by_phone(self, phone: str | None) -> Optional[Site]:
        """First site whose match rules overlap the caller id in either direction."""
        if not phone:
            return None
        result = await self.session.execute(select(Site).order_by(Site.id))
        for site in result.scalars().all():
            rules = site.phone_match_rules if isinstance(site.phone_match_rules, list) else []
            for pattern in rules:
                pattern = str(pattern)
                if pattern and (pattern in phone or phone in pattern):
                    return site
        return None
