"""Escalation engine — drives an incident through its on-call ladder.

Per-incident states (``Incident.routing_state``)::

    routing ──answered──> awaiting_claim ──accept──> assigned ──close──> closed
       │                        └── decline by the answerer: back to routing
       └──ladder exhausted──> critical (terminal until a manual escalation)

The engine owns no scheduler loop. It reacts to telephony callbacks and
client mutations, each of which runs as one transaction inside the
incident's critical section. Calls are handed to the telephony gateway
only after that transaction commits.
"""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager, nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import AsyncIterator, Awaitable, Callable, Optional, Union

from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from callrouter.models.call_attempt import TERMINAL_RESULTS, AttemptResult, CallAttempt, DeclineReason
from callrouter.models.incident import Incident, IncidentOutcome, IncidentStatus, RoutingState
from callrouter.models.incident_event import IncidentEvent
from callrouter.models.site import Site
from callrouter.models.user import User
from callrouter.observability.metrics import metrics
from callrouter.routing.config_store import ConfigStore
from callrouter.routing.errors import InvalidTransition, NotFound, StorageUnavailable
from callrouter.routing.ledger import IncidentLedger
from callrouter.routing.locks import IncidentLocks
from callrouter.routing.resolver import ScheduleResolver
from callrouter.routing.rotation import pointer_lock
from callrouter.routing.steps import LadderStep
from callrouter.routing.timers import ClaimTimers
from callrouter.services.telephony import PlaceCallRequest, TelephonyGateway
from callrouter.utils.time import as_utc, utc_now

logger = logging.getLogger("callrouter.engine")

CLAIM_WINDOW_SECONDS = 90
RING_GRACE_SECONDS = 15

# A user id, or the E.164 phone number the telephony provider reports.
Identity = Union[int, str]
Publisher = Callable[[dict], Awaitable[None]]

_STATUS_RANK = {
    IncidentStatus.OPEN: 0,
    IncidentStatus.EN_ROUTE: 1,
    IncidentStatus.ON_SITE: 2,
    IncidentStatus.RESOLVED: 3,
    IncidentStatus.FOLLOW_UP_REQUIRED: 3,
}
_CLOSING_STATUSES = frozenset({IncidentStatus.RESOLVED, IncidentStatus.FOLLOW_UP_REQUIRED})


@dataclass
class _Work:
    """One transaction plus the side effects to release once it commits."""

    session: AsyncSession
    ledger: IncidentLedger
    stack: AsyncExitStack
    holds_rotation: bool = False
    calls: list[PlaceCallRequest] = field(default_factory=list)
    notices: list[dict] = field(default_factory=list)


@dataclass
class IncidentDetails:
    incident: Incident
    call_attempts: list[CallAttempt]
    events: list[IncidentEvent]
    assigned_user: Optional[User]
    site: Optional[Site]


class EscalationEngine:
    """Routes emergency calls through the configured escalation ladder."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: TelephonyGateway,
        *,
        clock: Callable[[], datetime] = utc_now,
        claim_window_seconds: float = CLAIM_WINDOW_SECONDS,
        ring_grace_seconds: float = RING_GRACE_SECONDS,
        publisher: Optional[Publisher] = None,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.clock = clock
        self.claim_window_seconds = claim_window_seconds
        self.ring_grace_seconds = ring_grace_seconds
        self.publisher = publisher
        self.locks = IncidentLocks()
        self.timers = ClaimTimers()

    # ── transaction plumbing ─────────────────────────────────

    @asynccontextmanager
    async def _unit_of_work(
        self,
        incident_id: int | None = None,
        operation: str = "",
    ) -> AsyncIterator[_Work]:
        """Run a transaction; storage outages surface as ``StorageUnavailable``."""
        try:
            # Locks entered on the stack are released only after commit.
            async with AsyncExitStack() as stack:
                async with self.session_factory() as session:
                    work = _Work(session=session, ledger=IncidentLedger(session), stack=stack)
                    yield work
                    await session.commit()
        except (OperationalError, InterfaceError) as exc:
            logger.error(f"Storage failure during {operation or 'operation'}: {exc}")
            await self._record_failure(incident_id, operation, exc)
            raise StorageUnavailable(f"storage unavailable during {operation or 'operation'}") from exc

        await self._release(work)

    async def _record_failure(self, incident_id: int | None, operation: str, exc: Exception) -> None:
        """Best-effort audit entry for a mutation that could not be committed."""
        if incident_id is None:
            return
        try:
            async with self.session_factory() as session:
                await IncidentLedger(session).log_event(
                    incident_id,
                    "operation_failed",
                    self.clock(),
                    payload={"operation": operation, "error": exc.__class__.__name__},
                )
                await session.commit()
        except SQLAlchemyError:
            logger.exception(f"Could not record failed {operation} for incident {incident_id}")

    async def _release(self, work: _Work) -> None:
        for request in work.calls:
            try:
                self.gateway.place_call(request)
                metrics.count("calls_initiated")
            except Exception:
                # The attempt stays ringing and is timed out by the scheduler.
                logger.exception(
                    f"Telephony gateway failed to accept call for incident {request.incident_id}"
                )
        if self.publisher is None:
            return
        for notice in work.notices:
            try:
                await self.publisher(notice)
            except Exception:
                logger.exception("Incident update broadcast failed")

    def _notice(self, work: _Work, incident: Incident, event: str, now: datetime) -> None:
        incident.updated_at = now
        work.notices.append(
            {
                "type": "incident_update",
                "event": event,
                "incident_id": incident.id,
                "status": incident.status,
                "routing_state": incident.routing_state,
                "critical": incident.critical,
                "assigned_user_id": incident.assigned_user_id,
                "current_step": incident.current_step,
                "timestamp": now.isoformat(),
            }
        )

    @staticmethod
    async def _identify(ledger: IncidentLedger, identity: Identity) -> User:
        if isinstance(identity, int):
            return await ledger.get_user(identity)
        return await ledger.find_user_by_phone(identity)

    # ── inbound telephony ────────────────────────────────────

    async def on_incoming_call(self, caller_id: str | None, external_call_id: str | None = None) -> int:
        """Create an incident for a new emergency call and ring the first step."""
        now = self.clock()
        async with self._unit_of_work(operation="incoming_call") as work:
            if external_call_id:
                existing = await work.ledger.find_by_external_id(external_call_id)
                if existing is not None:
                    logger.info(f"Call {external_call_id} already tracked as incident {existing.id}")
                    return existing.id

            business_hours = await ConfigStore(work.session).evaluate_business_hours(now)
            site = await work.ledger.match_site_by_phone(caller_id)
            incident = await work.ledger.create_incident(
                created_at=now,
                business_hours=business_hours,
                caller_id=caller_id,
                external_id=external_call_id,
                site_id=site.id if site else None,
            )
            await work.ledger.log_event(
                incident.id,
                "incident_created",
                now,
                payload={
                    "externalId": external_call_id,
                    "callerId": caller_id,
                    "siteId": incident.site_id,
                    "isBusinessHours": business_hours,
                },
            )
            metrics.count("incidents_created")
            logger.info(
                f"Incident {incident.id} created for caller {caller_id} "
                f"({'business' if business_hours else 'after'} hours)"
            )
            await self._begin_routing(work, incident, now, reason="incoming_call")
            return incident.id

    async def on_answered(self, incident_id: int, identity: Identity) -> Incident:
        """Bind the incident to whoever picked up and start the claim window."""
        now = self.clock()
        arm_timer = False
        async with self.locks.hold(incident_id):
            async with self._unit_of_work(incident_id, "answered") as work:
                incident = await work.ledger.get_incident(incident_id)
                user = await self._identify(work.ledger, identity)
                if incident.is_closed:
                    raise InvalidTransition(f"Incident {incident_id} is already closed")

                attempt = await work.ledger.find_ringing_attempt(incident.id, user.id)
                if attempt is not None:
                    work.ledger.finish_attempt(attempt, AttemptResult.ANSWERED, now)
                else:
                    logger.warning(f"User {user.id} answered incident {incident_id} without a ringing attempt")
                metrics.count("call_answered")

                holder = incident.assigned_user_id
                if (
                    incident.routing_state in (RoutingState.AWAITING_CLAIM.value, RoutingState.ASSIGNED.value)
                    and holder is not None
                    and holder != user.id
                ):
                    await work.ledger.log_event(
                        incident.id,
                        "call_answered",
                        now,
                        user_id=user.id,
                        payload={"userName": user.name, "alreadyAssignedTo": holder},
                    )
                    return incident

                incident.assigned_user_id = user.id
                if incident.status == IncidentStatus.OPEN.value:
                    incident.status = IncidentStatus.EN_ROUTE.value
                if incident.routing_state != RoutingState.ASSIGNED.value:
                    incident.routing_state = RoutingState.AWAITING_CLAIM.value
                    incident.answered_at = now
                    arm_timer = True
                    metrics.observe_time_to_answer((now - as_utc(incident.created_at)).total_seconds())

                await work.ledger.log_event(
                    incident.id,
                    "call_answered",
                    now,
                    user_id=user.id,
                    payload={
                        "userName": user.name,
                        "phone": user.phone,
                        "attemptId": attempt.id if attempt else None,
                        "step": attempt.step if attempt else None,
                    },
                )
                self._notice(work, incident, "call_answered", now)
                logger.info(f"Incident {incident_id} answered by user {user.id}")

            if arm_timer:
                self.timers.arm(incident_id, self.claim_window_seconds, self._claim_window_elapsed)
        return incident

    async def on_call_terminal_result(
        self,
        incident_id: int,
        identity: Identity,
        result: AttemptResult | str,
        reason: DeclineReason | str | None = None,
        reason_text: str | None = None,
    ) -> bool:
        """Record a missed, declined or timed-out ring and escalate if needed.

        Returns True when the ladder was advanced. A result for an attempt
        that is no longer ringing is ignored, so a duplicated callback can
        never advance the ladder twice.
        """
        result = AttemptResult(result)
        if result not in TERMINAL_RESULTS:
            raise InvalidTransition(f"'{result.value}' is not a terminal call result")
        reason_value = DeclineReason(reason).value if reason else None

        now = self.clock()
        async with self.locks.hold(incident_id):
            async with self._unit_of_work(incident_id, f"call_{result.value}") as work:
                incident = await work.ledger.get_incident(incident_id)
                user = await self._identify(work.ledger, identity)
                attempt = await work.ledger.find_ringing_attempt(incident.id, user.id)
                if attempt is None:
                    logger.info(
                        f"Ignoring {result.value} for user {user.id} on incident {incident_id}: nothing ringing"
                    )
                    return False

                work.ledger.finish_attempt(attempt, result, now, reason_value, reason_text)
                await work.ledger.log_event(
                    incident.id,
                    f"call_{result.value}",
                    now,
                    user_id=user.id,
                    payload={
                        "attemptId": attempt.id,
                        "step": attempt.step,
                        "reason": reason_value,
                        "reasonText": reason_text,
                    },
                )
                metrics.count(f"call_{result.value}")

                advanced = False
                if (
                    incident.routing_state == RoutingState.ROUTING.value
                    and attempt.step == incident.current_step
                ):
                    advanced = await self._resume(work, incident, now)
                self._notice(work, incident, f"call_{result.value}", now)
        return advanced

    async def record_call_completed(
        self,
        incident_id: int,
        call_sid: str | None = None,
        duration: int | None = None,
    ) -> None:
        now = self.clock()
        async with self.locks.hold(incident_id):
            async with self._unit_of_work(incident_id, "call_completed") as work:
                incident = await work.ledger.get_incident(incident_id)
                await work.ledger.log_event(
                    incident.id,
                    "call_completed",
                    now,
                    payload={"callSid": call_sid, "duration": duration},
                )

    # ── ladder mechanics ─────────────────────────────────────

    async def _begin_routing(self, work: _Work, incident: Incident, now: datetime, reason: str) -> None:
        ladder = await ConfigStore(work.session).get_ladder(incident.business_hours)
        incident.ladder_json = list(ladder)
        incident.current_step = 0
        incident.attempted_user_ids_json = []
        incident.routing_state = RoutingState.ROUTING.value
        await work.ledger.log_event(
            incident.id,
            "routing_started",
            now,
            payload={"ladder": ladder, "reason": reason},
        )
        await self._advance(work, incident, now)
        self._notice(work, incident, "routing_started", now)

    async def _resume(self, work: _Work, incident: Incident, now: datetime) -> bool:
        """Move on after a failed ring unless part of the step's fan-out is still ringing.

        Primary, secondary and admin steps end with their one ring. Manager,
        broadcast and pool steps are re-resolved first and only advance once
        they have no untried candidates left.
        """
        still_ringing = await work.ledger.ringing_attempts(incident.id, step=incident.current_step)
        if still_ringing:
            return False
        ladder = incident.ladder
        if incident.current_step < len(ladder) and LadderStep.parse(ladder[incident.current_step]).single_target:
            incident.current_step += 1
        await self._advance(work, incident, now)
        return True

    async def _advance(self, work: _Work, incident: Incident, now: datetime) -> None:
        """Ring the next candidates from the current step, skipping empty steps, or declare exhaustion."""
        ladder = incident.ladder
        attempted = incident.attempted_user_ids
        resolver = ScheduleResolver(work.session, rotation_lock=nullcontext())

        # Each pass either dispatches or moves one step forward.
        for _ in range(len(ladder) + 1):
            if incident.current_step >= len(ladder):
                await self._exhaust(work, incident, now)
                return

            step_name = ladder[incident.current_step]
            step = LadderStep.parse(step_name)
            if step is LadderStep.UNKNOWN:
                logger.warning(f"Unknown ladder step '{step_name}' on incident {incident.id}; skipping")
            elif step is LadderStep.ROTATING_POOL and not work.holds_rotation:
                # The pointer is shared by every incident; hold it until this commit.
                await work.stack.enter_async_context(pointer_lock())
                work.holds_rotation = True

            candidates = await resolver.resolve(step, now, attempted)
            if not candidates:
                await work.ledger.log_event(
                    incident.id,
                    "step_skipped",
                    now,
                    payload={"step": incident.current_step, "stepName": step_name},
                )
                incident.current_step += 1
                continue

            targets = candidates if step.fans_out else candidates[:1]
            await self._dispatch(work, incident, step_name, targets, now)
            return

        raise RuntimeError(f"Ladder walk for incident {incident.id} did not terminate")

    async def _dispatch(
        self,
        work: _Work,
        incident: Incident,
        step_name: str,
        targets: list[int],
        now: datetime,
    ) -> None:
        ring_seconds = await ConfigStore(work.session).get_ring_duration()
        users = await work.ledger.users_by_id(targets)
        attempted = incident.attempted_user_ids

        for user_id in targets:
            if await work.ledger.find_ringing_attempt(incident.id, user_id) is not None:
                logger.warning(f"User {user_id} is already ringing for incident {incident.id}")
                continue
            attempt = await work.ledger.create_attempt(incident.id, incident.current_step, user_id, now)
            await work.ledger.log_event(
                incident.id,
                "call_initiated",
                now,
                user_id=user_id,
                payload={
                    "step": incident.current_step,
                    "stepName": step_name,
                    "userId": user_id,
                    "attemptId": attempt.id,
                },
            )
            if user_id not in attempted:
                attempted.append(user_id)
            work.calls.append(
                PlaceCallRequest(
                    incident_id=incident.id,
                    step=incident.current_step,
                    user_id=user_id,
                    phone=users[user_id].phone,
                    ring_seconds=ring_seconds,
                )
            )
            logger.info(
                f"Ringing user {user_id} for incident {incident.id} at step {incident.current_step} ({step_name})"
            )

        # Reassign rather than mutate so the JSON column is flagged dirty.
        incident.attempted_user_ids_json = list(attempted)

    async def _exhaust(self, work: _Work, incident: Incident, now: datetime) -> None:
        incident.routing_state = RoutingState.CRITICAL.value
        if incident.critical:
            await work.ledger.log_event(
                incident.id,
                "routing_exhausted",
                now,
                payload={"message": "Escalation ladder exhausted again after manual escalation"},
            )
            logger.warning(f"Incident {incident.id} exhausted its ladder again")
        else:
            incident.critical = True
            await work.ledger.log_event(
                incident.id,
                "unanswered_emergency",
                now,
                payload={
                    "message": "Emergency call went unanswered through entire ladder",
                    "ladder": incident.ladder,
                },
            )
            metrics.count("unanswered_emergencies")
            logger.error(f"UNANSWERED EMERGENCY for incident {incident.id}")
        self._notice(work, incident, "unanswered_emergency", now)

    # ── claim window ─────────────────────────────────────────

    async def _claim_window_elapsed(self, incident_id: int) -> None:
        await self.mark_answered_unclaimed(incident_id)

    async def mark_answered_unclaimed(self, incident_id: int) -> bool:
        """Flag an answered incident nobody claimed. No-op once it left awaiting-claim."""
        now = self.clock()
        async with self.locks.hold(incident_id):
            async with self._unit_of_work(incident_id, "answered_unclaimed") as work:
                incident = await work.ledger.get_incident(incident_id)
                if incident.routing_state != RoutingState.AWAITING_CLAIM.value or incident.answered_unclaimed:
                    return False
                incident.answered_unclaimed = True
                await work.ledger.log_event(
                    incident.id,
                    "answered_unclaimed",
                    now,
                    user_id=incident.assigned_user_id,
                    payload={
                        "message": f"Call was answered but not claimed within {int(self.claim_window_seconds)} seconds",
                    },
                )
                metrics.count("answered_unclaimed")
                self._notice(work, incident, "answered_unclaimed", now)
                logger.warning(f"Incident {incident_id} answered but unclaimed")
        return True

    # ── client mutations ─────────────────────────────────────

    async def _assign(
        self,
        work: _Work,
        incident: Incident,
        user_id: int,
        assigned_by: int | None,
        now: datetime,
    ) -> None:
        previous = incident.assigned_user_id
        incident.assigned_user_id = user_id
        incident.routing_state = RoutingState.ASSIGNED.value
        incident.accepted_at = now
        self.timers.cancel(incident.id)
        await work.ledger.log_event(
            incident.id,
            "incident_assigned",
            now,
            user_id=assigned_by,
            payload={"assignedUserId": user_id, "assignedBy": assigned_by, "previousUserId": previous},
        )

    async def accept(self, incident_id: int, actor_id: int) -> Incident:
        """Technician claims the incident. Re-accepting simply reassigns."""
        now = self.clock()
        async with self.locks.hold(incident_id):
            async with self._unit_of_work(incident_id, "accept") as work:
                incident = await work.ledger.get_incident(incident_id)
                actor = await work.ledger.get_user(actor_id)
                if incident.is_closed:
                    raise InvalidTransition(f"Incident {incident_id} is closed and cannot be accepted")

                await self._assign(work, incident, actor.id, actor.id, now)
                await work.ledger.log_event(
                    incident.id,
                    "incident_accepted",
                    now,
                    user_id=actor.id,
                    payload={"acceptedBy": actor.id},
                )
                self._notice(work, incident, "incident_accepted", now)
                logger.info(f"Incident {incident_id} accepted by user {actor.id}")
        return incident

    async def decline(
        self,
        incident_id: int,
        actor_id: int,
        reason: DeclineReason | str,
        reason_text: str | None = None,
    ) -> Incident:
        """Technician turns the incident down; routing moves on without them."""
        reason = DeclineReason(reason)
        now = self.clock()
        async with self.locks.hold(incident_id):
            async with self._unit_of_work(incident_id, "decline") as work:
                incident = await work.ledger.get_incident(incident_id)
                actor = await work.ledger.get_user(actor_id)
                if incident.is_closed:
                    raise InvalidTransition(f"Incident {incident_id} is closed and cannot be declined")

                attempt = await work.ledger.find_ringing_attempt(incident.id, actor.id)
                if attempt is not None:
                    work.ledger.finish_attempt(attempt, AttemptResult.DECLINED, now, reason.value, reason_text)

                released = (
                    incident.assigned_user_id == actor.id
                    and incident.routing_state
                    in (RoutingState.AWAITING_CLAIM.value, RoutingState.ASSIGNED.value)
                )
                await work.ledger.log_event(
                    incident.id,
                    "incident_declined",
                    now,
                    user_id=actor.id,
                    payload={
                        "declinedBy": actor.id,
                        "reason": reason.value,
                        "reasonText": reason_text,
                        "released": released,
                    },
                )

                if released:
                    self.timers.cancel(incident.id)
                    incident.assigned_user_id = None
                    incident.answered_at = None
                    incident.accepted_at = None
                    if incident.status == IncidentStatus.EN_ROUTE.value:
                        incident.status = IncidentStatus.OPEN.value
                    incident.routing_state = RoutingState.ROUTING.value
                    await self._resume(work, incident, now)
                elif (
                    attempt is not None
                    and incident.routing_state == RoutingState.ROUTING.value
                    and attempt.step == incident.current_step
                ):
                    await self._resume(work, incident, now)

                self._notice(work, incident, "incident_declined", now)
                logger.info(f"Incident {incident_id} declined by user {actor.id} ({reason.value})")
        return incident

    async def manual_assign(self, incident_id: int, user_id: int, actor_id: int) -> Incident:
        now = self.clock()
        async with self.locks.hold(incident_id):
            async with self._unit_of_work(incident_id, "manual_assign") as work:
                incident = await work.ledger.get_incident(incident_id)
                assignee = await work.ledger.get_user(user_id)
                if incident.is_closed:
                    raise InvalidTransition(f"Incident {incident_id} is closed and cannot be assigned")

                await self._assign(work, incident, assignee.id, actor_id, now)
                self._notice(work, incident, "incident_assigned", now)
                logger.info(f"Incident {incident_id} assigned to user {assignee.id} by user {actor_id}")
        return incident

    async def manual_escalate(self, incident_id: int, actor_id: int) -> Incident:
        """Restart routing from step 0 with a fresh ladder and no exclusions."""
        now = self.clock()
        async with self.locks.hold(incident_id):
            async with self._unit_of_work(incident_id, "manual_escalate") as work:
                incident = await work.ledger.get_incident(incident_id)
                if incident.is_closed:
                    raise InvalidTransition(f"Incident {incident_id} is closed and cannot be escalated")

                superseded = await work.ledger.ringing_attempts(incident.id)
                for attempt in superseded:
                    work.ledger.finish_attempt(attempt, AttemptResult.TIMEOUT, now)
                self.timers.cancel(incident.id)

                await work.ledger.log_event(
                    incident.id,
                    "manual_escalation",
                    now,
                    user_id=actor_id,
                    payload={
                        "escalatedBy": actor_id,
                        "fromStep": incident.current_step,
                        "supersededAttemptIds": [attempt.id for attempt in superseded],
                    },
                )
                logger.info(f"Incident {incident_id} manually escalated by user {actor_id}")
                await self._begin_routing(work, incident, now, reason="manual_escalation")
        return incident

    async def update_status(self, incident_id: int, status: IncidentStatus | str, actor_id: int) -> Incident:
        """Move the visible status forward. Never touches the ladder."""
        new_status = IncidentStatus(status)
        now = self.clock()
        async with self.locks.hold(incident_id):
            async with self._unit_of_work(incident_id, "update_status") as work:
                incident = await work.ledger.get_incident(incident_id)
                current = IncidentStatus(incident.status)
                if current is IncidentStatus.RESOLVED:
                    raise InvalidTransition(f"Incident {incident_id} is already resolved")
                if _STATUS_RANK[new_status] < _STATUS_RANK[current]:
                    raise InvalidTransition(
                        f"Cannot move incident {incident_id} from '{current.value}' back to '{new_status.value}'"
                    )

                incident.status = new_status.value
                if new_status is IncidentStatus.FOLLOW_UP_REQUIRED:
                    incident.follow_up_required = True
                if new_status in _CLOSING_STATUSES:
                    incident.resolved_at = now
                    incident.routing_state = RoutingState.CLOSED.value
                    self.timers.cancel(incident.id)

                await work.ledger.log_event(
                    incident.id,
                    "status_changed",
                    now,
                    user_id=actor_id,
                    payload={"previousStatus": current.value, "newStatus": new_status.value},
                )
                self._notice(work, incident, "status_changed", now)
        return incident

    async def close(
        self,
        incident_id: int,
        outcome: IncidentOutcome | str,
        actor_id: int,
        outcome_notes: str | None = None,
        follow_up_required: bool = False,
    ) -> Incident:
        """Record the outcome and finish the incident. Rejected once resolved."""
        outcome = IncidentOutcome(outcome)
        now = self.clock()
        async with self.locks.hold(incident_id):
            async with self._unit_of_work(incident_id, "close") as work:
                incident = await work.ledger.get_incident(incident_id)
                if incident.status == IncidentStatus.RESOLVED.value:
                    raise InvalidTransition(f"Incident {incident_id} is already resolved")

                incident.status = (
                    IncidentStatus.FOLLOW_UP_REQUIRED.value if follow_up_required else IncidentStatus.RESOLVED.value
                )
                incident.outcome = outcome.value
                incident.outcome_notes = outcome_notes
                incident.follow_up_required = follow_up_required
                incident.resolved_at = now
                incident.routing_state = RoutingState.CLOSED.value
                self.timers.cancel(incident.id)

                await work.ledger.log_event(
                    incident.id,
                    "incident_closed",
                    now,
                    user_id=actor_id,
                    payload={
                        "outcome": outcome.value,
                        "outcomeNotes": outcome_notes,
                        "followUpRequired": follow_up_required,
                    },
                )
                self._notice(work, incident, "incident_closed", now)
                logger.info(f"Incident {incident_id} closed as {outcome.value} by user {actor_id}")
        return incident

    # ── reads ────────────────────────────────────────────────

    async def get_incident(self, incident_id: int) -> Incident:
        async with self._unit_of_work(incident_id, "read") as work:
            return await work.ledger.get_incident(incident_id)

    async def get_incident_details(self, incident_id: int) -> IncidentDetails:
        async with self._unit_of_work(incident_id, "read") as work:
            incident = await work.ledger.get_incident(incident_id)
            assigned = None
            if incident.assigned_user_id is not None:
                assigned = (await work.ledger.users_by_id([incident.assigned_user_id])).get(
                    incident.assigned_user_id
                )
            site = await work.ledger.get_site(incident.site_id) if incident.site_id else None
            return IncidentDetails(
                incident=incident,
                call_attempts=await work.ledger.attempts_for(incident.id),
                events=await work.ledger.events_for(incident.id),
                assigned_user=assigned,
                site=site,
            )

    async def list_open(self) -> list[Incident]:
        async with self._unit_of_work(operation="read") as work:
            return await work.ledger.list_open()

    async def list_unclaimed(self) -> list[Incident]:
        async with self._unit_of_work(operation="read") as work:
            return await work.ledger.list_unclaimed()

    async def list_for_user(self, user_id: int) -> list[Incident]:
        async with self._unit_of_work(operation="read") as work:
            return await work.ledger.list_for_user(user_id)

    # ── sweeps (driven by the background scheduler) ──────────

    async def expire_stale_attempts(self) -> int:
        """Time out attempts that rang past the ring duration with no callback."""
        now = self.clock()
        async with self._unit_of_work(operation="expire_attempts") as work:
            ring_seconds = await ConfigStore(work.session).get_ring_duration()
            cutoff = now - timedelta(seconds=ring_seconds + self.ring_grace_seconds)
            stale = [
                (attempt.incident_id, attempt.target_user_id)
                for attempt in await work.ledger.stale_ringing(cutoff)
            ]

        expired = 0
        for incident_id, user_id in stale:
            try:
                await self.on_call_terminal_result(incident_id, user_id, AttemptResult.TIMEOUT)
                expired += 1
            except NotFound:
                logger.warning(f"Stale attempt on incident {incident_id} refers to missing user {user_id}")
        return expired

    async def expire_unclaimed(self) -> int:
        """Flag answered incidents whose claim window passed without a timer firing."""
        now = self.clock()
        cutoff = now - timedelta(seconds=self.claim_window_seconds)
        async with self._unit_of_work(operation="expire_unclaimed") as work:
            incident_ids = await work.ledger.awaiting_claim_since(cutoff)

        flagged = 0
        for incident_id in incident_ids:
            if await self.mark_answered_unclaimed(incident_id):
                flagged += 1
        return flagged

    async def shutdown(self) -> None:
        await self.timers.shutdown()
