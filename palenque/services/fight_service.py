# palenque/services/fight_service.py
"""
Event and Fight Management Service

Handles the lifecycle of an event night and its fights: creating them,
opening and closing the betting window, and cancelling fights. Closing
betting refunds every bet that never found an opponent so that only matched
bets reach settlement. Operators may only manage events assigned to them.
"""

from datetime import datetime, timezone, timedelta
import logging

from palenque import db
from palenque.errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from palenque.models import Event, Fight, Bet, User
from palenque.services.betting_service import (
    cancel_unmatched_bets, lock_wallet, release_stake,
)
from palenque.sse_events import announce_event
from palenque.utils.db_utils import atomic
from palenque.utils.text_utils import ensure_utc

log = logging.getLogger(__name__)

EVENT_STATUSES = ('scheduled', 'in-progress', 'intermission', 'paused', 'completed', 'cancelled')


def _announce_all(events):
    for event_type, data, channel in events:
        announce_event(event_type, data, channel=channel)


def check_event_access(event, user_id, role):
    """Admins manage every event; operators only the ones assigned to them."""
    if role == 'admin':
        return
    if role == 'operator' and event.operator_id == user_id:
        return
    raise ForbiddenError("You are not allowed to manage this event")


def get_event(event_id):
    event = db.session.get(Event, event_id)
    if not event:
        raise NotFoundError("Event not found")
    return event


def get_fight(fight_id):
    fight = db.session.get(Fight, fight_id)
    if not fight:
        raise NotFoundError("Fight not found")
    return fight


# =============================================================================
# EVENTS
# =============================================================================

def create_event(name, scheduled_date, venue=None, operator_id=None):
    if not name or not name.strip():
        raise BadRequestError("Event name is required")
    if scheduled_date is None:
        raise BadRequestError("Scheduled date is required")
    if operator_id is not None:
        operator = db.session.get(User, operator_id)
        if not operator or not operator.active or operator.role not in ('operator', 'admin'):
            raise BadRequestError("Assigned operator must be an active operator or admin")

    with atomic():
        event = Event(
            name=name.strip(),
            venue=venue,
            scheduled_date=ensure_utc(scheduled_date),
            operator_id=operator_id,
            status='scheduled',
        )
        db.session.add(event)

    log.info(f"Event {event.event_id} '{event.name}' created for {event.scheduled_date}")
    announce_event('event_created', event.to_dict())
    return event


def update_event_status(event_id, status, user_id, role):
    if status not in EVENT_STATUSES:
        raise BadRequestError(f"Status must be one of: {', '.join(EVENT_STATUSES)}")

    events = []
    with atomic():
        event = get_event(event_id)
        check_event_access(event, user_id, role)
        if event.is_closed():
            raise BadRequestError(f"Event is already {event.status}")

        if status == 'cancelled':
            for fight in event.fights.filter(Fight.status.notin_(('completed', 'cancelled'))).all():
                events += _cancel_fight(fight)
        event.status = status

    log.info(f"Event {event.event_id} status changed to {status} by user {user_id}")
    _announce_all(events)
    announce_event('event_status', {'event_id': event.event_id, 'status': event.status},
                   channel=f"event_{event.event_id}")
    return event


# =============================================================================
# FIGHTS
# =============================================================================

def create_fight(event_id, red_corner, blue_corner, user_id, role, number=None, weight=None, notes=None):
    red_corner = (red_corner or '').strip()
    blue_corner = (blue_corner or '').strip()
    if not red_corner or not blue_corner:
        raise BadRequestError("Both corners are required")
    if red_corner.lower() == blue_corner.lower():
        raise BadRequestError("Red and blue corners must be different")
    if number is not None and not 1 <= number <= 999:
        raise BadRequestError("Fight number must be between 1 and 999")

    with atomic():
        event = get_event(event_id)
        check_event_access(event, user_id, role)
        if event.is_closed():
            raise BadRequestError(f"Cannot add fights to a {event.status} event")

        if number is None:
            last = event.fights.order_by(Fight.number.desc()).first()
            number = (last.number if last else 0) + 1
        elif event.fights.filter_by(number=number).first():
            raise ConflictError(f"Fight number {number} already exists in this event")

        fight = Fight(
            event_id=event.event_id,
            number=number,
            red_corner=red_corner,
            blue_corner=blue_corner,
            weight=weight,
            notes=notes,
            status='upcoming',
        )
        db.session.add(fight)
        event.total_fights = (event.total_fights or 0) + 1

    log.info(f"Fight {fight.fight_id} (#{fight.number}) created in event {event.event_id}")
    announce_event('fight_created', fight.to_dict(), channel=f"event_{event.event_id}")
    return fight


def open_betting(fight_id, user_id, role, duration_minutes=None, now=None):
    """Moves an upcoming fight to 'betting'; an optional duration sets when the window closes."""
    now = now or datetime.now(timezone.utc)

    with atomic():
        fight = get_fight(fight_id)
        check_event_access(fight.event, user_id, role)
        if fight.event.is_closed():
            raise BadRequestError(f"Event is {fight.event.status}")
        if not fight.can_transition_to('betting'):
            raise BadRequestError(f"Cannot open betting for a fight that is {fight.status}")

        fight.status = 'betting'
        fight.betting_start_time = now
        fight.betting_end_time = None
        if duration_minutes is not None:
            if duration_minutes <= 0:
                raise BadRequestError("Betting duration must be positive")
            fight.betting_end_time = now + timedelta(minutes=duration_minutes)

        if fight.event.status == 'scheduled':
            fight.event.status = 'in-progress'

    log.info(f"Betting opened for fight {fight.fight_id} until {fight.betting_end_time or 'closed manually'}")
    announce_event('betting_opened', fight.to_dict(), channel=f"event_{fight.event_id}")
    return fight


def _close_betting(fight, now):
    fight.status = 'live'
    fight.start_time = now
    if fight.betting_end_time is None or ensure_utc(fight.betting_end_time) > now:
        fight.betting_end_time = now
    return cancel_unmatched_bets(fight, f"Refund for unmatched bet on fight {fight.number}, betting closed", now=now)


def close_betting(fight_id, user_id, role, now=None):
    now = now or datetime.now(timezone.utc)

    with atomic():
        fight = get_fight(fight_id)
        check_event_access(fight.event, user_id, role)
        if not fight.can_transition_to('live'):
            raise BadRequestError(f"Cannot close betting for a fight that is {fight.status}")
        events = _close_betting(fight, now)

    log.info(f"Betting closed for fight {fight.fight_id}; {len(events)} unmatched bet(s) refunded")
    _announce_all(events)
    announce_event('betting_closed', fight.to_dict(), channel=f"event_{fight.event_id}")
    return fight


def close_expired_betting_windows(now=None):
    """Closes betting on every fight whose window has run out. Returns the number closed."""
    now = now or datetime.now(timezone.utc)
    due = Fight.query.filter(
        Fight.status == 'betting',
        Fight.betting_end_time.isnot(None),
        Fight.betting_end_time <= now,
    ).all()

    closed = 0
    for fight_id in [f.fight_id for f in due]:
        try:
            with atomic():
                fight = get_fight(fight_id)
                if fight.status != 'betting':
                    continue
                events = _close_betting(fight, now)
            _announce_all(events)
            announce_event('betting_closed', fight.to_dict(), channel=f"event_{fight.event_id}")
            closed += 1
        except Exception as e:
            log.error(f"Failed to close betting window for fight {fight_id}: {e}", exc_info=True)
    return closed


def _cancel_fight(fight, now=None):
    now = now or datetime.now(timezone.utc)
    description = f"Refund for cancelled fight {fight.number}"
    events = cancel_unmatched_bets(fight, description, now=now)

    for bet in fight.bets.filter(Bet.status == 'active').all():
        wallet = lock_wallet(bet.user_id)
        if wallet:
            release_stake(bet, wallet, description)
        bet.status = 'completed'
        bet.result = 'cancelled'
        bet.settlement_time = now
        events.append(('bet_cancelled', {'bet_id': bet.bet_id, 'fight_id': fight.fight_id,
                                         'reason': description}, f"user_{bet.user_id}"))

    fight.status = 'cancelled'
    fight.result = 'cancelled'
    fight.end_time = now
    return events


def cancel_fight(fight_id, user_id, role):
    with atomic():
        fight = get_fight(fight_id)
        check_event_access(fight.event, user_id, role)
        if not fight.can_transition_to('cancelled'):
            raise BadRequestError(f"Cannot cancel a fight that is {fight.status}")
        events = _cancel_fight(fight)

    log.info(f"Fight {fight.fight_id} cancelled by user {user_id}; {len(events)} bet(s) refunded")
    _announce_all(events)
    announce_event('fight_cancelled', fight.to_dict(), channel=f"event_{fight.event_id}")
    return fight
