"""
Tournament status and phase state machine.

    pending -> waiting -> active -> completed
                          (betting <-> game)

``apply_transition`` returns the fields to update; it never writes.
"""
import logging
from typing import Dict, Optional

from bracketbet import progression
from bracketbet.errors import InvalidStatusTransition
from bracketbet.models import (
    PHASE_BETTING,
    PHASE_GAME,
    PHASES,
    STATUS_ACTIVE,
    STATUS_COMPLETED,
    STATUS_PENDING,
    STATUS_WAITING,
    STATUSES,
    is_playable,
)

logger = logging.getLogger(__name__)

STATUS_TRANSITIONS = {
    STATUS_PENDING: STATUS_WAITING,
    STATUS_WAITING: STATUS_ACTIVE,
}


def _completion(tournament: Dict) -> Dict:
    structure = tournament['structure']
    champion = progression.champion(structure)
    if champion is None and not structure and tournament.get('participants'):
        champion = tournament['participants'][0]
    return {
        'status': STATUS_COMPLETED,
        'phase': None,
        'champion': champion,
    }


def _start(tournament: Dict) -> Dict:
    structure = tournament['structure']
    if not any(is_playable(m) for m in structure):
        logger.info('Tournament %s has no match to play; completing immediately',
                    tournament.get('id'))
        return _completion(tournament)

    first = progression.current_match(structure, 1, 0)
    return {
        'status': STATUS_ACTIVE,
        'phase': PHASE_BETTING,
        'current_round': first['round'] if first else 0,
        'current_match_number': first['match_number'] if first else 1,
    }


def _next_match(tournament: Dict) -> Dict:
    """Game -> betting: move to the next playable match or finish."""
    structure = tournament['structure']
    round_index, match_number, state = progression.advance(
        structure, tournament.get('current_round'), tournament.get('current_match_number'))

    if state == progression.ADVANCED:
        return {
            'phase': PHASE_BETTING,
            'current_round': round_index,
            'current_match_number': match_number,
        }
    if state == progression.COMPLETED:
        return _completion(tournament)

    # Stalled: reopen betting only if the current round still has a match to play
    fallback = progression.current_match(structure, tournament.get('current_match_number'),
                                         tournament.get('current_round'))
    if fallback is None:
        return {}
    return {
        'phase': PHASE_BETTING,
        'current_round': fallback['round'],
        'current_match_number': fallback['match_number'],
    }


def apply_transition(tournament: Dict, status: Optional[str] = None,
                     phase: Optional[str] = None) -> Dict:
    """
    Validate a requested status and/or phase change.

    Returns the dict of tournament fields to update. Raises
    InvalidStatusTransition for anything outside the state machine.
    """
    if status is not None and status not in STATUSES:
        raise InvalidStatusTransition(f'Unknown status: {status}')
    if phase is not None and phase not in PHASES:
        raise InvalidStatusTransition(f'Unknown phase: {phase}')
    if status is None and phase is None:
        raise InvalidStatusTransition('No status or phase requested')

    current_status = tournament['status']
    updates = {}

    if status is not None and status != current_status:
        if STATUS_TRANSITIONS.get(current_status) != status:
            raise InvalidStatusTransition(f'Cannot move from {current_status} to {status}')
        if status == STATUS_ACTIVE:
            updates.update(_start(tournament))
        else:
            updates['status'] = status
    elif status is not None and phase is None:
        raise InvalidStatusTransition(f'Tournament is already {current_status}')

    resulting_status = updates.get('status', current_status)
    resulting_phase = updates.get('phase', tournament.get('phase'))

    if phase is not None and phase != resulting_phase:
        if resulting_status != STATUS_ACTIVE:
            raise InvalidStatusTransition(f'Cannot change phase while {resulting_status}')
        if phase == PHASE_GAME:
            updates['phase'] = PHASE_GAME
        else:
            updates.update(_next_match(tournament))
    elif phase is not None and not updates:
        raise InvalidStatusTransition(f'Tournament is already in the {phase} phase')

    if updates:
        logger.info('Tournament %s: %s/%s -> %s/%s', tournament.get('id'),
                    current_status, tournament.get('phase'),
                    updates.get('status', current_status),
                    updates.get('phase', tournament.get('phase')))
    return updates
