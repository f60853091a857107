"""
Record shapes and domain constants.

Tournaments, matches, bets, balances and users are plain dicts so they can be
written to YAML as-is. The helpers here build them with every key present.
"""
from datetime import timedelta
from typing import Dict, List, Optional

BYE = 'BYE'

STATUS_PENDING = 'pending'
STATUS_WAITING = 'waiting'
STATUS_ACTIVE = 'active'
STATUS_COMPLETED = 'completed'
STATUSES = (STATUS_PENDING, STATUS_WAITING, STATUS_ACTIVE, STATUS_COMPLETED)

PHASE_BETTING = 'betting'
PHASE_GAME = 'game'
PHASES = (PHASE_BETTING, PHASE_GAME)

CREDIT_SHARED = 'shared'
CREDIT_INDEPENDENT = 'independent'
CREDIT_MODELS = (CREDIT_SHARED, CREDIT_INDEPENDENT)

VISIBILITY_PUBLIC = 'public'
VISIBILITY_PRIVATE = 'private'

DEFAULT_WALLET = 1000
DEFAULT_STARTING_CREDITS = 1000
DAILY_BONUS_AMOUNT = 100
DAILY_BONUS_INTERVAL = timedelta(hours=24)


def new_match(round_index: int, position: int, match_number: int,
              player1: Optional[str] = None, player2: Optional[str] = None) -> Dict:
    return {
        'round': round_index,
        'position': position,
        'match_number': match_number,
        'player1': player1,
        'player2': player2,
        'winner': None,
    }


def is_playable(match: Dict) -> bool:
    """Both slots filled and no winner yet."""
    return bool(match.get('player1')) and bool(match.get('player2')) and not match.get('winner')


def participants_of(match: Dict) -> List[str]:
    return [p for p in (match.get('player1'), match.get('player2')) if p]


def new_tournament(name: str, creator_id: int, participants: List[str],
                   structure: List[Dict], visibility: str = VISIBILITY_PUBLIC,
                   access_code: Optional[str] = None,
                   credit_model: str = CREDIT_SHARED,
                   starting_credits: Optional[int] = None,
                   admin_may_bet: bool = False) -> Dict:
    return {
        'name': name,
        'creator_id': creator_id,
        'visibility': visibility,
        'access_code': access_code if visibility == VISIBILITY_PRIVATE else None,
        'participants': list(participants),
        'structure': structure,
        'status': STATUS_PENDING,
        'phase': None,
        'current_round': None,
        'current_match_number': None,
        'credit_model': credit_model,
        'starting_credits': starting_credits if credit_model == CREDIT_INDEPENDENT else None,
        'admin_may_bet': bool(admin_may_bet),
        'members': [creator_id],
        'champion': None,
    }
