"""
Wagering rules: bet preconditions, pari-mutuel settlement and the
per-bettor leaderboard.

Nothing here touches storage. The service layer reads balances and bets,
asks this module whether a bet is acceptable or what a settlement pays,
and writes the outcome under the tournament lock.
"""
import logging
from typing import Dict, List, Optional

from bracketbet.errors import (
    AdminBetForbidden,
    BettingClosed,
    DuplicateBet,
    InsufficientFunds,
    InvalidAmount,
    InvalidSelection,
    NoActiveMatch,
)
from bracketbet.models import (
    CREDIT_INDEPENDENT,
    DEFAULT_STARTING_CREDITS,
    DEFAULT_WALLET,
    PHASE_BETTING,
    STATUS_ACTIVE,
    is_playable,
    participants_of,
)
from bracketbet.progression import find_match

logger = logging.getLogger(__name__)


def check_bet(tournament: Dict, user_id: int, match_number: int, selected_winner: str,
              amount, existing_bets: List[Dict], available_balance: int,
              round_index: Optional[int] = None) -> Dict:
    """
    Validate a bet against the tournament state.

    Checks run in a fixed order and the first failure is raised. Returns the
    target match on success.
    """
    if tournament['status'] != STATUS_ACTIVE or tournament.get('phase') != PHASE_BETTING:
        raise BettingClosed('Betting is closed for this tournament')

    if user_id == tournament['creator_id'] and not tournament.get('admin_may_bet'):
        raise AdminBetForbidden('The tournament creator is not allowed to bet')

    match = find_match(tournament['structure'], match_number) if match_number is not None else None
    if (match is None or not is_playable(match)
            or match['match_number'] != tournament.get('current_match_number')
            or (round_index is not None and round_index != match['round'])):
        raise NoActiveMatch('There is no match open for betting')

    if selected_winner not in participants_of(match):
        raise InvalidSelection(f'{selected_winner} is not playing in match #{match_number}')

    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount('Bet amount must be a positive whole number')

    if any(b['user_id'] == user_id and b['match_number'] == match_number for b in existing_bets):
        raise DuplicateBet('You have already placed a bet on this match')

    if available_balance < amount:
        raise InsufficientFunds('Insufficient funds')

    return match


def compute_settlement(bets: List[Dict], match_number: int, winner: str) -> Dict:
    """
    Work out the pari-mutuel payouts for one match.

    Only bets on ``match_number`` take part. Each winning bet pays
    ``floor(amount / winning_pool * total_pool)``. With no winning bets the
    pool is forfeited and nobody is paid.

    Returns dict with total_pool, winning_pool and payouts, where payouts
    maps user_id -> credits paid.
    """
    match_bets = [b for b in bets if b['match_number'] == match_number]
    total_pool = sum(b['amount'] for b in match_bets)
    winning_bets = [b for b in match_bets if b['selected_winner'] == winner]
    winning_pool = sum(b['amount'] for b in winning_bets)

    payouts = {}
    if winning_pool > 0:
        for bet in winning_bets:
            payout = bet['amount'] * total_pool // winning_pool
            payouts[bet['user_id']] = payouts.get(bet['user_id'], 0) + payout
    elif match_bets:
        logger.info('No winning bets on match #%s; pool of %s forfeited', match_number, total_pool)

    return {
        'total_pool': total_pool,
        'winning_pool': winning_pool,
        'payouts': payouts,
    }


def starting_balance(tournament: Dict) -> int:
    if tournament.get('credit_model') == CREDIT_INDEPENDENT:
        return tournament.get('starting_credits') or DEFAULT_STARTING_CREDITS
    return DEFAULT_WALLET


def leaderboard(tournament: Dict, bets: List[Dict], settlements: List[Dict],
                usernames: Optional[Dict[int, str]] = None) -> List[Dict]:
    """
    Per-bettor results for a tournament, best return on investment first.

    Profit is what settlements paid back minus what was staked.
    """
    usernames = usernames or {}
    start = starting_balance(tournament)

    staked = {}
    for bet in bets:
        staked[bet['user_id']] = staked.get(bet['user_id'], 0) + bet['amount']

    returned = {}
    for settlement in settlements:
        for user_id, amount in settlement.get('payouts', {}).items():
            returned[int(user_id)] = returned.get(int(user_id), 0) + amount

    rows = []
    for user_id, total_staked in staked.items():
        total_returned = returned.get(user_id, 0)
        profit = total_returned - total_staked
        rows.append({
            'user_id': user_id,
            'username': usernames.get(user_id, f'user-{user_id}'),
            'staked': total_staked,
            'returned': total_returned,
            'profit': profit,
            'starting_balance': start,
            'final_balance': start + profit,
            'roi': round(profit / start * 100, 1) if start else 0.0,
        })

    rows.sort(key=lambda r: (-r['roi'], r['username']))
    return rows
