"""
Match progression: which match is current, recording winners and moving
them into the next round, and advancing the current-match pointer.

All functions work on a bracket ``structure`` (list of match dicts) and
mutate it in place where noted.
"""
import logging
from typing import Dict, List, Optional, Tuple

from bracketbet.errors import InvalidWinner
from bracketbet.models import BYE, is_playable

logger = logging.getLogger(__name__)

ADVANCED = 'advanced'
COMPLETED = 'completed'
STALLED = 'stalled'


def find_match(structure: List[Dict], match_number: int) -> Optional[Dict]:
    for match in structure:
        if match['match_number'] == match_number:
            return match
    return None


def _round_matches(structure: List[Dict], round_index: int) -> List[Dict]:
    return sorted((m for m in structure if m['round'] == round_index),
                  key=lambda m: m['match_number'])


def current_match(structure: List[Dict], current_match_number: Optional[int],
                  current_round: Optional[int] = None) -> Optional[Dict]:
    """
    Return the playable match numbered ``current_match_number``.

    Falls back to the first playable match of ``current_round`` when the
    numbered match is missing or already decided.
    """
    if current_match_number is not None:
        match = find_match(structure, current_match_number)
        if match is not None and is_playable(match):
            return match
    if current_round is not None:
        for match in _round_matches(structure, current_round):
            if is_playable(match):
                return match
    return None


def feed_target(structure: List[Dict], match: Dict) -> Optional[Tuple[int, str]]:
    """
    Return (position, slot) in the next round that receives this match's
    winner, or None for the final.

    Round 0 feeds round 1 positionally while bye recipients are waiting
    there: the i-th round-0 winner meets the i-th bye recipient as player2.
    Round-0 winners beyond the number of byes, and every later round, fold
    pairwise (position // 2, even positions to player1).
    """
    next_round = _round_matches(structure, match['round'] + 1)
    if not next_round:
        return None

    position = match['position']
    if match['round'] == 0:
        first_round_matches = len(_round_matches(structure, 0))
        num_byes = 2 * len(next_round) - first_round_matches
        if position < num_byes:
            return position, 'player2'
        offset = position - max(num_byes, 0)
        return max(num_byes, 0) + offset // 2, 'player1' if offset % 2 == 0 else 'player2'

    return position // 2, 'player1' if position % 2 == 0 else 'player2'


def _place_winner(target: Dict, slot: str, winner: str, previous: Optional[str]) -> str:
    """Write ``winner`` into ``target`` and return the slot actually used."""
    if previous and previous != winner:
        for candidate in ('player1', 'player2'):
            if target[candidate] == previous:
                target[candidate] = winner
                return candidate

    for candidate in ('player1', 'player2'):
        if target[candidate] == winner:
            return candidate

    if not target[slot]:
        target[slot] = winner
        return slot

    other = 'player2' if slot == 'player1' else 'player1'
    if not target[other]:
        target[other] = winner
        return other

    raise InvalidWinner(
        f"Match #{target['match_number']} has no free slot for {winner}"
    )


def record_winner(structure: List[Dict], match_number: int, winner: str) -> Optional[Dict]:
    """
    Set the winner of a match and propagate it into the next round.

    Re-recording the same winner changes nothing. Recording a different
    winner is a correction: the superseded winner is replaced downstream,
    which is only allowed while the downstream match is undecided.

    Returns the match that received the winner, or None for the final.
    """
    match = find_match(structure, match_number)
    if match is None:
        raise InvalidWinner(f'No match #{match_number} in this bracket')
    if not match['player1'] or not match['player2']:
        raise InvalidWinner(f'Match #{match_number} does not have two participants yet')
    if winner == BYE or winner not in (match['player1'], match['player2']):
        raise InvalidWinner(f'{winner} is not playing in match #{match_number}')

    previous = match['winner']
    target_info = feed_target(structure, match)
    target = None
    if target_info is not None:
        position, slot = target_info
        target = next((m for m in structure
                       if m['round'] == match['round'] + 1 and m['position'] == position), None)
        if target is None:
            raise InvalidWinner(
                f"Could not find next round match for round {match['round']} position {match['position']}"
            )
        if previous and previous != winner and target['winner']:
            raise InvalidWinner(
                f"Match #{target['match_number']} is already decided; "
                f"the result of match #{match_number} can no longer change"
            )

    if previous == winner:
        return target

    if target is None:
        match['winner'] = winner
        logger.info('%s is the tournament champion', winner)
        return None

    used = _place_winner(target, slot, winner, previous)
    match['winner'] = winner
    logger.info('Winner %s advanced to match #%s (round %s, position %s) as %s: [%s vs %s]',
                winner, target['match_number'], target['round'], target['position'], used,
                target['player1'] or 'TBD', target['player2'] or 'TBD')
    return target


def all_decided(structure: List[Dict]) -> bool:
    return all(m['winner'] for m in structure)


def champion(structure: List[Dict]) -> Optional[str]:
    """Winner of the final, or None while it is undecided."""
    if not structure:
        return None
    final = max(structure, key=lambda m: m['match_number'])
    return final['winner']


def advance(structure: List[Dict], current_round: Optional[int],
            current_match_number: Optional[int]) -> Tuple[Optional[int], Optional[int], str]:
    """
    Move the current-match pointer forward.

    Returns (round, match_number, state) where state is ADVANCED when a later
    playable match was found, COMPLETED when every match has a winner, and
    STALLED when neither holds; a stalled pointer is returned unchanged.
    """
    after = current_match_number or 0
    for match in sorted(structure, key=lambda m: m['match_number']):
        if match['match_number'] > after and is_playable(match):
            return match['round'], match['match_number'], ADVANCED

    if all_decided(structure):
        return current_round, current_match_number, COMPLETED

    logger.warning('No playable match after #%s (round %s) but the bracket is unfinished',
                   current_match_number, current_round)
    return current_round, current_match_number, STALLED
