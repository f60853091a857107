"""
Single elimination bracket generation.

Byes are compressed out of the opening round: only participants who actually
have to play are paired in round 0, and the bye recipients wait in round 1
for the round-0 winners.
"""
import math
from typing import Dict, List

from bracketbet.errors import InvalidBracketInput
from bracketbet.models import BYE, new_match


def get_round_name(teams_in_round: int) -> str:
    """Get the name of a round based on number of teams."""
    if teams_in_round == 2:
        return "Final"
    elif teams_in_round == 4:
        return "Semifinal"
    elif teams_in_round == 8:
        return "Quarterfinal"
    else:
        return f"Round of {teams_in_round}"


def calculate_bracket_size(num_teams: int) -> int:
    """Calculate the bracket size (next power of 2)."""
    if num_teams <= 0:
        return 0
    return 2 ** math.ceil(math.log2(num_teams))


def calculate_byes(num_teams: int) -> int:
    """Calculate number of byes needed."""
    bracket_size = calculate_bracket_size(num_teams)
    return bracket_size - num_teams


def count_rounds(bracket_size: int) -> int:
    if bracket_size <= 1:
        return 0
    return int(math.log2(bracket_size))


def validate_participants(names: List) -> List[str]:
    """
    Clean and check a participant list before it reaches the builder.

    Names are stripped of surrounding whitespace. Raises InvalidBracketInput
    for an empty list, blank names, the reserved BYE name or duplicates
    (compared case-sensitively).
    """
    if not isinstance(names, (list, tuple)):
        raise InvalidBracketInput('Participants must be a list of names')
    if not names:
        raise InvalidBracketInput('Enter at least one tournament participant')

    cleaned = []
    seen = set()
    for raw in names:
        if not isinstance(raw, str) or not raw.strip():
            raise InvalidBracketInput('Participant names must be non-empty text')
        name = raw.strip()
        if name == BYE:
            raise InvalidBracketInput(f'"{BYE}" is reserved and cannot be used as a participant name')
        if name in seen:
            raise InvalidBracketInput(f'Duplicate participant: {name}')
        seen.add(name)
        cleaned.append(name)
    return cleaned


def build_bracket(participants: List[str]) -> List[Dict]:
    """
    Build the full match tree for a list of distinct participants.

    Round 0 pairs the first ``P - byes`` participants in input order. The
    remaining ``byes`` participants are pre-filled as player1 in round 1,
    facing round-0 winners by position first and each other once those run
    out; if round-0 winners outnumber the byes, the extra winners meet each
    other. Later rounds start empty.

    A single participant produces an empty tree (immediate champion).
    """
    num_teams = len(participants)
    if num_teams == 0:
        raise InvalidBracketInput('Enter at least one tournament participant')
    if num_teams == 1:
        return []

    bracket_size = calculate_bracket_size(num_teams)
    num_byes = bracket_size - num_teams
    total_rounds = count_rounds(bracket_size)

    playing = participants[:num_teams - num_byes]
    bye_recipients = participants[num_teams - num_byes:]

    structure = []
    match_number = 1

    for position, i in enumerate(range(0, len(playing), 2)):
        structure.append(new_match(0, position, match_number, playing[i], playing[i + 1]))
        match_number += 1

    if total_rounds < 2:
        return structure

    first_round_matches = len(structure)
    round_one = []
    # Bye recipients facing round-0 winners
    for i in range(min(num_byes, first_round_matches)):
        round_one.append((bye_recipients[i], None))
    # Leftover bye recipients face each other
    leftover = bye_recipients[first_round_matches:]
    for i in range(0, len(leftover), 2):
        round_one.append((leftover[i], leftover[i + 1]))
    # Leftover round-0 winners face each other
    for _ in range(max(first_round_matches - num_byes, 0) // 2):
        round_one.append((None, None))

    for position, (player1, player2) in enumerate(round_one):
        structure.append(new_match(1, position, match_number, player1, player2))
        match_number += 1

    for round_index in range(2, total_rounds):
        num_matches = bracket_size // (2 ** (round_index + 1))
        for position in range(num_matches):
            structure.append(new_match(round_index, position, match_number))
            match_number += 1

    return structure


def get_bracket_display(structure: List[Dict]) -> Dict:
    """
    Get bracket data formatted for display.

    Returns dict with rounds (list of {'round', 'name', 'matches'}),
    bracket_size, total_rounds and total_matches.
    """
    if not structure:
        return {'rounds': [], 'bracket_size': 1, 'total_rounds': 0, 'total_matches': 0}

    total_rounds = max(m['round'] for m in structure) + 1
    bracket_size = 2 ** total_rounds

    rounds = []
    for round_index in range(total_rounds):
        matches = sorted((m for m in structure if m['round'] == round_index),
                         key=lambda m: m['match_number'])
        rounds.append({
            'round': round_index,
            'name': get_round_name(bracket_size // (2 ** round_index)),
            'matches': matches,
        })

    return {
        'rounds': rounds,
        'bracket_size': bracket_size,
        'total_rounds': total_rounds,
        'total_matches': len(structure),
    }
