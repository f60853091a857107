"""
Tests for the tournament status and phase state machine.
"""
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from bracketbet.bracket import build_bracket
from bracketbet.controller import apply_transition
from bracketbet.errors import InvalidStatusTransition
from bracketbet.models import new_tournament
from bracketbet.progression import record_winner


def make_tournament(participants=('A', 'B', 'C', 'D'), **overrides):
    tournament = new_tournament('Cup', 1, list(participants), build_bracket(list(participants)))
    tournament['id'] = 1
    tournament.update(overrides)
    return tournament


class TestStatusTransitions:
    """Tests for pending -> waiting -> active."""

    def test_pending_to_waiting(self):
        assert apply_transition(make_tournament(), status='waiting') == {'status': 'waiting'}

    def test_waiting_to_active_opens_betting(self):
        """Starting opens betting on the first match."""
        updates = apply_transition(make_tournament(status='waiting'), status='active')
        assert updates == {
            'status': 'active',
            'phase': 'betting',
            'current_round': 0,
            'current_match_number': 1,
        }

    def test_skipping_a_status_rejected(self):
        with pytest.raises(InvalidStatusTransition):
            apply_transition(make_tournament(), status='active')

    def test_going_back_rejected(self):
        with pytest.raises(InvalidStatusTransition):
            apply_transition(make_tournament(status='active', phase='betting'), status='waiting')

    def test_completed_is_terminal(self):
        with pytest.raises(InvalidStatusTransition):
            apply_transition(make_tournament(status='completed'), status='active')

    def test_completed_cannot_be_requested(self):
        """Completion only happens by advancing past the last match."""
        with pytest.raises(InvalidStatusTransition):
            apply_transition(make_tournament(status='active', phase='betting'), status='completed')

    def test_same_status_rejected(self):
        with pytest.raises(InvalidStatusTransition):
            apply_transition(make_tournament(status='waiting'), status='waiting')

    def test_unknown_values_rejected(self):
        with pytest.raises(InvalidStatusTransition):
            apply_transition(make_tournament(), status='paused')
        with pytest.raises(InvalidStatusTransition):
            apply_transition(make_tournament(), phase='halftime')

    def test_nothing_requested(self):
        with pytest.raises(InvalidStatusTransition):
            apply_transition(make_tournament())

    def test_single_participant_completes_on_start(self):
        """With no match to play the tournament finishes immediately."""
        updates = apply_transition(make_tournament(['Solo'], status='waiting'), status='active')
        assert updates['status'] == 'completed'
        assert updates['champion'] == 'Solo'


class TestPhaseTransitions:
    """Tests for the betting <-> game cycle."""

    def test_betting_to_game(self):
        tournament = make_tournament(status='active', phase='betting',
                                     current_round=0, current_match_number=1)
        assert apply_transition(tournament, phase='game') == {'phase': 'game'}

    def test_phase_change_requires_active(self):
        with pytest.raises(InvalidStatusTransition):
            apply_transition(make_tournament(status='waiting'), phase='game')

    def test_same_phase_rejected(self):
        tournament = make_tournament(status='active', phase='game',
                                     current_round=0, current_match_number=1)
        with pytest.raises(InvalidStatusTransition):
            apply_transition(tournament, phase='game')

    def test_game_to_betting_advances(self):
        """After match #1 is decided betting reopens on match #2."""
        tournament = make_tournament(status='active', phase='game',
                                     current_round=0, current_match_number=1)
        record_winner(tournament['structure'], 1, 'A')
        assert apply_transition(tournament, phase='betting') == {
            'phase': 'betting',
            'current_round': 0,
            'current_match_number': 2,
        }

    def test_game_to_betting_after_final_completes(self):
        tournament = make_tournament(['A', 'B'], status='active', phase='game',
                                     current_round=0, current_match_number=1)
        record_winner(tournament['structure'], 1, 'B')
        updates = apply_transition(tournament, phase='betting')
        assert updates == {'status': 'completed', 'phase': None, 'champion': 'B'}

    def test_game_to_betting_without_result_reopens_same_match(self):
        """Stalled: the current match is still undecided so betting reopens on it."""
        tournament = make_tournament(['A', 'B'], status='active', phase='game',
                                     current_round=0, current_match_number=1)
        updates = apply_transition(tournament, phase='betting')
        assert updates['current_match_number'] == 1
        assert updates['phase'] == 'betting'
