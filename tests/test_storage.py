"""
Tests for YAML-backed persistence.
"""
import pytest
import sys
import os
import yaml
from datetime import datetime, timedelta

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from bracketbet.errors import BonusUnavailable, InsufficientFunds, NotFound
from bracketbet.storage import YamlStorage


class TestTournamentStore:
    """Tests for tournament records."""

    def test_create_assigns_increasing_ids(self, storage):
        first = storage.create_tournament({'name': 'One', 'structure': []})
        second = storage.create_tournament({'name': 'Two', 'structure': []})
        assert (first['id'], second['id']) == (1, 2)
        assert 'created' in first

    def test_round_trip(self, storage, tmp_path):
        """Records are plain YAML on disk and read back unchanged."""
        created = storage.create_tournament({'name': 'One', 'members': [1], 'structure': []})
        assert storage.get_tournament(created['id']) == created

        path = tmp_path / 'tournaments' / str(created['id']) / 'tournament.yaml'
        assert yaml.safe_load(path.read_text())['name'] == 'One'

    def test_get_missing(self, storage):
        assert storage.get_tournament(42) is None
        assert storage.get_tournament('abc') is None

    def test_list_sorted_by_id(self, storage):
        storage.create_tournament({'name': 'One'})
        storage.create_tournament({'name': 'Two'})
        assert [t['name'] for t in storage.list_tournaments()] == ['One', 'Two']

    def test_list_skips_unreadable_file(self, storage, tmp_path):
        storage.create_tournament({'name': 'One'})
        broken = tmp_path / 'tournaments' / '9'
        broken.mkdir()
        (broken / 'tournament.yaml').write_text('name: [unclosed\n')
        assert [t['name'] for t in storage.list_tournaments()] == ['One']

    def test_update(self, storage):
        created = storage.create_tournament({'name': 'One', 'status': 'pending'})
        updated = storage.update_tournament(created['id'], {'status': 'waiting', 'id': 99})
        assert updated['status'] == 'waiting'
        assert updated['id'] == created['id']
        assert storage.get_tournament(created['id'])['status'] == 'waiting'

    def test_update_missing(self, storage):
        with pytest.raises(NotFound):
            storage.update_tournament(5, {'status': 'waiting'})

    def test_no_temp_files_left(self, storage, tmp_path):
        created = storage.create_tournament({'name': 'One'})
        storage.update_tournament(created['id'], {'name': 'Renamed'})
        leftovers = [p for p in tmp_path.rglob('*.tmp')]
        assert leftovers == []


class TestLocks:
    """Tests for per-tournament locking."""

    def test_same_lock_per_tournament(self, storage):
        assert storage.tournament_lock(1) is storage.tournament_lock(1)
        assert storage.tournament_lock(1) is not storage.tournament_lock(2)

    def test_lock_is_reentrant(self, storage):
        """Nested writes in one thread re-enter the held lock."""
        created = storage.create_tournament({'name': 'One'})
        with storage.tournament_lock(created['id']):
            storage.update_tournament(created['id'], {'name': 'Inside'})
        assert storage.get_tournament(created['id'])['name'] == 'Inside'


class TestBetsAndBalances:
    """Tests for bets, tournament balances and settlements."""

    def test_bets_numbered_per_tournament(self, storage):
        tournament = storage.create_tournament({'name': 'One'})
        first = storage.create_bet({'tournament_id': tournament['id'], 'user_id': 1,
                                    'match_number': 1, 'amount': 10, 'selected_winner': 'A'})
        second = storage.create_bet({'tournament_id': tournament['id'], 'user_id': 2,
                                     'match_number': 1, 'amount': 20, 'selected_winner': 'B'})
        assert (first['id'], second['id']) == (1, 2)
        assert [b['amount'] for b in storage.get_bets(tournament['id'])] == [10, 20]

    def test_bet_on_missing_tournament(self, storage):
        with pytest.raises(NotFound):
            storage.create_bet({'tournament_id': 7, 'user_id': 1, 'amount': 10})

    def test_balance_lifecycle(self, storage):
        tournament = storage.create_tournament({'name': 'One'})
        tid = tournament['id']
        assert storage.get_balance(1, tid) is None

        storage.create_balance({'user_id': 1, 'tournament_id': tid, 'balance': 500})
        # Creating again keeps the existing record
        storage.create_balance({'user_id': 1, 'tournament_id': tid, 'balance': 9999})
        assert storage.get_balance(1, tid) == 500

        assert storage.update_balance(1, tid, -200) == 300
        with pytest.raises(InsufficientFunds):
            storage.update_balance(1, tid, -301)
        assert storage.get_balance(1, tid) == 300

    def test_credit_balances(self, storage):
        tournament = storage.create_tournament({'name': 'One'})
        tid = tournament['id']
        storage.create_balance({'user_id': 1, 'tournament_id': tid, 'balance': 100})
        storage.credit_balances(tid, {1: 50, 2: 25})
        assert storage.get_balance(1, tid) == 150
        assert storage.get_balance(2, tid) == 25
        assert len(storage.list_balances(tid)) == 2

    def test_settlements(self, storage):
        tournament = storage.create_tournament({'name': 'One'})
        storage.save_settlement(tournament['id'], {'match_number': 1, 'payouts': {2: 400}})
        settlements = storage.get_settlements(tournament['id'])
        assert settlements == [{'match_number': 1, 'payouts': {2: 400}}]


class TestUsers:
    """Tests for users and shared wallets."""

    def test_create_user(self, storage):
        user = storage.create_user('alice', 'hash')
        assert user['id'] == 1
        assert user['wallet'] == 1000
        assert user['last_daily_bonus'] is None
        assert storage.get_user_by_username('alice')['id'] == 1
        assert storage.get_user(2) is None

    def test_wallet_never_negative(self, storage):
        user = storage.create_user('alice', 'hash')
        assert storage.update_user_wallet(user['id'], -1000)['wallet'] == 0
        with pytest.raises(InsufficientFunds):
            storage.update_user_wallet(user['id'], -1)
        assert storage.get_user(user['id'])['wallet'] == 0

    def test_update_missing_user(self, storage):
        with pytest.raises(NotFound):
            storage.update_user_wallet(3, 10)

    def test_credit_wallets_skips_unknown(self, storage):
        user = storage.create_user('alice', 'hash')
        storage.credit_wallets({user['id']: 400, 99: 10})
        assert storage.get_user(user['id'])['wallet'] == 1400

    def test_daily_bonus_once_per_day(self, storage):
        user = storage.create_user('alice', 'hash')
        now = datetime(2026, 3, 1, 12, 0)

        assert storage.claim_daily_bonus(user['id'], now)['wallet'] == 1100
        with pytest.raises(BonusUnavailable):
            storage.claim_daily_bonus(user['id'], now + timedelta(hours=23))
        assert storage.claim_daily_bonus(user['id'], now + timedelta(hours=24))['wallet'] == 1200

    def test_users_shared_between_instances(self, tmp_path):
        """Two storages on one directory see the same users."""
        YamlStorage(str(tmp_path)).create_user('alice', 'hash')
        assert YamlStorage(str(tmp_path)).get_user_by_username('alice') is not None
