"""
YAML-file persistence for tournaments, bets, balances, settlements and users.

Layout under ``data_dir``::

    users.yaml                      users and their shared wallets
    tournaments.yaml                id counter
    .lock                           guards the two files above
    tournaments/<id>/
        tournament.yaml             tournament record incl. bracket structure
        bets.yaml
        balances.yaml               tournament-scoped credit balances
        settlements.yaml            one record per settled match
        .lock                       per-tournament lock

Every read-modify-write happens under a ``FileLock``. Tournament locks are
cached per id so the same lock object is re-entered by nested calls in one
thread, while other threads and processes wait for it.
"""
import logging
import os
import tempfile
import threading
from datetime import datetime
from typing import Dict, List, Optional

import yaml
from filelock import FileLock

from bracketbet.errors import BonusUnavailable, InsufficientFunds, NotFound
from bracketbet.models import DAILY_BONUS_AMOUNT, DAILY_BONUS_INTERVAL, DEFAULT_WALLET

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 10


def _read_yaml(path: str, default):
    if not os.path.exists(path):
        return default
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)
    return data if data else default


def _write_yaml(path: str, data) -> None:
    """Write YAML atomically: temp file in the same directory, then replace."""
    directory = os.path.dirname(path)
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, suffix='.tmp')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


class YamlStorage:
    """Repository backed by YAML files in ``data_dir``."""

    def __init__(self, data_dir: str, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.data_dir = data_dir
        self.lock_timeout = lock_timeout
        self.users_file = os.path.join(data_dir, 'users.yaml')
        self.registry_file = os.path.join(data_dir, 'tournaments.yaml')
        self.tournaments_dir = os.path.join(data_dir, 'tournaments')
        os.makedirs(self.tournaments_dir, exist_ok=True)
        self._data_lock = FileLock(os.path.join(data_dir, '.lock'), timeout=lock_timeout)
        self._tournament_locks = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Paths and locks
    # ------------------------------------------------------------------

    def _tournament_dir(self, tournament_id: int) -> str:
        return os.path.join(self.tournaments_dir, str(int(tournament_id)))

    def _tournament_file(self, tournament_id: int, filename: str) -> str:
        return os.path.join(self._tournament_dir(tournament_id), filename)

    def tournament_lock(self, tournament_id: int) -> FileLock:
        """Return the lock serializing all writes to one tournament."""
        key = int(tournament_id)
        with self._locks_guard:
            lock = self._tournament_locks.get(key)
            if lock is None:
                os.makedirs(self._tournament_dir(key), exist_ok=True)
                lock = FileLock(self._tournament_file(key, '.lock'), timeout=self.lock_timeout)
                self._tournament_locks[key] = lock
            return lock

    def _require_tournament(self, tournament_id: int) -> None:
        if not os.path.exists(self._tournament_file(tournament_id, 'tournament.yaml')):
            raise NotFound(f'Tournament {tournament_id} not found')

    # ------------------------------------------------------------------
    # Tournaments
    # ------------------------------------------------------------------

    def create_tournament(self, data: Dict) -> Dict:
        with self._data_lock:
            registry = _read_yaml(self.registry_file, {'next_id': 1})
            tournament_id = registry.get('next_id', 1)
            registry['next_id'] = tournament_id + 1
            _write_yaml(self.registry_file, registry)

        tournament = {'id': tournament_id, **data, 'created': datetime.now().isoformat()}
        with self.tournament_lock(tournament_id):
            _write_yaml(self._tournament_file(tournament_id, 'tournament.yaml'), tournament)
        logger.info('Created tournament %s (%s)', tournament_id, tournament.get('name'))
        return tournament

    def get_tournament(self, tournament_id: int) -> Optional[Dict]:
        try:
            path = self._tournament_file(tournament_id, 'tournament.yaml')
        except (TypeError, ValueError):
            return None
        return _read_yaml(path, None)

    def list_tournaments(self) -> List[Dict]:
        tournaments = []
        for entry in os.listdir(self.tournaments_dir):
            if not entry.isdigit():
                continue
            path = self._tournament_file(int(entry), 'tournament.yaml')
            try:
                data = _read_yaml(path, None)
            except yaml.YAMLError as e:
                logger.warning(f'Failed to parse {path}: {e}')
                continue
            if data:
                tournaments.append(data)
        tournaments.sort(key=lambda t: t['id'])
        return tournaments

    def update_tournament(self, tournament_id: int, updates: Dict) -> Dict:
        with self.tournament_lock(tournament_id):
            tournament = self.get_tournament(tournament_id)
            if tournament is None:
                raise NotFound(f'Tournament {tournament_id} not found')
            tournament.update({k: v for k, v in updates.items() if k != 'id'})
            _write_yaml(self._tournament_file(tournament_id, 'tournament.yaml'), tournament)
            return tournament

    # ------------------------------------------------------------------
    # Bets
    # ------------------------------------------------------------------

    def get_bets(self, tournament_id: int) -> List[Dict]:
        data = _read_yaml(self._tournament_file(tournament_id, 'bets.yaml'), {})
        return data.get('bets', [])

    def create_bet(self, data: Dict) -> Dict:
        tournament_id = data['tournament_id']
        with self.tournament_lock(tournament_id):
            self._require_tournament(tournament_id)
            path = self._tournament_file(tournament_id, 'bets.yaml')
            stored = _read_yaml(path, {'next_id': 1, 'bets': []})
            bet_id = stored.get('next_id', 1)
            bet = {'id': bet_id, **data, 'created': datetime.now().isoformat()}
            stored['next_id'] = bet_id + 1
            stored.setdefault('bets', []).append(bet)
            _write_yaml(path, stored)
            return bet

    # ------------------------------------------------------------------
    # Tournament-scoped balances
    # ------------------------------------------------------------------

    def _load_balances(self, tournament_id: int) -> List[Dict]:
        data = _read_yaml(self._tournament_file(tournament_id, 'balances.yaml'), {})
        return data.get('balances', [])

    def _save_balances(self, tournament_id: int, balances: List[Dict]) -> None:
        _write_yaml(self._tournament_file(tournament_id, 'balances.yaml'), {'balances': balances})

    def get_balance(self, user_id: int, tournament_id: int) -> Optional[int]:
        """Return the user's balance in this tournament, or None if never provisioned."""
        for record in self._load_balances(tournament_id):
            if record['user_id'] == user_id:
                return record['balance']
        return None

    def list_balances(self, tournament_id: int) -> List[Dict]:
        return self._load_balances(tournament_id)

    def create_balance(self, data: Dict) -> Dict:
        tournament_id = data['tournament_id']
        with self.tournament_lock(tournament_id):
            balances = self._load_balances(tournament_id)
            for record in balances:
                if record['user_id'] == data['user_id']:
                    return record
            record = {'user_id': data['user_id'], 'tournament_id': tournament_id,
                      'balance': data['balance']}
            balances.append(record)
            self._save_balances(tournament_id, balances)
            return record

    def update_balance(self, user_id: int, tournament_id: int, delta: int) -> int:
        """
        Add ``delta`` to a tournament balance and return the new value.

        A negative delta larger than the balance raises InsufficientFunds and
        changes nothing. A missing balance is created holding ``delta``.
        """
        with self.tournament_lock(tournament_id):
            balances = self._load_balances(tournament_id)
            record = next((b for b in balances if b['user_id'] == user_id), None)
            if record is None:
                if delta < 0:
                    raise InsufficientFunds('Insufficient funds')
                record = {'user_id': user_id, 'tournament_id': tournament_id, 'balance': 0}
                balances.append(record)
            if record['balance'] + delta < 0:
                raise InsufficientFunds('Insufficient funds')
            record['balance'] += delta
            self._save_balances(tournament_id, balances)
            return record['balance']

    def credit_balances(self, tournament_id: int, credits: Dict[int, int]) -> None:
        """Apply several non-negative credits in one write."""
        if not credits:
            return
        with self.tournament_lock(tournament_id):
            balances = self._load_balances(tournament_id)
            for user_id, amount in credits.items():
                record = next((b for b in balances if b['user_id'] == user_id), None)
                if record is None:
                    record = {'user_id': user_id, 'tournament_id': tournament_id, 'balance': 0}
                    balances.append(record)
                record['balance'] += amount
            self._save_balances(tournament_id, balances)

    # ------------------------------------------------------------------
    # Settlements
    # ------------------------------------------------------------------

    def get_settlements(self, tournament_id: int) -> List[Dict]:
        data = _read_yaml(self._tournament_file(tournament_id, 'settlements.yaml'), {})
        return data.get('settlements', [])

    def save_settlement(self, tournament_id: int, settlement: Dict) -> Dict:
        with self.tournament_lock(tournament_id):
            settlements = self.get_settlements(tournament_id)
            settlements.append(settlement)
            _write_yaml(self._tournament_file(tournament_id, 'settlements.yaml'),
                        {'settlements': settlements})
            return settlement

    # ------------------------------------------------------------------
    # Users and shared wallets
    # ------------------------------------------------------------------

    def _load_users(self) -> Dict:
        return _read_yaml(self.users_file, {'next_id': 1, 'users': []})

    def list_users(self) -> List[Dict]:
        return self._load_users().get('users', [])

    def get_user(self, user_id: int) -> Optional[Dict]:
        return next((u for u in self.list_users() if u['id'] == user_id), None)

    def get_user_by_username(self, username: str) -> Optional[Dict]:
        return next((u for u in self.list_users() if u['username'] == username), None)

    def create_user(self, username: str, password_hash: str) -> Dict:
        with self._data_lock:
            data = self._load_users()
            user_id = data.get('next_id', 1)
            user = {
                'id': user_id,
                'username': username,
                'password_hash': password_hash,
                'wallet': DEFAULT_WALLET,
                'last_daily_bonus': None,
                'created': datetime.now().isoformat(),
            }
            data['next_id'] = user_id + 1
            data.setdefault('users', []).append(user)
            _write_yaml(self.users_file, data)
            return user

    def _update_user(self, user_id: int, change) -> Dict:
        with self._data_lock:
            data = self._load_users()
            user = next((u for u in data.get('users', []) if u['id'] == user_id), None)
            if user is None:
                raise NotFound(f'User {user_id} not found')
            change(user)
            _write_yaml(self.users_file, data)
            return user

    def update_user_wallet(self, user_id: int, delta: int) -> Dict:
        """Add ``delta`` to a wallet; refuses to take it below zero."""
        def change(user):
            if user['wallet'] + delta < 0:
                raise InsufficientFunds('Insufficient funds')
            user['wallet'] += delta
        return self._update_user(user_id, change)

    def credit_wallets(self, credits: Dict[int, int]) -> None:
        """Apply several non-negative wallet credits in one write."""
        if not credits:
            return
        with self._data_lock:
            data = self._load_users()
            users = {u['id']: u for u in data.get('users', [])}
            for user_id, amount in credits.items():
                if user_id not in users:
                    logger.warning('Skipping credit of %s for unknown user %s', amount, user_id)
                    continue
                users[user_id]['wallet'] += amount
            _write_yaml(self.users_file, data)

    def claim_daily_bonus(self, user_id: int, now: Optional[datetime] = None) -> Dict:
        """Credit the daily bonus at most once per rolling 24 hours."""
        now = now or datetime.now()

        def change(user):
            last = user.get('last_daily_bonus')
            if last and now - datetime.fromisoformat(last) < DAILY_BONUS_INTERVAL:
                raise BonusUnavailable('Daily bonus already claimed')
            user['wallet'] += DAILY_BONUS_AMOUNT
            user['last_daily_bonus'] = now.isoformat()
        return self._update_user(user_id, change)
