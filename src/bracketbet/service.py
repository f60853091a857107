"""
Tournament operations exposed to the web layer.

Every mutating operation re-reads the tournament inside its per-tournament
lock and finishes all validation before writing anything.
"""
import copy
import logging
import re
from datetime import datetime
from typing import Dict, List, Optional

from werkzeug.security import check_password_hash, generate_password_hash

from bracketbet import controller, ledger, progression
from bracketbet.bracket import build_bracket, get_bracket_display, validate_participants
from bracketbet.errors import (
    BracketError,
    Forbidden,
    InvalidBracketInput,
    InvalidCredentials,
    InvalidStatusTransition,
    InvalidWinner,
    NotFound,
)
from bracketbet.models import (
    CREDIT_INDEPENDENT,
    CREDIT_MODELS,
    DEFAULT_STARTING_CREDITS,
    PHASE_BETTING,
    STATUS_ACTIVE,
    STATUS_WAITING,
    VISIBILITY_PRIVATE,
    VISIBILITY_PUBLIC,
    new_tournament,
)

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {'status', 'phase', 'result', 'structure', 'name'}


class BracketService:
    """Bracket, betting and account operations over an injected storage."""

    def __init__(self, storage):
        self.storage = storage

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def register_user(self, username: str, password: str) -> Dict:
        username = (username or '').lower().strip()
        if not re.match(r'^[a-z0-9][a-z0-9-]*$', username) or len(username) < 2:
            raise InvalidCredentials(
                'Username must be at least 2 characters: letters, numbers, hyphens.', 400)
        if len(password or '') < 4:
            raise InvalidCredentials('Password must be at least 4 characters.', 400)
        if self.storage.get_user_by_username(username):
            raise InvalidCredentials('Username already taken.', 409)
        user = self.storage.create_user(username, generate_password_hash(password))
        logger.info('Registered user %s (%s)', user['id'], username)
        return user

    def authenticate_user(self, username: str, password: str) -> Dict:
        user = self.storage.get_user_by_username((username or '').lower().strip())
        if user is None or not check_password_hash(user['password_hash'], password or ''):
            raise InvalidCredentials('Invalid username or password')
        return user

    def get_user(self, user_id: int) -> Dict:
        user = self.storage.get_user(user_id)
        if user is None:
            raise NotFound(f'User {user_id} not found')
        return user

    def claim_daily_bonus(self, user_id: int, now: Optional[datetime] = None) -> Dict:
        self.get_user(user_id)
        user = self.storage.claim_daily_bonus(user_id, now)
        logger.info('User %s claimed the daily bonus, wallet now %s', user_id, user['wallet'])
        return user

    # ------------------------------------------------------------------
    # Tournaments
    # ------------------------------------------------------------------

    def _load(self, tournament_id: int) -> Dict:
        tournament = self.storage.get_tournament(tournament_id)
        if tournament is None:
            raise NotFound(f'Tournament {tournament_id} not found')
        return tournament

    def _view(self, tournament: Dict, user_id: Optional[int] = None) -> Dict:
        view = dict(tournament)
        if user_id != tournament['creator_id']:
            view.pop('access_code', None)
        view['current_match'] = progression.current_match(
            tournament['structure'], tournament.get('current_match_number'),
            tournament.get('current_round'))
        return view

    def create_tournament(self, creator_id: int, name: str, participants: List,
                          visibility: str = VISIBILITY_PUBLIC, access_code: Optional[str] = None,
                          credit_model: str = 'shared', starting_credits: Optional[int] = None,
                          admin_may_bet: bool = False) -> Dict:
        """
        Validate the request, build the bracket and store a pending tournament.

        Nothing is written when any input is rejected.
        """
        self.get_user(creator_id)

        name = (name or '').strip()
        if not name:
            raise InvalidBracketInput('Tournament name is required')
        if visibility not in (VISIBILITY_PUBLIC, VISIBILITY_PRIVATE):
            raise InvalidBracketInput(f'Unknown visibility: {visibility}')
        if visibility == VISIBILITY_PRIVATE and not (access_code or '').strip():
            raise InvalidBracketInput('Private tournaments need an access code')
        if credit_model not in CREDIT_MODELS:
            raise InvalidBracketInput(f'Unknown credit model: {credit_model}')
        if credit_model == CREDIT_INDEPENDENT:
            if starting_credits is None:
                starting_credits = DEFAULT_STARTING_CREDITS
            if isinstance(starting_credits, bool) or not isinstance(starting_credits, int) \
                    or starting_credits < 1:
                raise InvalidBracketInput('Starting credits must be a positive whole number')

        participants = validate_participants(participants)
        structure = build_bracket(participants)

        record = new_tournament(
            name, creator_id, participants, structure,
            visibility=visibility,
            access_code=(access_code or '').strip() or None,
            credit_model=credit_model,
            starting_credits=starting_credits,
            admin_may_bet=admin_may_bet,
        )
        tournament = self.storage.create_tournament(record)

        if credit_model == CREDIT_INDEPENDENT:
            self.storage.create_balance({
                'user_id': creator_id,
                'tournament_id': tournament['id'],
                'balance': starting_credits,
            })
        return self._view(tournament, creator_id)

    def list_tournaments(self, user_id: Optional[int] = None) -> List[Dict]:
        return [self._view(t, user_id) for t in self.storage.list_tournaments()]

    def get_tournament(self, tournament_id: int, user_id: Optional[int] = None) -> Dict:
        """Fetch a tournament, annotated with the caller's tournament balance."""
        tournament = self._load(tournament_id)
        view = self._view(tournament, user_id)
        view['rounds'] = get_bracket_display(tournament['structure'])['rounds']
        if user_id is not None and tournament['credit_model'] == CREDIT_INDEPENDENT:
            view['balance'] = self.storage.get_balance(user_id, tournament_id)
        return view

    def update_tournament(self, tournament_id: int, user_id: int, updates: Dict) -> Dict:
        """
        Apply a creator's partial update.

        Results (``result`` or a changed ``structure``) are resolved before any
        status/phase change, so one request can record a winner and open
        betting on the next match. Everything is validated on a copy first;
        the tournament is written once and decided matches are settled after.
        """
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise BracketError(f"Unsupported field(s): {', '.join(sorted(unknown))}")

        self._load(tournament_id)
        with self.storage.tournament_lock(tournament_id):
            tournament = self._load(tournament_id)
            self._require_creator(tournament, user_id)

            working = tournament
            changes = {}
            decided = []
            for match_number, winner in self._requested_results(tournament, updates):
                result_changes, newly_decided = self._resolve_result(working, match_number, winner)
                working = {**working, **result_changes}
                changes.update(result_changes)
                if newly_decided:
                    decided.append(match_number)

            if 'name' in updates:
                name = (updates['name'] or '').strip()
                if not name:
                    raise InvalidBracketInput('Tournament name is required')
                changes['name'] = name
            if updates.get('status') is not None or updates.get('phase') is not None:
                changes.update(controller.apply_transition(
                    working, updates.get('status'), updates.get('phase')))

            if changes:
                tournament = self.storage.update_tournament(tournament_id, changes)
            for match_number in decided:
                self._settle(tournament, match_number)

        return self.get_tournament(tournament_id, user_id)

    def _require_creator(self, tournament: Dict, user_id: int) -> None:
        if tournament['creator_id'] != user_id:
            raise Forbidden('Only the tournament creator can do that')

    def _requested_results(self, tournament: Dict, updates: Dict) -> List:
        """Turn a ``result`` or ``structure`` update into (match_number, winner) pairs."""
        results = []
        if updates.get('result') is not None:
            result = updates['result']
            if not isinstance(result, dict):
                raise InvalidWinner('Result must name a match_number and a winner')
            results.append((result.get('match_number'), result.get('winner')))

        if updates.get('structure') is not None:
            submitted = updates['structure']
            if not isinstance(submitted, list):
                raise InvalidWinner('Structure must be a list of matches')
            for match in submitted:
                if not isinstance(match, dict) or isinstance(match.get('match_number'), bool) \
                        or not isinstance(match.get('match_number'), int):
                    raise InvalidWinner('Every match needs an integer match_number')
            stored = {m['match_number']: m for m in tournament['structure']}
            for match in sorted(submitted, key=lambda m: m['match_number']):
                current = stored.get(match.get('match_number'))
                if current is None:
                    raise InvalidWinner(f"No match #{match.get('match_number')} in this bracket")
                if match.get('winner') == current['winner']:
                    continue
                if not match.get('winner'):
                    raise InvalidWinner(
                        f"The result of match #{current['match_number']} cannot be cleared")
                results.append((current['match_number'], match['winner']))
        return results

    # ------------------------------------------------------------------
    # Results and settlement
    # ------------------------------------------------------------------

    def apply_match_result(self, tournament_id: int, user_id: int, match_number: int,
                           winner: str) -> Dict:
        """
        Record a match result as one unit: update the tree, note the champion
        once the final is decided, and settle the match's bets if it was just
        decided.
        """
        self._load(tournament_id)
        with self.storage.tournament_lock(tournament_id):
            tournament = self._load(tournament_id)
            self._require_creator(tournament, user_id)
            changes, newly_decided = self._resolve_result(tournament, match_number, winner)
            tournament = self.storage.update_tournament(tournament_id, changes)
            if newly_decided:
                self._settle(tournament, match_number)
        return self.get_tournament(tournament_id, user_id)

    def _resolve_result(self, tournament: Dict, match_number: int, winner: str):
        """
        Work out the tournament fields a result changes, without writing.

        Returns (changes, newly_decided).
        """
        if tournament['status'] != STATUS_ACTIVE:
            raise InvalidStatusTransition('Results can only be recorded while the tournament is active')

        structure = copy.deepcopy(tournament['structure'])
        match = progression.find_match(structure, match_number)
        if match is None:
            raise InvalidWinner(f'No match #{match_number} in this bracket')
        newly_decided = not match['winner']
        if (newly_decided and tournament.get('phase') == PHASE_BETTING
                and match_number == tournament.get('current_match_number')):
            raise InvalidStatusTransition('End betting before recording the result of the current match')

        previous = match['winner']
        progression.record_winner(structure, match_number, winner)
        if previous and previous != winner:
            logger.warning('Match #%s of tournament %s corrected from %s to %s; earlier payouts stand',
                           match_number, tournament['id'], previous, winner)

        changes = {'structure': structure}
        if progression.all_decided(structure):
            changes['champion'] = progression.champion(structure)
        return changes, newly_decided

    def settle(self, tournament_id: int, match_number: int) -> Dict:
        """Settle a decided match. Replaying returns the first settlement unchanged."""
        self._load(tournament_id)
        with self.storage.tournament_lock(tournament_id):
            return self._settle(self._load(tournament_id), match_number)

    def _settle(self, tournament: Dict, match_number: int) -> Dict:
        for existing in self.storage.get_settlements(tournament['id']):
            if existing['match_number'] == match_number:
                logger.info('Match #%s of tournament %s already settled',
                            match_number, tournament['id'])
                return existing

        match = progression.find_match(tournament['structure'], match_number)
        if match is None or not match['winner']:
            raise InvalidWinner(f'Match #{match_number} has no winner to settle')

        outcome = ledger.compute_settlement(
            self.storage.get_bets(tournament['id']), match_number, match['winner'])
        settlement = {
            'match_number': match_number,
            'round': match['round'],
            'winner': match['winner'],
            'total_pool': outcome['total_pool'],
            'winning_pool': outcome['winning_pool'],
            'payouts': outcome['payouts'],
            'settled_at': datetime.now().isoformat(),
        }
        # The record goes first so a replay can never pay twice
        self.storage.save_settlement(tournament['id'], settlement)
        if tournament['credit_model'] == CREDIT_INDEPENDENT:
            self.storage.credit_balances(tournament['id'], outcome['payouts'])
        else:
            self.storage.credit_wallets(outcome['payouts'])

        logger.info('Settled match #%s of tournament %s: pool %s, %s winner(s)',
                    match_number, tournament['id'], outcome['total_pool'], len(outcome['payouts']))
        return settlement

    def results(self, tournament_id: int) -> Dict:
        tournament = self._load(tournament_id)
        bets = self.storage.get_bets(tournament_id)
        settlements = self.storage.get_settlements(tournament_id)
        usernames = {u['id']: u['username'] for u in self.storage.list_users()}
        results = {
            'tournament_id': tournament_id,
            'name': tournament['name'],
            'status': tournament['status'],
            'champion': tournament.get('champion') or progression.champion(tournament['structure']),
            'leaderboard': ledger.leaderboard(tournament, bets, settlements, usernames),
            'settlements': settlements,
        }
        if tournament['credit_model'] == CREDIT_INDEPENDENT:
            results['balances'] = self.storage.list_balances(tournament_id)
        return results

    # ------------------------------------------------------------------
    # Joining and betting
    # ------------------------------------------------------------------

    def join_tournament(self, tournament_id: int, user_id: int,
                        access_code: Optional[str] = None) -> Dict:
        """Join a waiting or active tournament, provisioning a balance if needed."""
        self.get_user(user_id)
        self._load(tournament_id)
        with self.storage.tournament_lock(tournament_id):
            tournament = self._load(tournament_id)
            if tournament['status'] not in (STATUS_WAITING, STATUS_ACTIVE):
                raise Forbidden('This tournament is not open for joining')
            if (tournament['visibility'] == VISIBILITY_PRIVATE
                    and user_id != tournament['creator_id']
                    and (access_code or '').strip() != tournament.get('access_code')):
                raise Forbidden('Invalid access code')

            if user_id not in tournament.get('members', []):
                members = list(tournament.get('members', [])) + [user_id]
                self.storage.update_tournament(tournament_id, {'members': members})
                logger.info('User %s joined tournament %s', user_id, tournament_id)
            if tournament['credit_model'] == CREDIT_INDEPENDENT:
                self._provision_balance(tournament, user_id)

        return self.get_tournament(tournament_id, user_id)

    def _provision_balance(self, tournament: Dict, user_id: int) -> int:
        balance = self.storage.get_balance(user_id, tournament['id'])
        if balance is None:
            balance = self.storage.create_balance({
                'user_id': user_id,
                'tournament_id': tournament['id'],
                'balance': ledger.starting_balance(tournament),
            })['balance']
        return balance

    def place_bet(self, tournament_id: int, user_id: int, selected_winner: str, amount,
                  match_number: Optional[int] = None, round_index: Optional[int] = None) -> Dict:
        """
        Place a bet on the current match.

        The debit and the bet record form one unit: if writing the bet fails
        the debit is reversed before the error propagates.
        """
        self.get_user(user_id)
        self._load(tournament_id)
        with self.storage.tournament_lock(tournament_id):
            tournament = self._load(tournament_id)
            if match_number is None:
                match_number = tournament.get('current_match_number')

            independent = tournament['credit_model'] == CREDIT_INDEPENDENT
            if independent:
                available = self.storage.get_balance(user_id, tournament_id)
                if available is None:
                    available = ledger.starting_balance(tournament)
            else:
                available = self.get_user(user_id)['wallet']

            match = ledger.check_bet(tournament, user_id, match_number, selected_winner, amount,
                                     self.storage.get_bets(tournament_id), available, round_index)

            if independent:
                self._provision_balance(tournament, user_id)
                self.storage.update_balance(user_id, tournament_id, -amount)
            else:
                self.storage.update_user_wallet(user_id, -amount)

            try:
                bet = self.storage.create_bet({
                    'user_id': user_id,
                    'tournament_id': tournament_id,
                    'round': match['round'],
                    'match_number': match['match_number'],
                    'amount': amount,
                    'selected_winner': selected_winner,
                })
            except Exception:
                logger.exception('Failed to record bet of user %s; refunding %s', user_id, amount)
                if independent:
                    self.storage.update_balance(user_id, tournament_id, amount)
                else:
                    self.storage.update_user_wallet(user_id, amount)
                raise

        logger.debug('User %s bet %s on %s in match #%s of tournament %s',
                     user_id, amount, selected_winner, match['match_number'], tournament_id)
        return bet

    def list_bets(self, tournament_id: int) -> List[Dict]:
        self._load(tournament_id)
        return self.storage.get_bets(tournament_id)
