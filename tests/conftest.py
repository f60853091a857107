"""
Shared pytest fixtures for bracket and wagering tests.

Running tests:
    pytest tests/
"""
import pytest
import sys
import os

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from bracketbet.service import BracketService
from bracketbet.storage import YamlStorage


@pytest.fixture
def storage(tmp_path):
    """YAML storage rooted in a fresh temporary directory."""
    return YamlStorage(str(tmp_path), lock_timeout=5)


@pytest.fixture
def service(storage):
    return BracketService(storage)


@pytest.fixture
def users(service):
    """An organizer and two bettors, each with the default wallet."""
    return {
        'admin': service.register_user('admin', 'pass1234'),
        'alice': service.register_user('alice', 'pass1234'),
        'bob': service.register_user('bob', 'pass1234'),
    }


@pytest.fixture
def active_tournament(service, users):
    """Four-player public tournament, started and open for betting on match #1."""
    admin_id = users['admin']['id']
    tournament = service.create_tournament(admin_id, 'Spring Cup', ['A', 'B', 'C', 'D'])
    service.update_tournament(tournament['id'], admin_id, {'status': 'waiting'})
    return service.update_tournament(tournament['id'], admin_id, {'status': 'active'})


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    """Point the web app at a temporary data directory."""
    import app as app_module

    monkeypatch.setattr(app_module, 'DATA_DIR', str(tmp_path))
    monkeypatch.setattr(app_module, '_services', {})
    return tmp_path


@pytest.fixture
def client(data_dir):
    """Create a test client (unauthenticated by default)."""
    from app import app
    app.config['TESTING'] = True
    with app.test_client() as c:
        yield c
