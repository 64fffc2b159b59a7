import pytest

import security
from provisioning import AccountService
from repository import EntityRepository
from security import CredentialVault
from store import DurableStore

from .fixtures import make_settings


@pytest.fixture(autouse=True)
def fast_password_hashing(monkeypatch):
    monkeypatch.setattr(security, "PBKDF2_ITERATIONS", 1000)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def store(settings):
    return DurableStore(settings.data_file)


@pytest.fixture
def repository(store):
    repo = EntityRepository(store)
    yield repo
    repo.close()


@pytest.fixture
def vault(settings):
    return CredentialVault(settings.credential_key, settings.credential_ttl_seconds)


@pytest.fixture
def accounts(repository, vault, settings):
    return AccountService(repository, vault, settings)
