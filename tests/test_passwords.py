from unittest.mock import Mock

import pytest

from warden.service.passwords import CredentialVerifier


@pytest.fixture(scope="module")
def verifier():
    return CredentialVerifier(time_cost=1)


class TestCredentialVerifier:
    def test_hash_is_salted_argon2id(self, verifier):
        first = verifier.hash("CorrectHorse9!")
        second = verifier.hash("CorrectHorse9!")
        assert first.startswith("$argon2id$")
        assert first != second

    def test_verify_match_and_mismatch(self, verifier):
        stored = verifier.hash("CorrectHorse9!")
        assert verifier.verify("CorrectHorse9!", stored) is True
        assert verifier.verify("wrong-password", stored) is False

    def test_missing_hash_is_non_match(self, verifier):
        assert verifier.verify("anything", None) is False
        assert verifier.verify("anything", "") is False

    def test_garbage_hash_is_non_match(self, verifier):
        assert verifier.verify("anything", "not-a-hash") is False

    def test_missing_hash_still_runs_dummy_verification(self, verifier, monkeypatch):
        spy = Mock(wraps=verifier._hasher)
        monkeypatch.setattr(verifier, "_hasher", spy)
        verifier.verify("anything", None)
        spy.verify.assert_called_once_with(verifier._dummy_hash, "anything")

    def test_needs_rehash_when_parameters_change(self, verifier):
        stored = verifier.hash("CorrectHorse9!")
        stronger = CredentialVerifier(time_cost=2)
        assert verifier.needs_rehash(stored) is False
        assert stronger.needs_rehash(stored) is True
