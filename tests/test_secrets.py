import threading

import pytest

from sandci.builder.base import Redactor
from sandci.errors import SecretNotFound
from sandci.secrets import EnvSecretProvider, SecretProvider, SecretsSession


def test_env_provider_reads_prefixed_variables():
    provider = EnvSecretProvider({"SANDCI_SECRET_TOKEN": "t0k3n", "OTHER": "x"})
    assert provider.fetch("token") == "t0k3n"
    assert provider.fetch("missing") is None
    assert provider.keys() == ["TOKEN"]


def test_values_are_registered_before_they_are_returned():
    redactor = Redactor()
    session = SecretsSession(EnvSecretProvider({"SANDCI_SECRET_TOKEN": "t0k3n"}), redactor=redactor.add)
    assert session.get("TOKEN") == "t0k3n"
    assert redactor("auth t0k3n ok") == "auth [REDACTED] ok"


def test_missing_secret():
    session = SecretsSession(EnvSecretProvider({}))
    with pytest.raises(SecretNotFound) as exc:
        session.get("NOPE")
    assert exc.value.key == "NOPE"


def test_load_all_and_cache():
    calls = []

    class Counting(EnvSecretProvider):
        def fetch(self, key):
            calls.append(key)
            return super().fetch(key)

    session = SecretsSession(Counting({"SANDCI_SECRET_A": "1", "SANDCI_SECRET_B": "2"}))
    assert session.load_all() == ["A", "B"]
    session.get("A")
    assert calls == ["A", "B"]
    assert sorted(session.known_values()) == ["1", "2"]


class FailingRenewal(SecretProvider):
    def __init__(self):
        self.renewed = threading.Event()

    def fetch(self, key):
        return "v"

    def renew(self):
        self.renewed.set()
        raise RuntimeError("lease expired")


def test_renewal_failure_surfaces_on_next_access():
    provider = FailingRenewal()
    with SecretsSession(provider) as session:
        session.start_renewal(0.01)
        assert provider.renewed.wait(5)
        session._renewer.join(5)
        with pytest.raises(RuntimeError, match="lease expired"):
            session.get("ANY")
