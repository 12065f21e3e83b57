# secrets.py
# One SecretsSession per run, passed by reference to whoever needs secrets.
from __future__ import annotations

import os
import threading
from typing import Callable, Dict, List, Mapping, Optional

from .errors import SecretNotFound
from .ui.console import get_console

ENV_PREFIX = "SANDCI_SECRET_"


class SecretProvider:
    """Where secret values come from. `renew` refreshes leases, if any."""

    def fetch(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def keys(self) -> List[str]:
        return []

    def renew(self) -> None:
        return None


class EnvSecretProvider(SecretProvider):
    """SANDCI_SECRET_<KEY> environment variables."""

    def __init__(self, env: Optional[Mapping[str, str]] = None, prefix: str = ENV_PREFIX):
        self.env = os.environ if env is None else env
        self.prefix = prefix

    def fetch(self, key: str) -> Optional[str]:
        return self.env.get(f"{self.prefix}{key.upper()}")

    def keys(self) -> List[str]:
        return sorted(k[len(self.prefix):] for k in self.env if k.startswith(self.prefix))


class SecretsSession:
    """
    Cached secret access for one pipeline run.

    Every value handed out is registered with the redactor first, so it never
    reaches the log unmasked. Optional renewal runs on a background thread;
    if it fails, the failure is raised on the next access instead of being lost.
    """

    def __init__(self, provider: SecretProvider, redactor: Optional[Callable[[str], None]] = None):
        self.provider = provider
        self.redactor = redactor
        self._values: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._failure: Optional[BaseException] = None
        self._stop = threading.Event()
        self._renewer: Optional[threading.Thread] = None

    def _check(self) -> None:
        if self._failure is not None:
            raise self._failure

    def get(self, key: str) -> str:
        self._check()
        with self._lock:
            if key in self._values:
                return self._values[key]
            value = self.provider.fetch(key)
            if value is None:
                raise SecretNotFound(key)
            if self.redactor is not None and value:
                self.redactor(value)
            self._values[key] = value
            return value

    def load_all(self) -> List[str]:
        """Fetch (and register for redaction) every secret the provider lists."""
        keys = self.provider.keys()
        for key in keys:
            self.get(key)
        return keys

    def known_values(self) -> List[str]:
        with self._lock:
            return list(self._values.values())

    def _renew_loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            try:
                self.provider.renew()
            except Exception as e:
                self._failure = e
                get_console().print_warning(f"secret renewal failed: {e}")
                return

    def start_renewal(self, interval: float) -> None:
        if self._renewer is not None:
            return
        self._renewer = threading.Thread(target=self._renew_loop, args=(interval,), name="sandci-secrets", daemon=True)
        self._renewer.start()

    def close(self) -> None:
        self._stop.set()
        if self._renewer is not None:
            self._renewer.join()
            self._renewer = None

    def __enter__(self) -> "SecretsSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
