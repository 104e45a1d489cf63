"""
Opaque secret handles for issued credentials and kubeconfigs.

A Job owns exactly two handles, named deterministically from the Job name:
  jit-credentials-<job>   aws-access-key-id, aws-secret-access-key,
                          aws-session-token, expires-at
  jit-kubeconfig-<job>    kubeconfig
Jobs store only the handle, never the material. The in-process store is the
only backend shipped; anything implementing SecretStore can replace it.
"""

import threading
from abc import ABC, abstractmethod
from typing import Optional

from jitaccess.services.shared.errors import NotFound

SECRET_LABELS = {"app": "jit-access"}


def credentials_secret_name(job_name: str) -> str:
    return f"jit-credentials-{job_name}"


def kubeconfig_secret_name(job_name: str) -> str:
    return f"jit-kubeconfig-{job_name}"


class SecretStore(ABC):
    @abstractmethod
    def put(self, name: str, data: dict[str, str], labels: Optional[dict[str, str]] = None) -> str:
        """Create or replace a secret; returns its handle."""
        ...

    @abstractmethod
    def get(self, ref: str) -> dict[str, str]:
        ...

    @abstractmethod
    def delete(self, ref: str) -> bool:
        """Remove a secret. Returns False when it did not exist."""
        ...

    @abstractmethod
    def exists(self, ref: str) -> bool:
        ...


class InMemorySecretStore(SecretStore):
    def __init__(self):
        self._lock = threading.Lock()
        self._data: dict[str, dict[str, str]] = {}
        self._labels: dict[str, dict[str, str]] = {}

    def put(self, name, data, labels=None):
        with self._lock:
            self._data[name] = dict(data)
            self._labels[name] = {**SECRET_LABELS, **(labels or {})}
        return name

    def get(self, ref):
        with self._lock:
            data = self._data.get(ref)
        if data is None:
            raise NotFound(f"secret {ref} not found")
        return dict(data)

    def delete(self, ref):
        with self._lock:
            self._labels.pop(ref, None)
            return self._data.pop(ref, None) is not None

    def exists(self, ref):
        with self._lock:
            return ref in self._data

    def labels(self, ref: str) -> dict[str, str]:
        with self._lock:
            return dict(self._labels.get(ref, {}))

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._data)
